# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import pytest
from starlette.testclient import TestClient

from inkfed.store.schema import RelationshipStatus

AP_CONTENT_TYPE = 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
BASE = "https://inkwell.test"
ALICE = f"{BASE}/users/alice"
CAROL = "https://example.org/users/carol"
NOTE = f"{CAROL}/statuses/1"

SIGNED_HEADERS = ("Host", "Date", "Digest", "Signature", "Content-Type")


def _reply() -> dict:
    return {
        "id": f"{NOTE}/activity",
        "type": "Create",
        "actor": CAROL,
        "object": {
            "id": NOTE,
            "type": "Note",
            "attributedTo": CAROL,
            "inReplyTo": f"{ALICE}/entries/1",
            "content": "<p>Great post</p>",
        },
    }


def _post_signed(client: TestClient, remote, path: str, activity: dict):
    request = remote.signed(f"{BASE}{path}", activity)
    headers = {name: request.headers[name] for name in SIGNED_HEADERS}
    return client.post(path, content=request.content, headers=headers)


def test_actor_document(client: TestClient):
    """Actors are served as JSON-LD with their public key"""
    response = client.get("/users/alice", headers={"Accept": "application/activity+json"})

    assert response.status_code == 200
    assert response.headers["Content-Type"] == AP_CONTENT_TYPE
    doc = response.json()
    assert doc["id"] == ALICE
    assert doc["type"] == "Person"
    assert doc["preferredUsername"] == "alice"
    assert doc["inbox"] == f"{ALICE}/inbox"
    assert doc["endpoints"]["sharedInbox"] == f"{BASE}/inbox"
    assert doc["manuallyApprovesFollowers"] is True
    assert doc["publicKey"]["id"] == f"{ALICE}#main-key"
    assert doc["publicKey"]["publicKeyPem"].startswith("-----BEGIN PUBLIC KEY-----")
    assert "privateKeyPem" not in str(doc)


def test_actor_keys_stable(client: TestClient):
    first = client.get("/users/bob").json()
    second = client.get("/users/bob").json()

    assert first["publicKey"] == second["publicKey"]
    assert first["manuallyApprovesFollowers"] is False


def test_actor_html_redirect(client: TestClient):
    response = client.get(
        "/users/alice", headers={"Accept": "text/html,*/*"}, follow_redirects=False
    )

    assert response.status_code == 303
    assert response.headers["Location"] == f"{BASE}/alice"


def test_actor_not_found(client: TestClient):
    assert client.get("/users/nobody").status_code == 404


def test_instance_actor(client: TestClient):
    doc = client.get("/actor").json()

    assert doc["id"] == f"{BASE}/actor"
    assert doc["type"] == "Service"
    assert doc["publicKey"]["id"] == f"{BASE}/actor#main-key"


def test_outbox(client: TestClient):
    collection = client.get("/users/alice/outbox").json()

    assert collection["type"] == "OrderedCollection"
    assert collection["totalItems"] == 1
    assert collection["first"] == f"{ALICE}/outbox?page=1"

    page = client.get("/users/alice/outbox?page=1").json()
    assert page["type"] == "OrderedCollectionPage"
    (item,) = page["orderedItems"]
    assert item["type"] == "Create"
    assert item["object"]["id"] == f"{ALICE}/entries/1"
    assert "next" not in page


@pytest.mark.parametrize("page", ["0", "-1", "abc"])
def test_outbox_bad_page(client: TestClient, page):
    assert client.get(f"/users/alice/outbox?page={page}").status_code == 400


def test_outbox_unknown_user(client: TestClient):
    assert client.get("/users/nobody/outbox").status_code == 404


def test_followers_count_only(client: TestClient, store):
    store.request_follow(CAROL, ALICE, f"{CAROL}#follows/1")
    store.set_follow_status(CAROL, ALICE, RelationshipStatus.ACCEPTED)

    doc = client.get("/users/alice/followers").json()

    assert doc["totalItems"] == 1
    assert "orderedItems" not in doc
    assert "items" not in doc


def test_entry(client: TestClient):
    response = client.get("/users/alice/entries/1")

    assert response.status_code == 200
    assert response.headers["Content-Type"] == AP_CONTENT_TYPE
    note = response.json()
    assert note["@context"] == "https://www.w3.org/ns/activitystreams"
    assert note["type"] == "Note"
    assert note["content"] == "<p>Hello fediverse</p>"
    assert note["attributedTo"] == ALICE


@pytest.mark.parametrize(
    "path",
    [
        "/users/alice/entries/2",
        "/users/alice/entries/3",
        "/users/bob/entries/1",
        "/users/alice/entries/99",
    ],
)
def test_entry_not_found(client: TestClient, path):
    """Entries that are not public or unlisted look like they do not exist"""
    assert client.get(path).status_code == 404


def test_deleted_entry(client: TestClient):
    response = client.get("/users/alice/entries/4")

    assert response.status_code == 410
    assert response.json()["type"] == "Tombstone"


def test_comment(client: TestClient):
    note = client.get("/users/bob/comments/1").json()

    assert note["inReplyTo"] == f"{ALICE}/entries/1"
    assert ALICE in note["to"]
    assert client.get("/users/alice/comments/1").status_code == 404


def test_inbox_content_type(client: TestClient):
    response = client.post(
        "/users/alice/inbox", content=b"{}", headers={"Content-Type": "text/plain"}
    )
    assert response.status_code == 415


def test_inbox_unsigned(client: TestClient, store):
    response = client.post("/users/alice/inbox", json=_reply())

    assert response.status_code == 401
    assert store.get_comment_by_ap_id(NOTE) is None


@pytest.mark.parametrize("path", ["/users/alice/inbox", "/inbox"])
def test_inbox_signed(client: TestClient, remote, store, path):
    response = _post_signed(client, remote, path, _reply())

    assert response.status_code == 202
    assert response.json()["status"] == "applied"
    assert store.get_comment_by_ap_id(NOTE).entry_id == 1


def test_inbox_unknown_user(client: TestClient, remote):
    response = _post_signed(client, remote, "/users/nobody/inbox", _reply())
    assert response.status_code == 404
