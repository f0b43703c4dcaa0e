# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import json
from datetime import datetime, timezone
from typing import Generator

import httpx
import pytest
import pytest_asyncio
from dynaconf.base import LazySettings
from starlette.testclient import TestClient

from inkfed.federation.context import FederationContext, create_context
from inkfed.federation.keys import generate_keypair
from inkfed.federation.signatures import load_private_key, sign_request
from inkfed.settings import get_settings
from inkfed.store import FederationStore, get_store
from inkfed.store.models import Comment, Entry, User
from inkfed.store.schema import ACTIVITY_JSON, ACTOR_CONTEXT, Privacy

BASE_URL = "https://inkwell.test"
INTERNAL_TOKEN = "s3cret"

REMOTE_ACCOUNTS = {
    "https://example.org/users/carol": ("carol", "Carol", "https://example.org/inbox"),
    "https://example.org/users/dave": ("dave", "Dave", "https://example.org/inbox"),
    "https://other.example/users/erin": ("erin", "Erin", None),
}


class RemoteServer:
    """Remote instances, answering the engine's requests through an httpx.MockTransport."""

    carol = "https://example.org/users/carol"
    dave = "https://example.org/users/dave"
    erin = "https://other.example/users/erin"

    def __init__(self, keys: dict[str, tuple[str, str]]):
        self.keys = keys
        self.documents: dict[str, dict] = {}
        self.statuses: dict[str, int] = {}
        self.inbox_responses: list[int | Exception] = []
        self.requests: list[httpx.Request] = []

        for iri, (username, name, shared_inbox) in REMOTE_ACCOUNTS.items():
            self.documents[iri] = self.actor_document(iri, username, name, shared_inbox)

    def actor_document(
        self, iri: str, username: str, name: str, shared_inbox: str | None = None
    ) -> dict:
        doc = {
            "@context": ACTOR_CONTEXT,
            "id": iri,
            "type": "Person",
            "preferredUsername": username,
            "name": name,
            "inbox": f"{iri}/inbox",
            "outbox": f"{iri}/outbox",
            "followers": f"{iri}/followers",
            "publicKey": {
                "id": f"{iri}#main-key",
                "owner": iri,
                "publicKeyPem": self.keys[iri][0],
            },
        }
        if shared_inbox:
            doc["endpoints"] = {"sharedInbox": shared_inbox}
        return doc

    def _webfinger(self, request: httpx.Request) -> httpx.Response:
        resource = request.url.params.get("resource", "")
        for iri, (username, _, _) in REMOTE_ACCOUNTS.items():
            if resource == f"acct:{username}@{request.url.host}":
                return httpx.Response(
                    200,
                    json={
                        "subject": resource,
                        "links": [{"rel": "self", "type": ACTIVITY_JSON, "href": iri}],
                    },
                )
        return httpx.Response(404)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.method == "POST":
            response = self.inbox_responses.pop(0) if self.inbox_responses else 202
            if isinstance(response, Exception):
                raise response
            return httpx.Response(response)

        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        if request.url.path == "/.well-known/webfinger":
            return self._webfinger(request)
        if url in self.statuses:
            return httpx.Response(self.statuses[url])
        if url in self.documents:
            return httpx.Response(200, json=self.documents[url])
        return httpx.Response(404)

    def fetches(self, url: str) -> int:
        return sum(1 for r in self.requests if r.method == "GET" and str(r.url) == url)

    @property
    def deliveries(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def signed(
        self, url: str, activity: dict | None = None, actor: str = carol, body: bytes | None = None
    ) -> httpx.Request:
        """A POST of the activity, signed with the key of a remote actor."""
        if body is None:
            body = json.dumps(activity).encode("utf-8")
        request = httpx.Request("POST", url, content=body, headers={"Content-Type": ACTIVITY_JSON})
        private_key = load_private_key(self.keys[actor][1])
        return sign_request(request, private_key, f"{actor}#main-key")


@pytest.fixture(scope="session")
def remote_keys() -> dict[str, tuple[str, str]]:
    return {iri: generate_keypair() for iri in REMOTE_ACCOUNTS}


@pytest.fixture()
def remote(remote_keys: dict[str, tuple[str, str]]) -> RemoteServer:
    return RemoteServer(remote_keys)


@pytest.fixture()
def settings(tmp_path) -> LazySettings:
    return get_settings(
        [],
        **{
            "instance.host": "inkwell.test",
            "instance.scheme": "https",
            "database.uri": f"sqlite:///{tmp_path / 'inkfed.db'}",
            "delivery.run_worker": False,
            "server.internal_token": INTERNAL_TOKEN,
        },
    )


def _seed(store: FederationStore) -> None:
    published = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    with store.transaction() as session:
        session.add_all(
            [
                User(id=1, username="alice", display_name="Alice", bio="Writes things"),
                User(id=2, username="bob", display_name="Bob", requires_approval=False),
            ]
        )
        session.flush()
        session.add_all(
            [
                Entry(
                    id=1,
                    user_id=1,
                    title="Hello",
                    body_html="<p>Hello fediverse</p>",
                    privacy=Privacy.PUBLIC.value,
                    slug="hello",
                    published_at=published,
                ),
                Entry(
                    id=2,
                    user_id=1,
                    title="Diary",
                    body_html="<p>Secret</p>",
                    privacy=Privacy.PRIVATE.value,
                    published_at=published,
                ),
                Entry(
                    id=3,
                    user_id=1,
                    title="Friends",
                    body_html="<p>For friends</p>",
                    privacy=Privacy.FRIENDS_ONLY.value,
                    published_at=published,
                ),
                Entry(
                    id=4,
                    user_id=1,
                    title="Gone",
                    body_html="<p>Deleted</p>",
                    privacy=Privacy.PUBLIC.value,
                    published_at=published,
                    deleted_at=published,
                ),
            ]
        )
        session.flush()
        session.add(Comment(id=1, entry_id=1, user_id=2, body_html="<p>Welcome!</p>"))


@pytest.fixture()
def store(settings: LazySettings) -> Generator[FederationStore, None, None]:
    with get_store(settings) as store:
        _seed(store)
        yield store


@pytest_asyncio.fixture()
async def federation(
    settings: LazySettings, store: FederationStore, remote: RemoteServer
) -> FederationContext:
    ctx = create_context(settings, store=store, transport=httpx.MockTransport(remote.handler))
    yield ctx
    await ctx.aclose()


@pytest.fixture()
def client(
    settings: LazySettings, store: FederationStore, remote: RemoteServer
) -> Generator[TestClient, None, None]:
    from inkfed.server.app import create_app

    app = create_app(settings, transport=httpx.MockTransport(remote.handler))
    with TestClient(app, base_url=BASE_URL) as client:
        yield client
