# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio

import httpx
import pytest
from sqlalchemy import func, select

from inkfed.store.models import Comment
from inkfed.store.schema import InboxState, RelationshipStatus

BASE = "https://inkwell.test"
ALICE = f"{BASE}/users/alice"
BOB = f"{BASE}/users/bob"
CAROL = "https://example.org/users/carol"
DAVE = "https://example.org/users/dave"
NOTE = f"{CAROL}/statuses/1"


def _reply(in_reply_to: str = f"{ALICE}/entries/1", content: str = "<p>Nice!</p>") -> dict:
    return {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": f"{NOTE}/activity",
        "type": "Create",
        "actor": CAROL,
        "object": {
            "id": NOTE,
            "type": "Note",
            "attributedTo": CAROL,
            "inReplyTo": in_reply_to,
            "content": content,
            "to": ["https://www.w3.org/ns/activitystreams#Public"],
        },
    }


def _follow(target: str, number: int = 1) -> dict:
    return {"id": f"{CAROL}#follows/{number}", "type": "Follow", "actor": CAROL, "object": target}


async def _post(federation, remote, activity: dict, recipient: str | None = "alice", **kwargs):
    url = f"{BASE}/users/{recipient}/inbox" if recipient else f"{BASE}/inbox"
    request = remote.signed(url, activity, **kwargs)
    return await federation.inbox.process(request, request.content, recipient=recipient)


@pytest.mark.asyncio
async def test_reply_creates_comment(federation, remote, store):
    result = await _post(federation, remote, _reply(content="<p>Nice!</p><script>x()</script>"))

    assert result.status == 202
    assert result.state == InboxState.APPLIED

    comment = store.get_comment_by_ap_id(NOTE)
    assert comment.entry_id == 1
    assert comment.user_id is None
    assert comment.body_html == "<p>Nice!</p>"
    assert comment.remote_author_iri == CAROL
    assert comment.remote_author_name == "Carol"
    assert comment.remote_author_instance == "example.org"
    assert store.get_activity_record(f"{NOTE}/activity").state == InboxState.APPLIED.value


@pytest.mark.asyncio
async def test_duplicate_delivery(federation, remote, store):
    """The same activity delivered twice is applied once"""
    first = await _post(federation, remote, _reply())
    second = await _post(federation, remote, _reply(), recipient=None)

    assert first.status == second.status == 202
    assert second.outcome == "duplicate"
    assert remote.fetches(CAROL) == 1
    with store.session() as session:
        assert session.scalar(select(func.count(Comment.id)).where(Comment.ap_id == NOTE)) == 1


@pytest.mark.asyncio
async def test_unsigned_rejected(federation, store):
    request = httpx.Request("POST", f"{ALICE}/inbox", json=_reply())
    result = await federation.inbox.process(request, request.content, recipient="alice")

    assert result.status == 401
    assert result.state == InboxState.REJECTED
    assert store.get_comment_by_ap_id(NOTE) is None


@pytest.mark.asyncio
async def test_signed_by_other_actor(federation, remote, store):
    result = await _post(federation, remote, _reply(), actor=DAVE)

    assert result.status == 401
    assert "signed by" in result.outcome
    assert store.get_comment_by_ap_id(NOTE) is None


@pytest.mark.asyncio
async def test_malformed(federation, remote):
    assert (await _post(federation, remote, None, body=b"not json")).status == 400
    assert (await _post(federation, remote, {"type": "Create", "actor": CAROL})).status == 400


@pytest.mark.asyncio
async def test_unknown_recipient(federation, remote):
    result = await _post(federation, remote, _reply(), recipient="nobody")
    assert result.status == 404


@pytest.mark.asyncio
async def test_orphan_reply_dropped(federation, remote, store):
    result = await _post(federation, remote, _reply(in_reply_to="https://other.example/notes/1"))

    assert result.status == 202
    assert result.outcome.startswith("orphan")
    assert store.get_comment_by_ap_id(NOTE) is None


@pytest.mark.asyncio
async def test_update_edits_comment(federation, remote, store):
    await _post(federation, remote, _reply())
    update = _reply(content="<p>Edited</p>")
    update["id"] = f"{NOTE}#updates/1"
    update["type"] = "Update"

    result = await _post(federation, remote, update)

    assert result.status == 202
    assert store.get_comment_by_ap_id(NOTE).body_html == "<p>Edited</p>"


@pytest.mark.asyncio
async def test_delete_comment(federation, remote, store):
    await _post(federation, remote, _reply())
    delete = {"id": f"{NOTE}#delete", "type": "Delete", "actor": CAROL, "object": NOTE}

    result = await _post(federation, remote, delete)

    assert result.status == 202
    assert store.get_comment_by_ap_id(NOTE).deleted_at is not None


@pytest.mark.asyncio
async def test_follow_requires_approval(federation, remote, store):
    result = await _post(federation, remote, _follow(ALICE))

    assert result.status == 202
    relationship = store.get_relationship(CAROL, ALICE)
    assert relationship.status == RelationshipStatus.PENDING.value
    assert relationship.follow_activity_iri == f"{CAROL}#follows/1"
    assert store.queued_deliveries() == []


@pytest.mark.asyncio
async def test_follow_auto_accepted(federation, remote, store):
    result = await _post(federation, remote, _follow(BOB), recipient="bob")

    assert result.status == 202
    assert store.get_relationship(CAROL, BOB).status == RelationshipStatus.ACCEPTED.value

    (task,) = store.queued_deliveries()
    assert task.inbox == "https://example.org/inbox"
    assert task.signer == BOB
    assert task.payload["type"] == "Accept"
    assert task.payload["object"]["id"] == f"{CAROL}#follows/1"


@pytest.mark.asyncio
async def test_undo_follow(federation, remote, store):
    await _post(federation, remote, _follow(ALICE))
    undo = {
        "id": f"{CAROL}#follows/1/undo",
        "type": "Undo",
        "actor": CAROL,
        "object": f"{CAROL}#follows/1",
    }

    result = await _post(federation, remote, undo)

    assert result.status == 202
    assert store.get_relationship(CAROL, ALICE) is None


@pytest.mark.asyncio
async def test_accept_outgoing_follow(federation, remote, store):
    store.request_follow(ALICE, CAROL, f"{ALICE}#follows/abc")
    accept = {
        "id": f"{CAROL}#accepts/1",
        "type": "Accept",
        "actor": CAROL,
        "object": f"{ALICE}#follows/abc",
    }

    result = await _post(federation, remote, accept)

    assert result.status == 202
    assert store.get_relationship(ALICE, CAROL).status == RelationshipStatus.ACCEPTED.value


@pytest.mark.asyncio
async def test_reject_outgoing_follow(federation, remote, store):
    store.request_follow(ALICE, CAROL, f"{ALICE}#follows/abc")
    reject = {
        "id": f"{CAROL}#rejects/1",
        "type": "Reject",
        "actor": CAROL,
        "object": {"id": f"{ALICE}#follows/abc", "type": "Follow", "actor": ALICE, "object": CAROL},
    }

    await _post(federation, remote, reject)

    assert store.get_relationship(ALICE, CAROL) is None


@pytest.mark.asyncio
async def test_like_and_undo(federation, remote, store):
    like = {"id": f"{CAROL}#likes/1", "type": "Like", "actor": CAROL, "object": f"{ALICE}/entries/1"}
    await _post(federation, remote, like)
    assert [r.actor_iri for r in store.list_reactions(f"{ALICE}/entries/1")] == [CAROL]

    undo = {"id": f"{CAROL}#likes/1/undo", "type": "Undo", "actor": CAROL, "object": like}
    await _post(federation, remote, undo)
    assert store.list_reactions(f"{ALICE}/entries/1") == []


@pytest.mark.asyncio
async def test_delete_unknown_actor(federation, remote):
    """Deletes of actors we never saw are accepted without fetching them"""
    delete = {"id": f"{CAROL}#delete", "type": "Delete", "actor": CAROL, "object": CAROL}
    request = httpx.Request("POST", f"{BASE}/inbox", json=delete)

    result = await federation.inbox.process(request, request.content)

    assert result.status == 202
    assert remote.requests == []


@pytest.mark.asyncio
async def test_delete_known_actor(federation, remote, store):
    await _post(federation, remote, _follow(ALICE))
    await _post(federation, remote, _reply())
    remote.statuses[CAROL] = 410
    delete = {"id": f"{CAROL}#delete", "type": "Delete", "actor": CAROL, "object": CAROL}

    result = await _post(federation, remote, delete)

    assert result.status == 202
    assert store.get_relationship(CAROL, ALICE) is None
    assert store.get_comment_by_ap_id(NOTE).deleted_at is not None
    assert store.get_actor_record(CAROL) is None


@pytest.mark.asyncio
async def test_failed_activity_processed_again(federation, remote, store, monkeypatch):
    """A failure is recorded, and the sender's retry is not treated as duplicate"""

    def _broken(change):
        raise RuntimeError("database is gone")

    with monkeypatch.context() as patch:
        patch.setattr(store, "apply", _broken)
        failed = await _post(federation, remote, _reply())

    assert failed.status == 500
    assert store.get_activity_record(f"{NOTE}/activity").state == InboxState.FAILED.value

    retried = await _post(federation, remote, _reply())
    assert retried.status == 202
    assert store.get_comment_by_ap_id(NOTE) is not None


@pytest.mark.asyncio
async def test_replay(federation, remote, store):
    result = await federation.inbox.replay(_reply())

    assert result.status == 202
    assert store.get_comment_by_ap_id(NOTE) is not None


@pytest.mark.asyncio
async def test_interrupted_activity_processed_again(federation, remote, store, monkeypatch):
    """A cancelled run releases its claim, so the sender's retry is applied"""

    async def _cancelled(iri, refresh=False):
        raise asyncio.CancelledError()

    # Cached, so verifying the signature does not need the resolver
    await federation.resolver.resolve_remote(CAROL)
    with monkeypatch.context() as patch:
        patch.setattr(federation.resolver, "resolve_remote", _cancelled)
        with pytest.raises(asyncio.CancelledError):
            await _post(federation, remote, _reply())

    record = store.get_activity_record(f"{NOTE}/activity")
    assert record.state == InboxState.FAILED.value
    assert record.outcome == "interrupted"

    retried = await _post(federation, remote, _reply())
    assert retried.status == 202
    assert retried.outcome != "duplicate"
    assert store.get_comment_by_ap_id(NOTE) is not None
