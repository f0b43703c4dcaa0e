# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

"""Native events announced by the application, and the listener receiving them.

The application publishes JSON messages of the form
``{"event": "entry_published", "entry_id": 42}`` on a Redis channel.
Messages carry row IDs only; :func:`parse_event` loads the rows and turns
them into immutable snapshots the translator can work on.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis

from ..exceptions import MalformedActivityError, NotFoundError
from ..store import FederationStore
from ..store.models import Comment, Entry, User
from ..store.schema import Privacy

if TYPE_CHECKING:
    from .outbox import DispatchResult, OutboxDispatcher


@dataclass(frozen=True)
class EntrySnapshot:
    id: int
    author: str
    title: str | None
    body_html: str
    privacy: Privacy
    published_at: datetime | None
    updated_at: datetime | None = None
    ap_id: str | None = None
    slug: str | None = None

    @classmethod
    def from_model(cls, entry: Entry, author: User) -> "EntrySnapshot":
        return cls(
            id=entry.id,
            author=author.username,
            title=entry.title,
            body_html=entry.body_html,
            privacy=Privacy(entry.privacy),
            published_at=entry.published_at,
            updated_at=entry.updated_at,
            ap_id=entry.ap_id,
            slug=entry.slug,
        )


@dataclass(frozen=True)
class CommentSnapshot:
    id: int
    author: str
    body_html: str
    entry: EntrySnapshot
    # IRI of the parent comment, or of the entry for top-level comments
    in_reply_to: str
    in_reply_to_author: str | None = None
    created_at: datetime | None = None
    ap_id: str | None = None


@dataclass(frozen=True)
class UserCreated:
    username: str


@dataclass(frozen=True)
class EntryPublished:
    entry: EntrySnapshot


@dataclass(frozen=True)
class EntryUpdated:
    entry: EntrySnapshot


@dataclass(frozen=True)
class CommentCreated:
    comment: CommentSnapshot


@dataclass(frozen=True)
class FollowRequested:
    username: str
    target_iri: str
    follow_iri: str | None = None


@dataclass(frozen=True)
class FollowApproved:
    username: str
    follower_iri: str
    follow_iri: str | None = None


@dataclass(frozen=True)
class FollowRejected:
    username: str
    follower_iri: str
    follow_iri: str | None = None


@dataclass(frozen=True)
class StampAdded:
    username: str
    object_iri: str
    object_author_iri: str | None = None
    kind: str = "like"


@dataclass(frozen=True)
class StampRemoved:
    username: str
    object_iri: str
    object_author_iri: str | None = None
    kind: str = "like"


@dataclass(frozen=True)
class ContentDeleted:
    username: str
    object_iri: str
    privacy: Privacy
    in_reply_to_author: str | None = None


@dataclass(frozen=True)
class Unfollowed:
    username: str
    target_iri: str
    follow_iri: str | None = None


NativeEvent = (
    UserCreated
    | EntryPublished
    | EntryUpdated
    | CommentCreated
    | FollowRequested
    | FollowApproved
    | FollowRejected
    | StampAdded
    | StampRemoved
    | ContentDeleted
    | Unfollowed
)


def _required(message: dict[str, Any], key: str) -> Any:
    try:
        return message[key]
    except KeyError:
        raise MalformedActivityError(f"Event {message.get('event')} lacks {key}") from None


def _user(store: FederationStore, message: dict[str, Any]) -> User:
    if "user_id" in message:
        user = store.get_user_by_id(int(message["user_id"]))
    else:
        user = store.get_user(_required(message, "username"))
    if user is None:
        raise NotFoundError(f"User of event {message.get('event')} does not exist")
    return user


def entry_snapshot(store: FederationStore, entry_id: int) -> EntrySnapshot:
    entry = store.get_entry(entry_id)
    if entry is None:
        raise NotFoundError(f"Entry {entry_id} does not exist")
    return EntrySnapshot.from_model(entry, store.get_user_by_id(entry.user_id))


def comment_snapshot(store: FederationStore, comment: Comment) -> CommentSnapshot:
    if comment.user_id is None:
        raise NotFoundError(f"Comment {comment.id} is not authored locally")
    author = store.get_user_by_id(comment.user_id)
    entry = entry_snapshot(store, comment.entry_id)

    in_reply_to_author = None
    if comment.parent_comment_id is not None:
        parent = store.get_comment(comment.parent_comment_id)
        if parent.user_id is None:
            in_reply_to = parent.ap_id
            in_reply_to_author = parent.remote_author_iri
        else:
            in_reply_to = store.comment_iri(parent)
            in_reply_to_author = store.iris.actor(store.get_user_by_id(parent.user_id).username)
    else:
        in_reply_to = store.entry_iri(store.get_entry(comment.entry_id))
        in_reply_to_author = store.iris.actor(entry.author)

    return CommentSnapshot(
        id=comment.id,
        author=author.username,
        body_html=comment.body_html,
        entry=entry,
        in_reply_to=in_reply_to,
        in_reply_to_author=in_reply_to_author,
        created_at=comment.created_at,
        ap_id=comment.ap_id,
    )


def parse_event(message: dict[str, Any], store: FederationStore) -> NativeEvent:
    """Load the rows a notification refers to and build the native event."""
    match message.get("event"):
        case "user_created":
            return UserCreated(_user(store, message).username)
        case "entry_published":
            return EntryPublished(entry_snapshot(store, int(_required(message, "entry_id"))))
        case "entry_updated":
            return EntryUpdated(entry_snapshot(store, int(_required(message, "entry_id"))))
        case "comment_created":
            comment = store.get_comment(int(_required(message, "comment_id")))
            if comment is None:
                raise NotFoundError(f"Comment {message['comment_id']} does not exist")
            return CommentCreated(comment_snapshot(store, comment))
        case "follow_requested":
            return FollowRequested(
                _user(store, message).username,
                _required(message, "target_iri"),
                message.get("follow_iri"),
            )
        case "follow_approved":
            return FollowApproved(
                _user(store, message).username,
                _required(message, "follower_iri"),
                message.get("follow_iri"),
            )
        case "follow_rejected":
            return FollowRejected(
                _user(store, message).username,
                _required(message, "follower_iri"),
                message.get("follow_iri"),
            )
        case "stamp_added":
            return StampAdded(
                _user(store, message).username,
                _required(message, "object_iri"),
                message.get("object_author_iri"),
                message.get("kind", "like"),
            )
        case "stamp_removed":
            return StampRemoved(
                _user(store, message).username,
                _required(message, "object_iri"),
                message.get("object_author_iri"),
                message.get("kind", "like"),
            )
        case "content_deleted":
            return _content_deleted(store, message)
        case "unfollowed":
            return Unfollowed(
                _user(store, message).username,
                _required(message, "target_iri"),
                message.get("follow_iri"),
            )
        case other:
            raise MalformedActivityError(f"Unknown event {other!r}")


def _content_deleted(store: FederationStore, message: dict[str, Any]) -> ContentDeleted:
    if "entry_id" in message:
        entry = entry_snapshot(store, int(message["entry_id"]))
        object_iri = entry.ap_id or store.iris.entry(entry.author, entry.id)
        return ContentDeleted(entry.author, object_iri, entry.privacy)

    comment = store.get_comment(int(_required(message, "comment_id")))
    if comment is None:
        raise NotFoundError(f"Comment {message['comment_id']} does not exist")
    snapshot = comment_snapshot(store, comment)
    object_iri = snapshot.ap_id or store.iris.comment(snapshot.author, snapshot.id)
    return ContentDeleted(
        snapshot.author, object_iri, snapshot.entry.privacy, snapshot.in_reply_to_author
    )


class EventListener:
    """Subscribes to the application's notification channel."""

    def __init__(
        self,
        redis_url: str,
        channel: str,
        store: FederationStore,
        dispatcher: "OutboxDispatcher",
        logger: logging.Logger | None = None,
    ):
        self._redis_url = redis_url
        self._channel = channel
        self._store = store
        self._dispatcher = dispatcher
        self._logger = logger or logging.getLogger(__name__)

    async def handle(self, data: bytes | str) -> "DispatchResult | None":
        """Turn one raw message into a dispatch; bad messages are logged and dropped."""
        try:
            message = json.loads(data)
            if not isinstance(message, dict):
                raise MalformedActivityError("Event message is not an object")
            event = parse_event(message, self._store)
        except (ValueError, TypeError, MalformedActivityError, NotFoundError) as ex:
            self._logger.warning("Dropping event message %r: %s", data, ex)
            return None

        self._logger.debug("Received %s", event)
        return await self._dispatcher.publish(event)

    async def run(self) -> None:
        self._logger.info("Listening for events on %s", self._channel)
        client = redis.from_url(self._redis_url)
        try:
            async with client.pubsub() as pubsub:
                await pubsub.subscribe(self._channel)
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    try:
                        await self.handle(message["data"])
                    except Exception:
                        # One broken event must not stop the listener
                        self._logger.exception("Handling event %r failed", message["data"])
        finally:
            await client.aclose()


__all__ = [
    "CommentCreated",
    "CommentSnapshot",
    "ContentDeleted",
    "EntryPublished",
    "EntrySnapshot",
    "EntryUpdated",
    "EventListener",
    "FollowApproved",
    "FollowRejected",
    "FollowRequested",
    "NativeEvent",
    "StampAdded",
    "StampRemoved",
    "Unfollowed",
    "UserCreated",
    "comment_snapshot",
    "entry_snapshot",
    "parse_event",
]
