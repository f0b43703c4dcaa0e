# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

"""Mapping between native objects and ActivityStreams documents.

Outbound, native events become activities addressed according to the
privacy of the content. Inbound, activity documents are parsed into a
closed set of variants and mapped onto native changes.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any

from ..exceptions import MalformedActivityError
from ..iris import LocalIRIs
from ..store import FederationStore
from ..store.schema import (
    ACTOR_CONTEXT,
    ACTOR_TYPES,
    AS_CONTEXT,
    AS_PUBLIC,
    FEDERATED_PRIVACY,
    ActivityType,
    Privacy,
)
from .actor import Actor, _link, same_origin
from .changes import (
    AcceptOutgoingFollow,
    CreateFollow,
    Ignored,
    NativeChange,
    NotApplicable,
    OrphanObject,
    PurgeRemoteActor,
    RecordReaction,
    RemoveReaction,
    RemoveRelationship,
    SoftDeleteRemoteObject,
    UpsertRemoteComment,
)
from .events import (
    CommentCreated,
    CommentSnapshot,
    ContentDeleted,
    EntryPublished,
    EntrySnapshot,
    EntryUpdated,
    FollowApproved,
    FollowRejected,
    FollowRequested,
    NativeEvent,
    StampAdded,
    StampRemoved,
    Unfollowed,
    UserCreated,
)
from .sanitize import sanitize_html

NOTE_TYPES = {"Note", "Article"}


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _digest(value: str) -> str:
    return sha256(value.encode("utf-8")).hexdigest()[:16]


# Inbound activities


@dataclass(frozen=True)
class Create:
    id: str
    actor: str
    object: dict | str


@dataclass(frozen=True)
class Update:
    id: str
    actor: str
    object: dict | str


@dataclass(frozen=True)
class Follow:
    id: str
    actor: str
    object: str


@dataclass(frozen=True)
class Accept:
    id: str
    actor: str
    object: dict | str


@dataclass(frozen=True)
class Reject:
    id: str
    actor: str
    object: dict | str


@dataclass(frozen=True)
class Like:
    id: str
    actor: str
    object: str


@dataclass(frozen=True)
class Undo:
    id: str
    actor: str
    object: dict | str


@dataclass(frozen=True)
class Delete:
    id: str
    actor: str
    object: str


@dataclass(frozen=True)
class Unknown:
    id: str
    actor: str
    type: str


InboundActivity = Create | Update | Follow | Accept | Reject | Like | Undo | Delete | Unknown

_VARIANTS = {
    ActivityType.CREATE.value: Create,
    ActivityType.UPDATE.value: Update,
    ActivityType.FOLLOW.value: Follow,
    ActivityType.ACCEPT.value: Accept,
    ActivityType.REJECT.value: Reject,
    ActivityType.LIKE.value: Like,
    ActivityType.UNDO.value: Undo,
    ActivityType.DELETE.value: Delete,
}


def _object_value(value: Any) -> dict | str | None:
    if isinstance(value, list):
        value = value[0] if len(value) == 1 else None
    if isinstance(value, dict):
        return value if isinstance(value.get("id"), str) or "type" in value else None
    if isinstance(value, str) and value:
        return value
    return None


def _object_id(value: dict | str) -> str | None:
    if isinstance(value, dict):
        return value.get("id") if isinstance(value.get("id"), str) else None
    return value


def parse_activity(doc: Any) -> InboundActivity:
    """Build the variant for an activity document.

    Raises MalformedActivityError if the document lacks ``id``, ``type``
    or ``actor``. Types outside the supported set become Unknown.
    """
    if not isinstance(doc, dict):
        raise MalformedActivityError("Activity is not a JSON object")

    iri = doc.get("id")
    actor = _link(doc.get("actor"))
    type_ = doc.get("type")
    if not isinstance(iri, str) or not iri:
        raise MalformedActivityError("Activity has no id")
    if not actor:
        raise MalformedActivityError(f"Activity {iri} has no actor")
    if isinstance(type_, list):
        type_ = next((t for t in type_ if t in _VARIANTS), type_[0] if type_ else None)
    if not isinstance(type_, str) or not type_:
        raise MalformedActivityError(f"Activity {iri} has no type")

    if type_ not in _VARIANTS:
        return Unknown(iri, actor, type_)

    variant = _VARIANTS[type_]
    object_ = _object_value(doc.get("object"))
    if object_ is None:
        raise MalformedActivityError(f"{type_} {iri} has no usable object")
    if variant in (Follow, Like, Delete):
        object_ = _object_id(object_)
        if object_ is None:
            raise MalformedActivityError(f"{type_} {iri} has an object without id")
    return variant(iri, actor, object_)


@dataclass(frozen=True)
class InboundContext:
    """What the translator may consult while mapping an inbound activity."""

    store: FederationStore
    sender: Actor


class ObjectTranslator:
    def __init__(self, iris: LocalIRIs, web_url: str | None = None):
        self._iris = iris
        self._web_url = (web_url or iris.base_url).rstrip("/")

    # Local documents

    def actor_document(self, actor: Actor, manually_approves: bool = True) -> dict:
        username = actor.handle.split("@", 1)[0] if actor.handle else None
        doc = {
            "@context": ACTOR_CONTEXT,
            "id": actor.iri,
            "type": actor.actor_type,
            "preferredUsername": username,
            "name": actor.name,
            "summary": actor.summary or "",
            "inbox": actor.inbox,
            "endpoints": {"sharedInbox": actor.shared_inbox or self._iris.shared_inbox},
            "manuallyApprovesFollowers": manually_approves,
            "publicKey": {
                "id": actor.key_iri,
                "owner": actor.iri,
                "publicKeyPem": actor.public_key_pem,
            },
        }
        if actor.outbox:
            doc["outbox"] = actor.outbox
        if actor.followers:
            doc["followers"] = actor.followers
        if actor.actor_type == "Person" and username:
            doc["url"] = f"{self._web_url}/{username}"
        if actor.icon_url:
            doc["icon"] = {"type": "Image", "url": actor.icon_url}
        return doc

    def entry_iri(self, entry: EntrySnapshot) -> str:
        return entry.ap_id or self._iris.entry(entry.author, entry.id)

    def comment_iri(self, comment: CommentSnapshot) -> str:
        return comment.ap_id or self._iris.comment(comment.author, comment.id)

    def audience(self, username: str, privacy: Privacy) -> tuple[list[str], list[str]] | None:
        """Addressing (to, cc) for content of the given privacy, None if it stays local."""
        followers = self._iris.followers(username)
        match privacy:
            case Privacy.PUBLIC:
                return [AS_PUBLIC], [followers]
            case Privacy.UNLISTED:
                return [followers], [AS_PUBLIC]
            case Privacy.FRIENDS_ONLY:
                return [followers], []
            case _:
                return None

    def note_for_entry(self, entry: EntrySnapshot, context: bool = False) -> dict | NotApplicable:
        audience = self.audience(entry.author, entry.privacy)
        if audience is None:
            return NotApplicable(f"entry {entry.id} is {entry.privacy.value}")
        to, cc = audience

        note = {
            "id": self.entry_iri(entry),
            "type": "Note",
            "attributedTo": self._iris.actor(entry.author),
            "name": entry.title,
            "content": entry.body_html,
            "url": f"{self._web_url}/{entry.author}/{entry.slug or entry.id}",
            "published": _iso(entry.published_at),
            "to": to,
            "cc": cc,
        }
        if entry.updated_at and entry.updated_at != entry.published_at:
            note["updated"] = _iso(entry.updated_at)
        if context:
            note = {"@context": AS_CONTEXT, **note}
        return note

    def note_for_comment(
        self, comment: CommentSnapshot, context: bool = False
    ) -> dict | NotApplicable:
        audience = self.audience(comment.author, comment.entry.privacy)
        if audience is None:
            return NotApplicable(f"comment {comment.id} is on a {comment.entry.privacy.value} entry")
        to, cc = audience
        if comment.in_reply_to_author and comment.in_reply_to_author not in to:
            to = [*to, comment.in_reply_to_author]

        note = {
            "id": self.comment_iri(comment),
            "type": "Note",
            "attributedTo": self._iris.actor(comment.author),
            "inReplyTo": comment.in_reply_to,
            "context": self.entry_iri(comment.entry),
            "content": comment.body_html,
            "published": _iso(comment.created_at),
            "to": to,
            "cc": cc,
        }
        if context:
            note = {"@context": AS_CONTEXT, **note}
        return note

    def tombstone(self, iri: str, deleted_at: datetime | None = None) -> dict:
        doc = {"@context": AS_CONTEXT, "id": iri, "type": "Tombstone"}
        if deleted_at is not None:
            doc["deleted"] = _iso(deleted_at)
        return doc

    def _wrap(self, type_: ActivityType, iri: str, actor: str, object_: Any, **extra) -> dict:
        return {
            "@context": AS_CONTEXT,
            "id": iri,
            "type": type_.value,
            "actor": actor,
            "object": object_,
            **extra,
        }

    def _create(self, note: dict) -> dict:
        return self._wrap(
            ActivityType.CREATE,
            f"{note['id']}/activity",
            note["attributedTo"],
            note,
            published=note["published"],
            to=note["to"],
            cc=note["cc"],
        )

    def outbox_collection(self, username: str, total: int, page_size: int) -> dict:
        outbox = self._iris.outbox(username)
        last = max(1, -(-total // page_size))
        return {
            "@context": AS_CONTEXT,
            "id": outbox,
            "type": "OrderedCollection",
            "totalItems": total,
            "first": f"{outbox}?page=1",
            "last": f"{outbox}?page={last}",
        }

    def outbox_page(
        self, username: str, entries: list[EntrySnapshot], page: int, total: int, page_size: int
    ) -> dict:
        outbox = self._iris.outbox(username)
        items = []
        for entry in entries:
            note = self.note_for_entry(entry)
            if isinstance(note, dict):
                items.append(self._create(note))

        doc = {
            "@context": AS_CONTEXT,
            "id": f"{outbox}?page={page}",
            "type": "OrderedCollectionPage",
            "partOf": outbox,
            "totalItems": total,
            "orderedItems": items,
        }
        if page * page_size < total:
            doc["next"] = f"{outbox}?page={page + 1}"
        if page > 1:
            doc["prev"] = f"{outbox}?page={page - 1}"
        return doc

    def followers_collection(self, username: str, total: int) -> dict:
        # Follower lists stay private; only the count is published
        return {
            "@context": AS_CONTEXT,
            "id": self._iris.followers(username),
            "type": "OrderedCollection",
            "totalItems": total,
        }

    # Outbound

    def follow_iri(self, username: str, target_iri: str) -> str:
        return f"{self._iris.actor(username)}#follows/{_digest(target_iri)}"

    def like_iri(self, username: str, object_iri: str) -> str:
        return f"{self._iris.actor(username)}#likes/{_digest(object_iri)}"

    def _follow(self, iri: str | None, follower: str, following: str) -> dict:
        follow = {"type": ActivityType.FOLLOW.value, "actor": follower, "object": following}
        if iri:
            follow = {"id": iri, **follow}
        return follow

    def _like(self, event: StampAdded | StampRemoved) -> dict:
        actor = self._iris.actor(event.username)
        return self._wrap(
            ActivityType.LIKE,
            self.like_iri(event.username, event.object_iri),
            actor,
            event.object_iri,
            to=[event.object_author_iri] if event.object_author_iri else [],
        )

    def to_activity(self, event: NativeEvent) -> dict | NotApplicable:
        """Build the outbound activity for a native event."""
        match event:
            case UserCreated():
                return NotApplicable("new users have no followers yet")

            case EntryPublished(entry=entry):
                if entry.published_at is None:
                    return NotApplicable(f"entry {entry.id} is a draft")
                note = self.note_for_entry(entry)
                if isinstance(note, NotApplicable):
                    return note
                return self._create(note)

            case EntryUpdated(entry=entry):
                note = self.note_for_entry(entry)
                if isinstance(note, NotApplicable):
                    return note
                stamp = entry.updated_at or entry.published_at
                suffix = int(stamp.timestamp()) if stamp else 0
                return self._wrap(
                    ActivityType.UPDATE,
                    f"{note['id']}#updates/{suffix}",
                    note["attributedTo"],
                    note,
                    to=note["to"],
                    cc=note["cc"],
                )

            case CommentCreated(comment=comment):
                note = self.note_for_comment(comment)
                if isinstance(note, NotApplicable):
                    return note
                return self._create(note)

            case FollowRequested(username=username, target_iri=target, follow_iri=follow_iri):
                actor = self._iris.actor(username)
                activity = self._follow(
                    follow_iri or self.follow_iri(username, target), actor, target
                )
                return {"@context": AS_CONTEXT, **activity, "to": [target]}

            case FollowApproved(username=username, follower_iri=follower, follow_iri=follow_iri):
                actor = self._iris.actor(username)
                return self._wrap(
                    ActivityType.ACCEPT,
                    f"{actor}#accepts/{_digest(follow_iri or follower)}",
                    actor,
                    self._follow(follow_iri, follower, actor),
                    to=[follower],
                )

            case FollowRejected(username=username, follower_iri=follower, follow_iri=follow_iri):
                actor = self._iris.actor(username)
                return self._wrap(
                    ActivityType.REJECT,
                    f"{actor}#rejects/{_digest(follow_iri or follower)}",
                    actor,
                    self._follow(follow_iri, follower, actor),
                    to=[follower],
                )

            case StampAdded(object_iri=object_iri) | StampRemoved(object_iri=object_iri) if (
                self._iris.is_local(object_iri)
            ):
                return NotApplicable("reactions on local objects stay local")

            case StampAdded():
                return self._like(event)

            case StampRemoved():
                like = self._like(event)
                like.pop("@context")
                return self._wrap(
                    ActivityType.UNDO, f"{like['id']}/undo", like["actor"], like, to=like["to"]
                )

            case ContentDeleted(username=username, object_iri=object_iri, privacy=privacy):
                audience = self.audience(username, privacy)
                if audience is None:
                    return NotApplicable(f"{object_iri} was never federated")
                to, cc = audience
                if event.in_reply_to_author and event.in_reply_to_author not in to:
                    to = [*to, event.in_reply_to_author]
                tombstone = self.tombstone(object_iri)
                tombstone.pop("@context")
                return self._wrap(
                    ActivityType.DELETE,
                    f"{object_iri}#delete",
                    self._iris.actor(username),
                    tombstone,
                    to=to,
                    cc=cc,
                )

            case Unfollowed(username=username, target_iri=target, follow_iri=follow_iri):
                actor = self._iris.actor(username)
                follow = self._follow(
                    follow_iri or self.follow_iri(username, target), actor, target
                )
                return self._wrap(
                    ActivityType.UNDO, f"{follow['id']}/undo", actor, follow, to=[target]
                )

            case _:
                raise TypeError(f"Unsupported native event {event!r}")

    # Inbound

    def _anchor(self, store: FederationStore, iri: str | None) -> tuple[Any, int | None] | None:
        """Find the local entry (and parent comment) an IRI points to."""
        if not iri:
            return None
        entry = store.find_entry_by_iri(iri)
        if entry is not None:
            return entry, None
        comment = store.find_comment_by_iri(iri)
        if comment is not None:
            return store.get_entry(comment.entry_id), comment.id
        return None

    def _note_to_comment(
        self, activity: Create | Update, context: InboundContext
    ) -> NativeChange | Ignored | OrphanObject:
        note = activity.object
        if not isinstance(note, dict):
            return Ignored(f"object of {activity.id} is not embedded")
        if note.get("type") not in NOTE_TYPES:
            return Ignored(f"{note.get('type')} objects are not supported")

        note_iri = note.get("id")
        if not isinstance(note_iri, str) or not same_origin(note_iri, activity.actor):
            return Ignored("note id is missing or on a foreign origin")
        if _link(note.get("attributedTo")) != activity.actor:
            return Ignored(f"{note_iri} is not attributed to {activity.actor}")

        in_reply_to = _link(note.get("inReplyTo"))
        if in_reply_to is None:
            return Ignored(f"{note_iri} is not a reply to local content")

        anchor = self._anchor(context.store, in_reply_to)
        if anchor is None:
            # Threads on other servers may still point at our entry as context
            for key in ("context", "conversation"):
                anchor = self._anchor(context.store, _link(note.get(key)))
                if anchor is not None:
                    break
        if anchor is None:
            return OrphanObject(note_iri, in_reply_to)

        entry, parent_comment_id = anchor
        if entry.deleted_at is not None:
            return Ignored(f"entry {entry.id} was deleted")
        if Privacy(entry.privacy) not in FEDERATED_PRIVACY:
            return Ignored(f"entry {entry.id} does not accept federated replies")

        sender = context.sender
        return UpsertRemoteComment(
            note_iri=note_iri,
            entry_id=entry.id,
            parent_comment_id=parent_comment_id,
            author_iri=activity.actor,
            author_name=sender.name or sender.handle,
            author_avatar=sender.icon_url,
            content_html=sanitize_html(note.get("content")),
            published=_parse_datetime(note.get("published")),
        )

    def _embedded_follow(
        self, object_: dict | str, context: InboundContext
    ) -> tuple[str | None, str | None, str | None]:
        """(follow IRI, follower, followee) of an accepted or rejected Follow."""
        if isinstance(object_, dict):
            if object_.get("type") not in (None, ActivityType.FOLLOW.value):
                return None, None, None
            follow_iri = object_.get("id")
            follower = _link(object_.get("actor"))
            following = _link(object_.get("object"))
            if follower and following:
                return follow_iri, follower, following
            object_ = follow_iri
        if not object_:
            return None, None, None

        relationship = context.store.get_relationship_by_follow(object_)
        if relationship is None:
            return object_, None, None
        return object_, relationship.follower_iri, relationship.following_iri

    def from_activity(
        self, activity: InboundActivity, context: InboundContext
    ) -> NativeChange | Ignored | OrphanObject:
        """Map an inbound activity onto the native change it implies."""
        store = context.store
        match activity:
            case Create() | Update():
                if isinstance(activity.object, dict) and activity.object.get("type") in ACTOR_TYPES:
                    return Ignored("actor updates only refresh the actor cache")
                return self._note_to_comment(activity, context)

            case Follow(object=target):
                user = store.find_user_by_iri(target)
                if user is None:
                    return Ignored(f"{target} is not a local actor")
                return CreateFollow(
                    follower_iri=activity.actor,
                    following_iri=target,
                    follow_activity_iri=activity.id,
                    auto_accept=not user.requires_approval,
                )

            case Accept(object=object_) | Reject(object=object_):
                follow_iri, follower, following = self._embedded_follow(object_, context)
                if follower is None or following != activity.actor:
                    return Ignored(f"{activity.id} answers no follow request by us")
                if store.find_user_by_iri(follower) is None:
                    return Ignored(f"{follower} is not a local actor")
                if isinstance(activity, Accept):
                    return AcceptOutgoingFollow(follower, following, follow_iri)
                return RemoveRelationship(follower, following)

            case Like(object=object_iri):
                entry = store.find_entry_by_iri(object_iri)
                if entry is None:
                    comment = store.find_comment_by_iri(object_iri)
                    if comment is None or comment.user_id is None:
                        return Ignored(f"{object_iri} is not local content")
                    # Comments share the federation scope of their entry
                    entry = store.get_entry(comment.entry_id)
                if entry is None or entry.deleted_at is not None:
                    return Ignored(f"{object_iri} is not local content")
                if Privacy(entry.privacy) not in FEDERATED_PRIVACY:
                    return Ignored(f"entry {entry.id} is not federated")
                return RecordReaction(activity.actor, object_iri, activity.id)

            case Undo(object=dict() as inner):
                inner_type = inner.get("type")
                if _link(inner.get("actor")) not in (None, activity.actor):
                    return Ignored(f"{activity.actor} cannot undo another actor's activity")
                target = _link(inner.get("object"))
                if inner_type == ActivityType.FOLLOW.value and target:
                    return RemoveRelationship(activity.actor, target)
                if inner_type == ActivityType.LIKE.value and target:
                    return RemoveReaction(activity.actor, target)
                if isinstance(inner.get("id"), str):
                    return self.from_activity(Undo(activity.id, activity.actor, inner["id"]), context)
                return Ignored(f"undoing {inner_type} is not supported")

            case Undo(object=str() as inner_iri):
                relationship = store.get_relationship_by_follow(inner_iri)
                if relationship is not None and relationship.follower_iri == activity.actor:
                    return RemoveRelationship(activity.actor, relationship.following_iri)
                reaction = store.get_reaction_by_activity(inner_iri)
                if reaction is not None and reaction.actor_iri == activity.actor:
                    return RemoveReaction(activity.actor, reaction.object_iri)
                return Ignored(f"{inner_iri} is not known here")

            case Delete(object=object_iri):
                if object_iri == activity.actor:
                    return PurgeRemoteActor(activity.actor)
                return SoftDeleteRemoteObject(object_iri, activity.actor)

            case Unknown(type=type_):
                return Ignored(f"{type_} activities are not supported")

            case _:
                return Ignored(f"{activity!r} is not supported")


__all__ = [
    "Accept",
    "Create",
    "Delete",
    "Follow",
    "InboundActivity",
    "InboundContext",
    "Like",
    "ObjectTranslator",
    "Reject",
    "Undo",
    "Unknown",
    "Update",
    "parse_activity",
]
