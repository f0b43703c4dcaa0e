# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from urllib.parse import urlparse

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from ..federation.changes import (
    AcceptOutgoingFollow,
    AppliedChange,
    CreateFollow,
    NativeChange,
    PurgeRemoteActor,
    RecordReaction,
    RemoveReaction,
    RemoveRelationship,
    SoftDeleteRemoteObject,
    UpsertRemoteComment,
)
from .models import ActorRecord, Comment, Reaction, Relationship, utcnow
from .schema import ActorKind, RelationshipStatus


class NativeChangeMixin:
    """Applies translated inbound activities, each in a single transaction."""

    def apply(self, change: NativeChange) -> AppliedChange:
        with self.transaction() as session:
            match change:
                case UpsertRemoteComment():
                    return self._upsert_remote_comment(session, change)
                case CreateFollow():
                    return self._create_follow(session, change)
                case AcceptOutgoingFollow():
                    return self._accept_outgoing_follow(session, change)
                case RemoveRelationship():
                    return self._remove_relationship(session, change)
                case RecordReaction():
                    return self._record_reaction(session, change)
                case RemoveReaction():
                    return self._remove_reaction(session, change)
                case SoftDeleteRemoteObject():
                    return self._soft_delete_remote_object(session, change)
                case PurgeRemoteActor():
                    return self._purge_remote_actor(session, change)
                case _:
                    raise TypeError(f"Unsupported native change {change!r}")

    def _upsert_remote_comment(
        self, session: Session, change: UpsertRemoteComment
    ) -> AppliedChange:
        comment = session.scalars(select(Comment).where(Comment.ap_id == change.note_iri)).first()
        if comment is not None:
            if comment.remote_author_iri != change.author_iri:
                return AppliedChange(f"{change.note_iri} belongs to another author", False)
            if comment.deleted_at is not None:
                return AppliedChange(f"{change.note_iri} was deleted; not restoring", False)
            comment.body_html = change.content_html
            comment.remote_author_name = change.author_name
            comment.remote_author_avatar = change.author_avatar
            comment.updated_at = utcnow()
            return AppliedChange(f"updated remote comment {change.note_iri}", True)

        session.add(
            Comment(
                entry_id=change.entry_id,
                parent_comment_id=change.parent_comment_id,
                body_html=change.content_html,
                ap_id=change.note_iri,
                remote_author_iri=change.author_iri,
                remote_author_name=change.author_name,
                remote_author_avatar=change.author_avatar,
                remote_author_instance=urlparse(change.author_iri).netloc,
                created_at=change.published or utcnow(),
            )
        )
        return AppliedChange(f"created remote comment {change.note_iri}", True)

    def _create_follow(self, session: Session, change: CreateFollow) -> AppliedChange:
        existing = session.scalars(
            select(Relationship).where(
                Relationship.follower_iri == change.follower_iri,
                Relationship.following_iri == change.following_iri,
            )
        ).first()
        if existing is not None:
            return AppliedChange(
                f"{change.follower_iri} already has a {existing.status} follow", False
            )

        status = RelationshipStatus.ACCEPTED if change.auto_accept else RelationshipStatus.PENDING
        session.add(
            Relationship(
                follower_iri=change.follower_iri,
                following_iri=change.following_iri,
                status=status.value,
                follow_activity_iri=change.follow_activity_iri,
            )
        )
        return AppliedChange(f"{status.value} follow of {change.following_iri}", True)

    def _accept_outgoing_follow(
        self, session: Session, change: AcceptOutgoingFollow
    ) -> AppliedChange:
        query = update(Relationship).where(
            Relationship.follower_iri == change.follower_iri,
            Relationship.following_iri == change.following_iri,
            Relationship.status == RelationshipStatus.PENDING.value,
        )
        result = session.execute(query.values(status=RelationshipStatus.ACCEPTED.value))
        if result.rowcount == 0:
            return AppliedChange("no pending follow to accept", False)
        return AppliedChange(f"follow of {change.following_iri} accepted", True)

    def _remove_relationship(self, session: Session, change: RemoveRelationship) -> AppliedChange:
        result = session.execute(
            delete(Relationship).where(
                Relationship.follower_iri == change.follower_iri,
                Relationship.following_iri == change.following_iri,
            )
        )
        if result.rowcount == 0:
            return AppliedChange("no relationship to remove", False)
        return AppliedChange(
            f"removed follow of {change.following_iri} by {change.follower_iri}", True
        )

    def _record_reaction(self, session: Session, change: RecordReaction) -> AppliedChange:
        existing = session.scalars(
            select(Reaction).where(
                Reaction.actor_iri == change.actor_iri,
                Reaction.object_iri == change.object_iri,
            )
        ).first()
        if existing is not None:
            return AppliedChange(f"{change.object_iri} already liked by actor", False)

        session.add(
            Reaction(
                actor_iri=change.actor_iri,
                object_iri=change.object_iri,
                activity_iri=change.activity_iri,
                kind=change.kind,
            )
        )
        return AppliedChange(f"recorded like of {change.object_iri}", True)

    def _remove_reaction(self, session: Session, change: RemoveReaction) -> AppliedChange:
        result = session.execute(
            delete(Reaction).where(
                Reaction.actor_iri == change.actor_iri,
                Reaction.object_iri == change.object_iri,
            )
        )
        if result.rowcount == 0:
            return AppliedChange("no like to remove", False)
        return AppliedChange(f"removed like of {change.object_iri}", True)

    def _soft_delete_remote_object(
        self, session: Session, change: SoftDeleteRemoteObject
    ) -> AppliedChange:
        comment = session.scalars(select(Comment).where(Comment.ap_id == change.object_iri)).first()
        if comment is None:
            return AppliedChange(f"{change.object_iri} not cached locally", False)
        if comment.remote_author_iri != change.actor_iri:
            return AppliedChange(f"{change.actor_iri} does not own {change.object_iri}", False)
        if comment.deleted_at is not None:
            return AppliedChange(f"{change.object_iri} already deleted", False)

        comment.deleted_at = utcnow()
        return AppliedChange(f"soft-deleted remote comment {change.object_iri}", True)

    def _purge_remote_actor(self, session: Session, change: PurgeRemoteActor) -> AppliedChange:
        iri = change.actor_iri
        relationships = session.execute(
            delete(Relationship).where(
                or_(Relationship.follower_iri == iri, Relationship.following_iri == iri)
            )
        ).rowcount
        reactions = session.execute(delete(Reaction).where(Reaction.actor_iri == iri)).rowcount
        comments = session.execute(
            update(Comment)
            .where(Comment.remote_author_iri == iri, Comment.deleted_at.is_(None))
            .values(deleted_at=utcnow())
        ).rowcount
        session.execute(
            delete(ActorRecord).where(
                ActorRecord.iri == iri, ActorRecord.kind == ActorKind.REMOTE.value
            )
        )
        return AppliedChange(
            f"purged {iri}: {relationships} relationships, {reactions} likes, "
            f"{comments} comments",
            True,
        )


__all__ = ["NativeChangeMixin"]
