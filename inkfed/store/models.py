# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .schema import ActorKind, DeliveryStatus, InboxState, Privacy, RelationshipStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands out aware datetimes (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    type_annotation_map = {datetime: UTCDateTime, dict[str, Any]: JSON}


# Application tables. They belong to the main application; the federation
# service reads them and writes only the rows listed in the data boundary.


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255))
    bio: Mapped[str | None] = mapped_column(Text)
    avatar_url: Mapped[str | None] = mapped_column(String(2048))
    requires_approval: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Entry(Base):
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str | None] = mapped_column(String(255))
    body_html: Mapped[str] = mapped_column(Text, default="")
    privacy: Mapped[str] = mapped_column(String(16), default=Privacy.PUBLIC.value)
    slug: Mapped[str | None] = mapped_column(String(255))
    ap_id: Mapped[str | None] = mapped_column(String(2048), unique=True)
    published_at: Mapped[datetime | None]
    updated_at: Mapped[datetime | None]
    deleted_at: Mapped[datetime | None]


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(primary_key=True)
    entry_id: Mapped[int] = mapped_column(ForeignKey("entries.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"))
    parent_comment_id: Mapped[int | None] = mapped_column(ForeignKey("comments.id"))
    body_html: Mapped[str] = mapped_column(Text, default="")
    ap_id: Mapped[str | None] = mapped_column(String(2048), unique=True)
    remote_author_iri: Mapped[str | None] = mapped_column(String(2048), index=True)
    remote_author_name: Mapped[str | None] = mapped_column(String(255))
    remote_author_avatar: Mapped[str | None] = mapped_column(String(2048))
    remote_author_instance: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime | None]
    deleted_at: Mapped[datetime | None]


class Relationship(Base):
    __tablename__ = "relationships"
    __table_args__ = (UniqueConstraint("follower_iri", "following_iri"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    follower_iri: Mapped[str] = mapped_column(String(2048), index=True)
    following_iri: Mapped[str] = mapped_column(String(2048), index=True)
    status: Mapped[str] = mapped_column(String(16), default=RelationshipStatus.PENDING.value)
    follow_activity_iri: Mapped[str | None] = mapped_column(String(2048), index=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Reaction(Base):
    __tablename__ = "reactions"
    __table_args__ = (UniqueConstraint("actor_iri", "object_iri"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_iri: Mapped[str] = mapped_column(String(2048), index=True)
    object_iri: Mapped[str] = mapped_column(String(2048), index=True)
    activity_iri: Mapped[str | None] = mapped_column(String(2048))
    kind: Mapped[str] = mapped_column(String(64), default="like")
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


# Federation tables, owned by this service.


class ActorRecord(Base):
    __tablename__ = "federation_actors"

    iri: Mapped[str] = mapped_column(String(2048), primary_key=True)
    kind: Mapped[str] = mapped_column(String(8), default=ActorKind.REMOTE.value)
    actor_type: Mapped[str] = mapped_column(String(32), default="Person")
    handle: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(255))
    summary: Mapped[str | None] = mapped_column(Text)
    icon_url: Mapped[str | None] = mapped_column(String(2048))
    inbox: Mapped[str | None] = mapped_column(String(2048))
    outbox: Mapped[str | None] = mapped_column(String(2048))
    shared_inbox: Mapped[str | None] = mapped_column(String(2048))
    followers: Mapped[str | None] = mapped_column(String(2048))
    key_iri: Mapped[str | None] = mapped_column(String(2048), unique=True)
    public_key_pem: Mapped[str | None] = mapped_column(Text)
    private_key_pem: Mapped[str | None] = mapped_column(Text)
    document: Mapped[dict[str, Any] | None]
    fetched_at: Mapped[datetime | None]


class ActivityRecord(Base):
    __tablename__ = "federation_activities"

    iri: Mapped[str] = mapped_column(String(2048), primary_key=True)
    type: Mapped[str | None] = mapped_column(String(64))
    actor: Mapped[str | None] = mapped_column(String(2048))
    payload: Mapped[dict[str, Any] | None]
    state: Mapped[str] = mapped_column(String(16), default=InboxState.RECEIVED.value)
    outcome: Mapped[str | None] = mapped_column(Text)
    remote_addr: Mapped[str | None] = mapped_column(String(64))
    received_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)
    updated_at: Mapped[datetime | None]


class DeliveryTask(Base):
    __tablename__ = "federation_deliveries"
    __table_args__ = (Index("ix_federation_deliveries_due", "status", "next_attempt_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    activity_iri: Mapped[str] = mapped_column(String(2048), index=True)
    inbox: Mapped[str] = mapped_column(String(2048), index=True)
    payload: Mapped[dict[str, Any]]
    signer: Mapped[str] = mapped_column(String(2048))
    attempts: Mapped[int] = mapped_column(default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(default=utcnow)
    status: Mapped[str] = mapped_column(String(16), default=DeliveryStatus.PENDING.value)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime | None]


__all__ = [
    "ActivityRecord",
    "ActorRecord",
    "Base",
    "Comment",
    "DeliveryTask",
    "Entry",
    "Reaction",
    "Relationship",
    "User",
    "utcnow",
]
