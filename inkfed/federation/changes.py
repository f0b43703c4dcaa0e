# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

"""Results of translating between native objects and activities.

Inbound activities become one of the native changes below (or Ignored /
OrphanObject); outbound events that must not federate become NotApplicable.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class UpsertRemoteComment:
    note_iri: str
    entry_id: int
    parent_comment_id: int | None
    author_iri: str
    author_name: str | None
    author_avatar: str | None
    content_html: str
    published: datetime | None = None


@dataclass(frozen=True)
class CreateFollow:
    follower_iri: str
    following_iri: str
    follow_activity_iri: str
    auto_accept: bool


@dataclass(frozen=True)
class AcceptOutgoingFollow:
    follower_iri: str
    following_iri: str
    follow_activity_iri: str | None = None


@dataclass(frozen=True)
class RemoveRelationship:
    follower_iri: str
    following_iri: str


@dataclass(frozen=True)
class RecordReaction:
    actor_iri: str
    object_iri: str
    activity_iri: str
    kind: str = "like"


@dataclass(frozen=True)
class RemoveReaction:
    actor_iri: str
    object_iri: str


@dataclass(frozen=True)
class SoftDeleteRemoteObject:
    object_iri: str
    actor_iri: str


@dataclass(frozen=True)
class PurgeRemoteActor:
    actor_iri: str


NativeChange = (
    UpsertRemoteComment
    | CreateFollow
    | AcceptOutgoingFollow
    | RemoveRelationship
    | RecordReaction
    | RemoveReaction
    | SoftDeleteRemoteObject
    | PurgeRemoteActor
)


@dataclass(frozen=True)
class Ignored:
    reason: str


@dataclass(frozen=True)
class OrphanObject:
    object_iri: str
    in_reply_to: str | None


@dataclass(frozen=True)
class NotApplicable:
    reason: str


@dataclass(frozen=True)
class AppliedChange:
    outcome: str
    changed: bool


__all__ = [
    "AcceptOutgoingFollow",
    "AppliedChange",
    "CreateFollow",
    "Ignored",
    "NativeChange",
    "NotApplicable",
    "OrphanObject",
    "PurgeRemoteActor",
    "RecordReaction",
    "RemoveReaction",
    "RemoveRelationship",
    "SoftDeleteRemoteObject",
    "UpsertRemoteComment",
]
