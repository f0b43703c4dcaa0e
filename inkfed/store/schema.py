# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from enum import StrEnum

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
ACTOR_CONTEXT = [AS_CONTEXT, SECURITY_CONTEXT]

AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
# Compacted forms of the Public collection seen in the wild
PUBLIC_ALIASES = {AS_PUBLIC, "as:Public", "Public"}

CONTENT_TYPE = 'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
ACTIVITY_JSON = "application/activity+json"
ACCEPT_TYPES = {CONTENT_TYPE, ACTIVITY_JSON, "application/ld+json", "application/json"}
JRD_CONTENT_TYPE = "application/jrd+json"


class ActivityType(StrEnum):
    ACCEPT = "Accept"
    CREATE = "Create"
    DELETE = "Delete"
    FOLLOW = "Follow"
    LIKE = "Like"
    REJECT = "Reject"
    UNDO = "Undo"
    UPDATE = "Update"


ACTOR_TYPES = {"Application", "Group", "Organization", "Person", "Service"}


class ActorKind(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class Privacy(StrEnum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    FRIENDS_ONLY = "friends_only"
    PRIVATE = "private"
    CUSTOM = "custom"


FEDERATED_PRIVACY = {Privacy.PUBLIC, Privacy.UNLISTED, Privacy.FRIENDS_ONLY}
LISTED_PRIVACY = {Privacy.PUBLIC, Privacy.UNLISTED}


class RelationshipStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"


class DeliveryStatus(StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD = "dead"


class InboxState(StrEnum):
    RECEIVED = "received"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REJECTED = "rejected"
    TRANSLATING = "translating"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


__all__ = [
    "AS_CONTEXT",
    "AS_PUBLIC",
    "ACTOR_CONTEXT",
    "ActivityType",
    "ActorKind",
    "CONTENT_TYPE",
    "DeliveryStatus",
    "InboxState",
    "Privacy",
    "RelationshipStatus",
]
