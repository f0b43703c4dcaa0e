# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from ..exceptions import InvalidActorError
from ..store.models import ActorRecord
from ..store.schema import ACTOR_TYPES, ActorKind

ACCT_RE = re.compile(r"^@?(?:acct:)?@?(?P<user>[^@\s/]+)@(?P<host>[a-z0-9.-]+(?::\d+)?)$", re.I)


@dataclass(frozen=True)
class Actor:
    iri: str
    kind: ActorKind
    inbox: str
    public_key_pem: str | None
    key_iri: str | None
    actor_type: str = "Person"
    handle: str | None = None
    name: str | None = None
    summary: str | None = None
    icon_url: str | None = None
    outbox: str | None = None
    shared_inbox: str | None = None
    followers: str | None = None
    fetched_at: datetime | None = None
    degraded: bool = False

    @property
    def is_local(self) -> bool:
        return self.kind == ActorKind.LOCAL

    @property
    def delivery_inbox(self) -> str:
        """Inbox to deliver to, preferring the shared inbox of the server."""
        return self.shared_inbox or self.inbox

    def as_degraded(self) -> "Actor":
        return replace(self, degraded=True)

    @classmethod
    def from_record(cls, record: ActorRecord) -> "Actor":
        return cls(
            iri=record.iri,
            kind=ActorKind(record.kind),
            inbox=record.inbox,
            public_key_pem=record.public_key_pem,
            key_iri=record.key_iri,
            actor_type=record.actor_type,
            handle=record.handle,
            name=record.name,
            summary=record.summary,
            icon_url=record.icon_url,
            outbox=record.outbox,
            shared_inbox=record.shared_inbox,
            followers=record.followers,
            fetched_at=record.fetched_at,
        )


def parse_acct(acct: str) -> tuple[str, str]:
    """Split ``user@host``, ``@user@host`` or ``acct:user@host``."""
    match = ACCT_RE.match(acct.strip())
    if match is None:
        raise ValueError(f"Account name {acct} is invalid.")
    return match["user"], match["host"].lower()


def same_origin(a: str, b: str) -> bool:
    url_a, url_b = urlparse(a), urlparse(b)
    return (url_a.scheme, url_a.netloc) == (url_b.scheme, url_b.netloc)


def _link(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("href") or value.get("url") or value.get("id")
    if isinstance(value, list) and value:
        return _link(value[0])
    return None


def parse_actor_document(doc: Any, requested_iri: str) -> dict[str, Any]:
    """Validate a remote actor document and extract the cached fields."""
    if not isinstance(doc, dict):
        raise InvalidActorError(f"Document for {requested_iri} is not an object")

    iri = doc.get("id")
    if not isinstance(iri, str) or not iri:
        raise InvalidActorError(f"Document for {requested_iri} has no id")
    if not same_origin(iri, requested_iri):
        raise InvalidActorError(f"Actor {iri} served from foreign origin {requested_iri}")

    type_ = doc.get("type")
    if isinstance(type_, list):
        type_ = next((t for t in type_ if t in ACTOR_TYPES), None)
    if type_ not in ACTOR_TYPES:
        raise InvalidActorError(f"{iri} is not an actor (type {doc.get('type')!r})")

    inbox = _link(doc.get("inbox"))
    if not inbox:
        raise InvalidActorError(f"{iri} has no inbox")

    public_key = doc.get("publicKey")
    if isinstance(public_key, list):
        public_key = next((k for k in public_key if isinstance(k, dict)), None)
    if not isinstance(public_key, dict):
        raise InvalidActorError(f"{iri} has no publicKey")
    key_iri = public_key.get("id")
    key_pem = public_key.get("publicKeyPem")
    if not key_iri or not key_pem:
        raise InvalidActorError(f"publicKey of {iri} lacks id or publicKeyPem")
    if not same_origin(key_iri, iri):
        raise InvalidActorError(f"Key {key_iri} is not hosted with {iri}")

    endpoints = doc.get("endpoints")
    shared_inbox = _link(endpoints.get("sharedInbox")) if isinstance(endpoints, dict) else None

    username = doc.get("preferredUsername")
    handle = f"{username}@{urlparse(iri).netloc}" if username else None

    return {
        "actor_type": type_,
        "handle": handle,
        "name": doc.get("name") if isinstance(doc.get("name"), str) else None,
        "summary": doc.get("summary") if isinstance(doc.get("summary"), str) else None,
        "icon_url": _link(doc.get("icon")),
        "inbox": inbox,
        "outbox": _link(doc.get("outbox")),
        "shared_inbox": shared_inbox,
        "followers": _link(doc.get("followers")),
        "key_iri": key_iri,
        "public_key_pem": key_pem,
    }


__all__ = ["Actor", "parse_acct", "parse_actor_document", "same_origin"]
