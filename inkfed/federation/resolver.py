# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio
import logging
from datetime import datetime, timedelta
from urllib.parse import urldefrag

from ..exceptions import FederationError, InvalidActorError, NotFoundError
from ..store import FederationStore
from ..store.models import ActorRecord, utcnow
from ..store.schema import ACTOR_TYPES, ActorKind
from .actor import Actor, parse_acct, parse_actor_document, same_origin
from .client import FederationClient
from .keys import KeyManager
from .signatures import GET_HEADERS, HTTPSignatureAuth, PublicKey
from .webfinger import WebFingerResolver


class ActorResolver:
    """Maps local users and remote IRIs to actors, backed by the actor cache.

    Concurrent resolutions of the same remote IRI share one in-flight fetch.
    When re-fetching a cached actor fails, the stale copy is returned with
    ``degraded`` set.
    """

    def __init__(
        self,
        store: FederationStore,
        client: FederationClient,
        keys: KeyManager,
        webfinger: WebFingerResolver,
        cache_ttl: int = 86400,
        instance_name: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._iris = store.iris
        self._client = client
        self._keys = keys
        self._webfinger = webfinger
        self._cache_ttl = timedelta(seconds=cache_ttl)
        self._instance_name = instance_name
        self._logger = logger or logging.getLogger(__name__)

        self._inflight: dict[str, asyncio.Task] = {}

    def resolve_local(self, username: str) -> Actor:
        user = self._store.get_user(username)
        if user is None:
            raise NotFoundError(f"No local user {username}")

        actor_iri = self._iris.actor(user.username)
        key_iri, public_pem = self._keys.ensure_actor_keys(
            actor_iri,
            self._iris.key(user.username),
            handle=f"{user.username}@{self._iris.host}",
        )
        return Actor(
            iri=actor_iri,
            kind=ActorKind.LOCAL,
            inbox=self._iris.inbox(user.username),
            public_key_pem=public_pem,
            key_iri=key_iri,
            handle=f"{user.username}@{self._iris.host}",
            name=user.display_name or user.username,
            summary=user.bio,
            icon_url=user.avatar_url,
            outbox=self._iris.outbox(user.username),
            shared_inbox=self._iris.shared_inbox,
            followers=self._iris.followers(user.username),
        )

    def resolve_instance(self) -> Actor:
        """The Service actor representing the instance itself."""
        host = self._iris.host
        key_iri, public_pem = self._keys.ensure_actor_keys(
            self._iris.instance_actor,
            self._iris.instance_key,
            actor_type="Service",
            handle=f"{host}@{host}",
        )
        return Actor(
            iri=self._iris.instance_actor,
            kind=ActorKind.LOCAL,
            inbox=self._iris.shared_inbox,
            public_key_pem=public_pem,
            key_iri=key_iri,
            actor_type="Service",
            handle=f"{host}@{host}",
            name=self._instance_name or host,
            shared_inbox=self._iris.shared_inbox,
        )

    def _resolve_local_iri(self, iri: str) -> Actor:
        if iri == self._iris.instance_actor:
            return self.resolve_instance()
        parsed = self._iris.parse(iri)
        if parsed is None or parsed[0] != "actor":
            raise NotFoundError(f"{iri} is not a local actor")
        return self.resolve_local(parsed[1])

    def _fetch_auth(self) -> HTTPSignatureAuth:
        # Servers in authorized fetch mode only answer signed GETs
        self.resolve_instance()
        return self._keys.signer_for(self._iris.instance_actor, GET_HEADERS)

    def _is_stale(self, record: ActorRecord) -> bool:
        if record.fetched_at is None:
            return True
        return utcnow() - record.fetched_at > self._cache_ttl

    async def _fetch_actor(self, iri: str) -> Actor:
        self._logger.info("Fetching remote actor %s", iri)
        doc = await self._client.get_json(iri, auth=self._fetch_auth())

        if "publicKeyPem" in doc and "owner" in doc and doc.get("type") not in ACTOR_TYPES:
            owner = doc["owner"]
            if not isinstance(owner, str) or not same_origin(owner, iri):
                raise InvalidActorError(f"Key {iri} has no valid owner")
            if urldefrag(owner).url == iri:
                raise InvalidActorError(f"Key {iri} claims to own itself")
            self._logger.debug("%s is a bare key, following owner %s", iri, owner)
            return await self.resolve_remote(owner)

        fields = parse_actor_document(doc, iri)
        canonical = doc["id"]
        if canonical != iri:
            self._logger.debug("Actor %s is served as %s", iri, canonical)
        record = self._store.upsert_remote_actor(canonical, fields, doc)
        return Actor.from_record(record)

    def _single_flight(self, iri: str) -> asyncio.Task:
        task = self._inflight.get(iri)
        if task is None:
            task = asyncio.ensure_future(self._fetch_actor(iri))
            self._inflight[iri] = task

            def _forget(done: asyncio.Task) -> None:
                if self._inflight.get(iri) is done:
                    del self._inflight[iri]

            task.add_done_callback(_forget)
        else:
            self._logger.debug("Joining in-flight fetch of %s", iri)
        return task

    async def resolve_remote(self, iri: str, refresh: bool = False) -> Actor:
        iri = urldefrag(iri).url
        if self._iris.is_local(iri):
            return self._resolve_local_iri(iri)

        record = self._store.get_actor_record(iri)
        if record is not None and not refresh and not self._is_stale(record):
            return Actor.from_record(record)

        try:
            # Shielded so a cancelled caller does not abort the shared fetch
            return await asyncio.shield(self._single_flight(iri))
        except NotFoundError:
            raise
        except FederationError as ex:
            if record is None:
                raise
            self._logger.warning("Refreshing %s failed, using cached copy: %s", iri, ex)
            return Actor.from_record(record).as_degraded()

    async def resolve_key(self, key_iri: str, refresh: bool = False) -> PublicKey:
        """Resolve a key IRI to its public key and owner."""
        record = self._store.get_actor_record_by_key(key_iri)
        if record is not None and not refresh:
            if record.kind == ActorKind.LOCAL.value or not self._is_stale(record):
                return PublicKey(key_iri, record.public_key_pem, record.iri, cached=True)

        owner_iri = record.iri if record is not None else urldefrag(key_iri).url
        actor = await self.resolve_remote(owner_iri, refresh=refresh or record is not None)
        if actor.key_iri != key_iri and not refresh and not actor.is_local:
            # The cached owner may predate a key rotation
            actor = await self.resolve_remote(actor.iri, refresh=True)
        if actor.key_iri != key_iri or not actor.public_key_pem:
            raise InvalidActorError(f"{key_iri} is not a key of {actor.iri}")

        return PublicKey(key_iri, actor.public_key_pem, actor.iri, cached=actor.degraded)

    async def resolve_handle(self, acct: str) -> Actor:
        try:
            user, host = parse_acct(acct)
        except ValueError as ex:
            raise NotFoundError(str(ex)) from ex

        if host == self._iris.host.lower():
            return self.resolve_local(user)

        iri = await self._webfinger.lookup_remote(f"{user}@{host}")
        return await self.resolve_remote(iri)

    def prune(self, older_than: datetime) -> int:
        return self._store.prune_remote_actors(older_than)


__all__ = ["ActorResolver"]
