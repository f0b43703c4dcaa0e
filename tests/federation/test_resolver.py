# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import asyncio

import pytest

from inkfed.exceptions import InvalidActorError, NotFoundError
from inkfed.federation.resolver import ActorResolver
from inkfed.store.schema import ActorKind

ALICE = "https://inkwell.test/users/alice"
CAROL = "https://example.org/users/carol"
ERIN = "https://other.example/users/erin"


@pytest.mark.asyncio
async def test_resolve_remote_cached(federation, remote, store):
    actor = await federation.resolver.resolve_remote(CAROL)

    assert actor.kind == ActorKind.REMOTE
    assert actor.handle == "carol@example.org"
    assert actor.name == "Carol"
    assert actor.delivery_inbox == "https://example.org/inbox"
    assert actor.key_iri == f"{CAROL}#main-key"
    assert store.get_actor_record(CAROL).document["preferredUsername"] == "carol"

    again = await federation.resolver.resolve_remote(f"{CAROL}#main-key")
    assert again.iri == CAROL
    assert remote.fetches(CAROL) == 1


@pytest.mark.asyncio
async def test_fetch_is_signed_by_instance(federation, remote):
    await federation.resolver.resolve_remote(ERIN)

    (request,) = remote.requests
    assert "keyId=\"https://inkwell.test/actor#main-key\"" in request.headers["Signature"]


@pytest.mark.asyncio
async def test_single_flight(federation, remote):
    """Concurrent resolutions share a single fetch"""
    first, second = await asyncio.gather(
        federation.resolver.resolve_remote(CAROL), federation.resolver.resolve_remote(CAROL)
    )

    assert first == second
    assert remote.fetches(CAROL) == 1


@pytest.mark.asyncio
async def test_stale_entry_refetched(federation, remote, store):
    resolver = ActorResolver(
        store, federation.client, federation.keys, federation.webfinger, cache_ttl=0
    )

    await resolver.resolve_remote(CAROL)
    await resolver.resolve_remote(CAROL)

    assert remote.fetches(CAROL) == 2


@pytest.mark.asyncio
async def test_degraded_on_refresh_failure(federation, remote):
    await federation.resolver.resolve_remote(CAROL)
    remote.statuses[CAROL] = 500

    actor = await federation.resolver.resolve_remote(CAROL, refresh=True)

    assert actor.degraded
    assert actor.iri == CAROL


@pytest.mark.asyncio
async def test_gone_not_degraded(federation, remote):
    await federation.resolver.resolve_remote(CAROL)
    remote.statuses[CAROL] = 410

    with pytest.raises(NotFoundError):
        await federation.resolver.resolve_remote(CAROL, refresh=True)


@pytest.mark.asyncio
async def test_not_found(federation):
    with pytest.raises(NotFoundError):
        await federation.resolver.resolve_remote("https://example.org/users/nobody")


@pytest.mark.asyncio
async def test_invalid_actor(federation, remote):
    note = "https://example.org/notes/1"
    remote.documents[note] = {"id": note, "type": "Note", "content": "hi"}

    with pytest.raises(InvalidActorError):
        await federation.resolver.resolve_remote(note)


@pytest.mark.asyncio
async def test_foreign_origin_rejected(federation, remote):
    fake = "https://example.org/users/mallory"
    remote.documents[fake] = remote.actor_document(ERIN, "erin", "Erin")

    with pytest.raises(InvalidActorError):
        await federation.resolver.resolve_remote(fake)


@pytest.mark.asyncio
async def test_bare_key_follows_owner(federation, remote, remote_keys):
    key = "https://example.org/keys/carol"
    remote.documents[key] = {
        "id": key,
        "owner": CAROL,
        "publicKeyPem": remote_keys[CAROL][0],
    }

    actor = await federation.resolver.resolve_remote(key)

    assert actor.iri == CAROL


@pytest.mark.asyncio
async def test_resolve_key(federation, remote, remote_keys):
    key = await federation.resolver.resolve_key(f"{CAROL}#main-key")

    assert key.owner == CAROL
    assert key.pem == remote_keys[CAROL][0]

    cached = await federation.resolver.resolve_key(f"{CAROL}#main-key")
    assert cached.cached
    assert remote.fetches(CAROL) == 1


@pytest.mark.asyncio
async def test_resolve_key_of_other_actor(federation, remote):
    remote.documents[CAROL]["publicKey"]["id"] = f"{CAROL}#other-key"

    with pytest.raises(InvalidActorError):
        await federation.resolver.resolve_key(f"{CAROL}#main-key")


@pytest.mark.asyncio
async def test_resolve_local(federation, remote, store):
    actor = await federation.resolver.resolve_remote(ALICE)

    assert actor.is_local
    assert actor.key_iri == f"{ALICE}#main-key"
    assert actor.followers == f"{ALICE}/followers"
    assert remote.requests == []
    assert store.get_actor_record(ALICE).private_key_pem


@pytest.mark.asyncio
async def test_resolve_local_unknown(federation):
    with pytest.raises(NotFoundError):
        await federation.resolver.resolve_remote("https://inkwell.test/users/nobody")


@pytest.mark.asyncio
async def test_resolve_handle(federation, remote):
    carol = await federation.resolver.resolve_handle("@carol@example.org")
    alice = await federation.resolver.resolve_handle("acct:alice@inkwell.test")

    assert carol.iri == CAROL
    assert alice.iri == ALICE

    with pytest.raises(NotFoundError):
        await federation.resolver.resolve_handle("not a handle")

