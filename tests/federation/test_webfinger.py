# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import httpx
import pytest

from inkfed.exceptions import MalformedResponseError, NotFoundError
from inkfed.federation.client import FederationClient
from inkfed.federation.webfinger import WebFingerResolver

ALICE = "https://inkwell.test/users/alice"


@pytest.mark.parametrize("resource", ["acct:alice@inkwell.test", "acct:Alice@INKWELL.test", ALICE])
@pytest.mark.asyncio
async def test_lookup_local(federation, resource):
    jrd = federation.webfinger.lookup_local(resource)

    assert jrd["subject"] == "acct:alice@inkwell.test"
    assert jrd["aliases"] == [ALICE]
    assert {"rel": "self", "type": "application/activity+json", "href": ALICE} in jrd["links"]
    assert {
        "rel": "http://webfinger.net/rel/profile-page",
        "type": "text/html",
        "href": "https://inkwell.test/alice",
    } in jrd["links"]


@pytest.mark.asyncio
async def test_lookup_instance_actor(federation):
    jrd = federation.webfinger.lookup_local("acct:inkwell.test@inkwell.test")

    assert jrd["aliases"] == ["https://inkwell.test/actor"]


@pytest.mark.parametrize(
    "resource",
    [
        "acct:nobody@inkwell.test",
        "acct:alice@example.org",
        "https://example.org/users/alice",
        "https://inkwell.test/users/alice/entries/1",
        "alice",
    ],
)
@pytest.mark.asyncio
async def test_lookup_local_not_found(federation, resource):
    with pytest.raises(NotFoundError):
        federation.webfinger.lookup_local(resource)


@pytest.mark.asyncio
async def test_lookup_remote(federation, remote):
    iri = await federation.webfinger.lookup_remote("carol@example.org")

    assert iri == "https://example.org/users/carol"
    (request,) = remote.requests
    assert request.url.params["resource"] == "acct:carol@example.org"


@pytest.mark.asyncio
async def test_lookup_remote_unknown(federation):
    with pytest.raises(NotFoundError):
        await federation.webfinger.lookup_remote("nobody@example.org")


def _resolver_answering(store, response: httpx.Response) -> WebFingerResolver:
    client = FederationClient(transport=httpx.MockTransport(lambda request: response))
    return WebFingerResolver(store, client)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "jrd",
    [
        {"subject": "acct:carol@example.org"},
        {"links": [{"rel": "http://webfinger.net/rel/profile-page", "href": "https://x"}]},
        {"links": [{"rel": "self", "type": "text/html", "href": "https://x"}]},
    ],
)
async def test_lookup_remote_without_actor_link(store, jrd):
    webfinger = _resolver_answering(store, httpx.Response(200, json=jrd))

    with pytest.raises(MalformedResponseError):
        await webfinger.lookup_remote("carol@example.org")


@pytest.mark.asyncio
async def test_lookup_remote_not_json(store):
    webfinger = _resolver_answering(store, httpx.Response(200, text="<html></html>"))

    with pytest.raises(MalformedResponseError):
        await webfinger.lookup_remote("carol@example.org")
