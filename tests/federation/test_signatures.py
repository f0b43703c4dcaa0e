# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import json
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import httpx
import pytest

from inkfed.exceptions import VerificationError
from inkfed.federation.signatures import (
    GET_HEADERS,
    HTTPSignatureAuth,
    PublicKey,
    compute_digest,
    get_signature_fields,
    load_private_key,
    sign_request,
    verify_request,
)

KEY_ID = "https://example.org/users/carol#main-key"
OWNER = "https://example.org/users/carol"


def _key_resolver(*pems: str, calls: list | None = None):
    """Serve the given PEMs in order; the first one counts as cached."""

    async def _resolve(key_id: str, refresh: bool) -> PublicKey:
        if calls is not None:
            calls.append(refresh)
        pem = pems[1] if refresh and len(pems) > 1 else pems[0]
        return PublicKey(key_id, pem, OWNER, cached=not refresh)

    return _resolve


def _signed_post(private_pem: str, body: bytes = b'{"type": "Create"}') -> httpx.Request:
    request = httpx.Request(
        "POST", "https://inkwell.test/users/alice/inbox", content=body
    )
    return sign_request(request, load_private_key(private_pem), KEY_ID)


def test_sign_adds_headers(remote_keys):
    """Signing a POST should add Date, Host, Digest and Signature"""
    _, private_pem = remote_keys[OWNER]
    request = _signed_post(private_pem)

    assert request.headers["Host"] == "inkwell.test"
    assert request.headers["Digest"] == compute_digest(request.content)
    parsedate_to_datetime(request.headers["Date"])

    fields = get_signature_fields(request.headers["Signature"])
    assert fields["keyId"] == KEY_ID
    assert fields["algorithm"] == "rsa-sha256"
    assert fields["headers"] == "(request-target) host date digest"


@pytest.mark.asyncio
async def test_sign_verify(remote_keys):
    public_pem, private_pem = remote_keys[OWNER]
    request = _signed_post(private_pem)

    assert await verify_request(request, _key_resolver(public_pem)) == OWNER


@pytest.mark.asyncio
async def test_verify_get_without_digest(remote_keys):
    public_pem, private_pem = remote_keys[OWNER]
    request = httpx.Request("GET", "https://inkwell.test/users/alice?page=1")
    sign_request(request, load_private_key(private_pem), KEY_ID, GET_HEADERS)

    assert "Digest" not in request.headers
    assert await verify_request(request, _key_resolver(public_pem)) == OWNER


@pytest.mark.asyncio
async def test_verify_tampered_body(remote_keys):
    public_pem, private_pem = remote_keys[OWNER]
    request = _signed_post(private_pem)

    with pytest.raises(VerificationError, match="Digest"):
        await verify_request(request, _key_resolver(public_pem), body=b'{"type": "Delete"}')


@pytest.mark.asyncio
async def test_verify_wrong_key(remote_keys):
    _, private_pem = remote_keys[OWNER]
    other_public_pem, _ = remote_keys["https://other.example/users/erin"]
    request = _signed_post(private_pem)

    with pytest.raises(VerificationError, match="does not match"):
        await verify_request(request, _key_resolver(other_public_pem))


@pytest.mark.asyncio
async def test_verify_refreshes_rotated_key(remote_keys):
    """A mismatch with a cached key triggers exactly one refresh"""
    public_pem, private_pem = remote_keys[OWNER]
    stale_pem, _ = remote_keys["https://other.example/users/erin"]
    request = _signed_post(private_pem)
    calls = []

    assert await verify_request(request, _key_resolver(stale_pem, public_pem, calls=calls)) == OWNER
    assert calls == [False, True]


@pytest.mark.asyncio
async def test_verify_date_skew(remote_keys):
    public_pem, private_pem = remote_keys[OWNER]
    request = _signed_post(private_pem)
    later = datetime.now(timezone.utc) + timedelta(hours=13)

    with pytest.raises(VerificationError, match="skew"):
        await verify_request(request, _key_resolver(public_pem), now=later)


@pytest.mark.asyncio
async def test_verify_unsigned(remote_keys):
    public_pem, _ = remote_keys[OWNER]
    request = httpx.Request("POST", "https://inkwell.test/inbox", content=b"{}")

    with pytest.raises(VerificationError, match="No signature"):
        await verify_request(request, _key_resolver(public_pem))


@pytest.mark.asyncio
async def test_verify_requires_digest_for_body(remote_keys):
    public_pem, private_pem = remote_keys[OWNER]
    request = httpx.Request("POST", "https://inkwell.test/inbox", content=b"{}")
    sign_request(request, load_private_key(private_pem), KEY_ID, GET_HEADERS)

    with pytest.raises(VerificationError, match="digest"):
        await verify_request(request, _key_resolver(public_pem))


def test_auth_flow_signs(remote_keys):
    _, private_pem = remote_keys[OWNER]
    auth = HTTPSignatureAuth(KEY_ID, load_private_key(private_pem))
    request = httpx.Request(
        "POST", "https://example.org/inbox", content=json.dumps({"id": "x"}).encode("utf-8")
    )

    signed = next(auth.auth_flow(request))

    assert "Signature" in signed.headers
    assert "Digest" in signed.headers
