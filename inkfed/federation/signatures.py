# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import binascii
import logging
from base64 import b64decode, b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from hashlib import sha256
from pprint import pformat
from typing import Awaitable, Callable, Generator

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization as crypto_serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes

from ..exceptions import FederationError, SigningError, VerificationError

logger = logging.getLogger(__name__)

GET_HEADERS = ["(request-target)", "host", "date"]
POST_HEADERS = ["(request-target)", "host", "date", "digest"]
REQUIRED_HEADERS = {"(request-target)", "host", "date"}


@dataclass(frozen=True)
class PublicKey:
    key_iri: str
    pem: str
    owner: str
    # True if served from cache without fetching it just now
    cached: bool = False


KeyResolver = Callable[[str, bool], Awaitable[PublicKey]]


def compute_digest(body: bytes) -> str:
    return "SHA-256=" + b64encode(sha256(body).digest()).decode("utf-8")


def load_private_key(pem: str, passphrase: str | None = None) -> PrivateKeyTypes:
    try:
        return crypto_serialization.load_pem_private_key(
            pem.encode("utf-8"), password=passphrase.encode("utf-8") if passphrase else None
        )
    except (ValueError, TypeError) as ex:
        raise SigningError(f"Private key cannot be loaded: {ex}") from ex


def load_public_key(pem: str) -> PublicKeyTypes:
    return crypto_serialization.load_pem_public_key(pem.encode("utf-8"))


def get_signature_fields(signature_header: str) -> dict[str, str]:
    signature_fields = {}
    for field in signature_header.split(","):
        if "=" not in field:
            raise ValueError(f"Malformed signature field {field!r}")
        name, value = field.strip().split("=", 1)
        if name in signature_fields:
            raise ValueError(f"Duplicate field {name} in signature")
        signature_fields[name] = value.strip('"')
    return signature_fields


def _request_target(request: httpx.Request | object) -> str:
    """Path and query of an httpx or Starlette request, as sent on the wire."""
    if isinstance(request, httpx.Request):
        return request.url.raw_path.decode("ascii")

    scope = request.scope
    path = scope.get("raw_path") or scope["path"].encode("utf-8")
    if isinstance(path, bytes):
        path = path.decode("latin-1")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def construct_signature_data(
    method: str,
    target: str,
    headers: "httpx.Headers | dict[str, str]",
    signed_headers: list[str],
    fields: dict[str, str] | None = None,
) -> tuple[str, str]:
    signature_data = []
    used_headers = []
    for header in signed_headers:
        name = header.lower()
        if name == "(request-target)":
            signature_data.append(f"(request-target): {method.lower()} {target}")
        elif name in ("(created)", "(expires)"):
            value = (fields or {}).get(name.strip("()"))
            if value is None:
                raise KeyError(f"Pseudo-header {name} requires a signature parameter")
            signature_data.append(f"{name}: {value}")
        elif name in headers:
            signature_data.append(f"{name}: {headers[name]}")
        else:
            raise KeyError(f"Header {header} not found")
        used_headers.append(name)

    return "\n".join(signature_data), " ".join(used_headers)


def sign_request(
    request: httpx.Request,
    private_key: PrivateKeyTypes | None,
    key_id: str,
    headers: list[str] | None = None,
) -> httpx.Request:
    """Attach Date, Host, Digest and an HTTP Signature to an outgoing request."""
    if private_key is None:
        raise SigningError(f"No private key available for {key_id}")

    if headers is None:
        headers = POST_HEADERS if request.content else GET_HEADERS

    for header in headers:
        name = header.lower()
        if name in request.headers:
            continue
        if name == "date":
            request.headers["Date"] = formatdate(timeval=None, localtime=False, usegmt=True)
        elif name == "digest":
            request.headers["Digest"] = compute_digest(request.content)
        elif name == "host":
            request.headers["Host"] = request.url.netloc.decode("ascii")

    signature_text, headers_text = construct_signature_data(
        request.method, _request_target(request), request.headers, headers
    )
    logger.debug("Signing header: %s", signature_text)

    if isinstance(private_key, rsa.RSAPrivateKey):
        algorithm = "rsa-sha256"
        signature = private_key.sign(
            signature_text.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
        )
    elif isinstance(private_key, ed25519.Ed25519PrivateKey):
        algorithm = "hs2019"
        signature = private_key.sign(signature_text.encode("utf-8"))
    else:
        raise SigningError(f"Unsupported key type {type(private_key).__name__}")

    signature_fields = [
        f'keyId="{key_id}"',
        f'algorithm="{algorithm}"',
        f'headers="{headers_text}"',
        f'signature="{b64encode(signature).decode("utf-8")}"',
    ]
    request.headers["Signature"] = ",".join(signature_fields)
    logger.debug("Request headers after signing: %s", pformat(dict(request.headers)))

    return request


class HTTPSignatureAuth(httpx.Auth):
    """httpx auth flow signing every request with an actor's key."""

    requires_request_body = True

    def __init__(
        self, key_id: str, private_key: PrivateKeyTypes, headers: list[str] | None = None
    ):
        self.key_id = key_id
        self._private_key = private_key
        self._headers = headers

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        logger.debug("Signing %s request to %s with %s", request.method, request.url, self.key_id)
        yield sign_request(request, self._private_key, self.key_id, self._headers)


def _verify_signature(pem: str, signature: bytes, data: bytes) -> None:
    public_key = load_public_key(pem)
    if isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, data)
    else:
        raise VerificationError(f"Unsupported key type {type(public_key).__name__}")


async def verify_request(
    request,
    resolve_key: KeyResolver,
    body: bytes | None = None,
    max_skew: int = 43200,
    now: datetime | None = None,
) -> str:
    """Verify the HTTP Signature of a Starlette or httpx request.

    Returns the IRI of the actor owning the signing key. Raises
    VerificationError for every kind of failure.
    """
    now = now or datetime.now(timezone.utc)
    if body is None and isinstance(request, httpx.Request):
        body = request.content

    signature_text = request.headers.get("Signature")
    if signature_text is None and "Authorization" in request.headers:
        scheme, _, parameters = request.headers["Authorization"].partition(" ")
        if scheme.lower() == "signature":
            signature_text = parameters
    if not signature_text:
        raise VerificationError("No signature found in headers")

    try:
        fields = get_signature_fields(signature_text)
    except ValueError as ex:
        raise VerificationError(str(ex)) from ex
    if "keyId" not in fields:
        raise VerificationError("keyId missing in signature")
    if "signature" not in fields:
        raise VerificationError("signature missing")

    signed_headers = fields.get("headers", "date").lower().split()
    required = set(REQUIRED_HEADERS)
    if body:
        required.add("digest")
    missing = required - set(signed_headers)
    if missing:
        raise VerificationError(f"Required headers not signed: {', '.join(sorted(missing))}")

    try:
        date = parsedate_to_datetime(request.headers["Date"])
    except (KeyError, TypeError, ValueError) as ex:
        raise VerificationError("Date header missing or malformed") from ex
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    if abs((now - date).total_seconds()) > max_skew:
        raise VerificationError(f"Date {request.headers['Date']} is outside the allowed skew")

    try:
        if "created" in fields and int(fields["created"]) > now.timestamp() + 60:
            raise VerificationError("created time is in the future")
        if "expires" in fields and int(fields["expires"]) < now.timestamp():
            raise VerificationError("expires time is in the past")
    except ValueError as ex:
        raise VerificationError("Malformed created/expires parameter") from ex

    if body or "digest" in signed_headers:
        digests = {}
        for part in request.headers.get("Digest", "").split(","):
            algorithm, _, value = part.strip().partition("=")
            digests[algorithm.upper()] = value
        if "SHA-256" not in digests:
            raise VerificationError("No SHA-256 digest provided")
        if f"SHA-256={digests['SHA-256']}" != compute_digest(body or b""):
            raise VerificationError("Digest of body is invalid")

    try:
        signature_data, _ = construct_signature_data(
            request.method, _request_target(request), request.headers, signed_headers, fields
        )
        signature = b64decode(fields["signature"].encode("utf-8"), validate=True)
    except (KeyError, binascii.Error) as ex:
        raise VerificationError(f"Cannot reconstruct signature: {ex}") from ex

    key_id = fields["keyId"]
    try:
        public_key = await resolve_key(key_id, False)
        try:
            _verify_signature(public_key.pem, signature, signature_data.encode("utf-8"))
        except InvalidSignature:
            if not public_key.cached:
                raise
            # The actor may have rotated its key since we cached it
            logger.info("Signature mismatch with cached key %s; refreshing", key_id)
            public_key = await resolve_key(key_id, True)
            _verify_signature(public_key.pem, signature, signature_data.encode("utf-8"))
    except InvalidSignature as ex:
        raise VerificationError(f"Signature does not match key {key_id}") from ex
    except (FederationError, ValueError) as ex:
        if isinstance(ex, VerificationError):
            raise
        raise VerificationError(f"Could not retrieve actor key {key_id}: {ex}") from ex

    logger.debug("Request is signed by key ID %s of %s", key_id, public_key.owner)
    return public_key.owner


__all__ = [
    "HTTPSignatureAuth",
    "KeyResolver",
    "PublicKey",
    "compute_digest",
    "sign_request",
    "verify_request",
]
