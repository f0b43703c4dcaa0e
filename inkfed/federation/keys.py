# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import logging

from cryptography.hazmat.primitives import serialization as crypto_serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..exceptions import SigningError
from ..store import FederationStore
from .signatures import HTTPSignatureAuth, load_private_key


def generate_keypair(key_size: int = 2048) -> tuple[str, str]:
    """Generate an RSA keypair, returned as (public PEM, private PEM)."""
    key_pair = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_key = key_pair.private_bytes(
        crypto_serialization.Encoding.PEM,
        crypto_serialization.PrivateFormat.PKCS8,
        crypto_serialization.NoEncryption(),
    ).decode("utf-8")
    public_key = (
        key_pair.public_key()
        .public_bytes(
            crypto_serialization.Encoding.PEM,
            crypto_serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return public_key, private_key


def encrypt_private_key(private_pem: str, passphrase: str | None) -> str:
    if not passphrase:
        return private_pem
    key = crypto_serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
    return key.private_bytes(
        crypto_serialization.Encoding.PEM,
        crypto_serialization.PrivateFormat.PKCS8,
        crypto_serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    ).decode("utf-8")


class KeyManager:
    """Creates, stores and hands out signing keys of local actors."""

    def __init__(
        self,
        store: FederationStore,
        key_size: int = 2048,
        passphrase: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self._store = store
        self._key_size = key_size
        self._passphrase = passphrase or None
        self._logger = logger or logging.getLogger(__name__)

    def ensure_actor_keys(
        self,
        actor_iri: str,
        key_iri: str,
        actor_type: str = "Person",
        handle: str | None = None,
        force: bool = False,
    ) -> tuple[str, str]:
        """Make sure a local actor has a keypair; returns (key IRI, public PEM)."""
        record = self._store.get_actor_record(actor_iri)
        if record is not None and record.private_key_pem and not force:
            return record.key_iri, record.public_key_pem

        if record is not None and record.private_key_pem:
            self._logger.warning("%s already has a key, but replacement forced", actor_iri)
        self._logger.info("Generating actor keypair for %s", actor_iri)

        public_pem, private_pem = generate_keypair(self._key_size)
        self._store.save_local_actor_keys(
            actor_iri,
            key_iri,
            public_pem,
            encrypt_private_key(private_pem, self._passphrase),
            actor_type=actor_type,
            handle=handle,
        )
        self._logger.info("Key ID %s generated", key_iri)
        return key_iri, public_pem

    def signer_for(self, actor_iri: str, headers: list[str] | None = None) -> HTTPSignatureAuth:
        key_iri, private_pem = self._store.get_private_key_pem(actor_iri)
        if not private_pem:
            raise SigningError(f"No private key stored for {actor_iri}")

        private_key = load_private_key(private_pem, self._passphrase)
        self._logger.debug("Private key with ID %s found", key_iri)
        return HTTPSignatureAuth(key_iri, private_key, headers)


__all__ = ["KeyManager", "generate_keypair"]
