# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later


class FederationError(Exception):
    """Base class for all errors raised by the federation engine."""


class SigningError(FederationError):
    """A request could not be signed, e.g. because no private key is available."""


class VerificationError(FederationError):
    """An inbound request signature could not be verified."""


class NotFoundError(FederationError):
    """A local user or a remote resource does not exist."""


class FetchError(FederationError):
    """A remote resource could not be retrieved (network error, timeout, bad status)."""


class InvalidActorError(FederationError):
    """A remote document is not a well-formed actor."""


class MalformedResponseError(FederationError):
    """A remote server answered with a document we cannot interpret."""


class MalformedActivityError(FederationError):
    """An inbound payload is not a processable activity."""


__all__ = [
    "FederationError",
    "SigningError",
    "VerificationError",
    "NotFoundError",
    "FetchError",
    "InvalidActorError",
    "MalformedResponseError",
    "MalformedActivityError",
]
