# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

from pathlib import Path

from dynaconf import Dynaconf, Validator
from dynaconf.base import LazySettings

_DEFAULTS_FILE = Path(__file__).parent / "default_settings.toml"
_SYSTEM_FILES = ["/etc/inkfed.toml", "/etc/inkfed.d/*.toml"]

VALIDATORS = [
    Validator("instance.host", must_exist=True, ne=""),
    Validator("instance.scheme", is_in=["http", "https"]),
    Validator("server.port", gte=1, lte=65535),
    Validator("keys.size", gte=2048),
    Validator("federation.signature_max_skew", gte=0),
    Validator("federation.claim_lease", gt=0),
    Validator("delivery.max_attempts", gte=1),
    Validator("delivery.backoff_base", gte=1),
    Validator("delivery.jitter", gte=0, lte=1),
    Validator("delivery.concurrency", gte=1),
    Validator("outbox.page_size", gte=1),
]


def get_settings(settings_files: str | list[str] = None, **overrides) -> LazySettings:
    """Load configuration from TOML files and ``INKFED_`` environment variables.

    ``overrides`` use dotted keys (``database.uri``) and take precedence over
    everything else. The merged result is validated before it is returned,
    raising :class:`dynaconf.ValidationError` for unusable values.
    """
    if settings_files is None:
        settings_files = _SYSTEM_FILES
    elif isinstance(settings_files, str):
        settings_files = [settings_files]

    settings = Dynaconf(
        envvar_prefix="INKFED",
        core_loaders=["TOML"],
        preload=[_DEFAULTS_FILE],
        settings_files=settings_files,
        merge_enabled=True,
    )

    for name, value in overrides.items():
        settings.set(name, value)

    settings.validators.register(*VALIDATORS)
    settings.validators.validate()

    return settings


def base_url(settings: LazySettings) -> str:
    """Origin all local actor and object IRIs live under."""
    return f"{settings.instance.scheme}://{settings.instance.host}"


def web_url(settings: LazySettings) -> str:
    """Origin of the web application serving HTML profile and entry pages."""
    return (settings.instance.web_url or base_url(settings)).rstrip("/")
