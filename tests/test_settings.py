# SPDX-FileCopyrightText: © 2023 Dominik George <nik@naturalnet.de>
#
# SPDX-License-Identifier: LGPL-3.0-or-later

import pytest
from dynaconf import ValidationError

from inkfed.settings import base_url, get_settings, web_url


def test_defaults():
    settings = get_settings([])

    assert settings.delivery.max_attempts == 5
    assert base_url(settings) == "https://localhost"
    assert web_url(settings) == "https://localhost"


def test_file_and_overrides(tmp_path):
    config = tmp_path / "inkfed.toml"
    config.write_text(
        '[instance]\nhost = "inkwell.social"\nweb_url = "https://www.inkwell.social/"\n'
    )

    settings = get_settings(str(config), **{"delivery.max_attempts": 3})

    assert base_url(settings) == "https://inkwell.social"
    assert web_url(settings) == "https://www.inkwell.social"
    assert settings.delivery.max_attempts == 3
    # Merged with the defaults
    assert settings.delivery.backoff_base == 30


def test_environment(monkeypatch):
    monkeypatch.setenv("INKFED_INSTANCE__HOST", "env.example")

    assert get_settings([]).instance.host == "env.example"


@pytest.mark.parametrize(
    "overrides",
    [
        {"instance.host": ""},
        {"instance.scheme": "gopher"},
        {"delivery.max_attempts": 0},
        {"delivery.jitter": 2},
        {"keys.size": 1024},
    ],
)
def test_invalid(overrides):
    with pytest.raises(ValidationError):
        get_settings([], **overrides)
