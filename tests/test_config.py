from __future__ import annotations

import pytest
from pydantic import ValidationError

from replwire.config import Settings, get_settings


def test_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.host == "127.0.0.1"
    assert settings.port == 7888
    assert settings.request_timeout_seconds is None
    assert settings.log_profile == "default"


def test_environment_with_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPLWIRE_PORT", "9999")
    monkeypatch.setenv("REPLWIRE_REQUEST_TIMEOUT_SECONDS", "2.5")

    settings = get_settings()

    assert settings.port == 9999
    assert settings.request_timeout_seconds == 2.5


def test_overrides_win_and_none_is_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPLWIRE_HOST", "0.0.0.0")

    settings = get_settings(host=None, port=1234)

    assert settings.host == "0.0.0.0"
    assert settings.port == 1234


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(port=70000)
    with pytest.raises(ValidationError):
        Settings(log_profile="json")
