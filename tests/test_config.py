"""Tests for throttle settings and storage selection."""

from __future__ import annotations

import pytest

from gatekeeper.adapters.throttle_storage import (
    DatabaseThrottleStorage,
    RedisThrottleStorage,
    SessionThrottleStorage,
)
from gatekeeper.core.config import Settings, SettingsConfigSource, ThrottleSettings
from gatekeeper.core.errors import ConfigurationAppError
from gatekeeper.core.rate_limit import build_storage


def test_default_throttle_settings():
    cfg = ThrottleSettings()

    assert cfg.enabled is True
    assert cfg.max_attempts == 60
    assert cfg.decay_seconds == 60
    assert cfg.storage == "session"
    assert cfg.presets["login"]["account"]["field"] == "email"


def test_presets_and_lists_load_from_environment(monkeypatch):
    monkeypatch.setenv("THROTTLE_PRESETS", '{"api": {"max_attempts": 100, "decay_seconds": 10}}')
    monkeypatch.setenv("THROTTLE_TRUSTED_PROXIES", '["10.0.0.0/8", "::1"]')
    monkeypatch.setenv("THROTTLE_STORAGE", "redis")

    cfg = ThrottleSettings()

    assert cfg.presets == {"api": {"max_attempts": 100, "decay_seconds": 10}}
    assert cfg.trusted_proxies == ["10.0.0.0/8", "::1"]
    assert cfg.storage == "redis"


def test_config_source_dotted_lookup():
    source = SettingsConfigSource({"security": {"throttle": {"presets": {"login": {"max": 5}}}}})

    assert source.get("security.throttle.presets") == {"login": {"max": 5}}
    assert source.get("security.throttle.presets.login.max") == 5
    assert source.get("security.missing", "fallback") == "fallback"
    assert source.get("security.throttle.presets.login.max.deeper") is None


def test_config_source_mounts_throttle_settings():
    source = SettingsConfigSource.from_settings(Settings())

    assert "login" in source.get("security.throttle.presets")
    assert source.get("security.throttle.max_attempts") == 60


class TestBuildStorage:
    def test_session_backend(self):
        storage = build_storage(ThrottleSettings(storage="session", prefix="t:"))

        assert isinstance(storage, SessionThrottleStorage)

    def test_database_backend_creates_table(self):
        storage = build_storage(ThrottleSettings(storage="database", database_url="sqlite://", table="limits"))

        assert isinstance(storage, DatabaseThrottleStorage)
        assert storage.table.name == "limits"
        assert storage.get("missing") is None

    def test_redis_backend(self):
        storage = build_storage(ThrottleSettings(storage="redis", redis_url="redis://localhost:6379/0"))

        assert isinstance(storage, RedisThrottleStorage)

    @pytest.mark.parametrize("backend", ["database", "redis"])
    def test_backend_without_url_is_a_configuration_error(self, backend):
        with pytest.raises(ConfigurationAppError) as exc_info:
            build_storage(ThrottleSettings(storage=backend))

        assert exc_info.value.details["setting"].startswith("THROTTLE_")
