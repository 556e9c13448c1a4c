"""Tests for settings and logging setup."""

import logging
from pathlib import Path

import pytest
import structlog
from pydantic import ValidationError

from cairn.logging import bind_cycle, configure_logging
from cairn.settings import ProviderConfig, Settings, get_settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CAIRN_MAX_CONCURRENCY", raising=False)
        settings = Settings()
        assert settings.max_concurrency == 4
        assert settings.max_attempts == 5
        assert settings.state_dir == Path(".cairn/state")
        assert settings.refresh_before_apply is False

    def test_environment(self, monkeypatch):
        """Test that CAIRN_ variables override the defaults."""
        monkeypatch.setenv("CAIRN_MAX_CONCURRENCY", "8")
        monkeypatch.setenv("CAIRN_REFRESH_BEFORE_APPLY", "true")
        monkeypatch.setenv("CAIRN_REGION", "us-east-2")
        settings = Settings()
        assert settings.max_concurrency == 8
        assert settings.refresh_before_apply is True
        assert settings.region == "us-east-2"

    def test_validation(self):
        with pytest.raises(ValidationError):
            Settings(max_concurrency=0)
        with pytest.raises(ValidationError):
            Settings(command_timeout=0)

    def test_frozen(self):
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.max_attempts = 10


class TestProviderConfig:
    def test_built_from_settings(self):
        config = Settings(region="eu-west-1", profile="ops").provider_config()
        assert config == ProviderConfig(region="eu-west-1", profile="ops")

    def test_immutable(self):
        config = ProviderConfig(region="eu-west-1")
        with pytest.raises(ValidationError):
            config.region = "us-east-1"


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture
    def captured(self, monkeypatch):
        calls = {}
        monkeypatch.setattr(structlog, "configure", lambda **kwargs: calls.update(kwargs))
        monkeypatch.setattr(
            logging, "basicConfig", lambda **kwargs: calls.update(basic=kwargs)
        )
        return calls

    def test_level_defaults_to_settings(self, monkeypatch, captured):
        monkeypatch.setenv("CAIRN_LOG_LEVEL", "debug")
        get_settings.cache_clear()
        try:
            configure_logging()
        finally:
            get_settings.cache_clear()
        assert captured["basic"]["level"] == "DEBUG"

    def test_explicit_level(self, captured):
        configure_logging("warning")
        assert captured["basic"]["level"] == "WARNING"
        assert captured["cache_logger_on_first_use"] is True


def test_bind_cycle_replaces_context():
    """Test that each run starts with a fresh logging context."""
    bind_cycle(cycle_id="first", operation="apply")
    bind_cycle(cycle_id="second", operation="destroy")
    assert structlog.contextvars.get_contextvars() == {
        "cycle_id": "second",
        "operation": "destroy",
    }
    structlog.contextvars.clear_contextvars()
