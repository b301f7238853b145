"""Tests for environment-driven configuration."""

import pytest

from sprite_runner.config import (
    DEFAULT_SPRITE_TIMEOUT_SECONDS,
    RunnerConfig,
    load_config,
    resolve_timeout_seconds,
)


class TestResolveTimeoutSeconds:
    def test_unset_uses_default(self, monkeypatch):
        monkeypatch.delenv("TEST_TIMEOUT", raising=False)
        assert resolve_timeout_seconds("TEST_TIMEOUT", 30.0, 1.0, 60.0) == 30.0

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("45", 45.0), ("0.5", 1.0), ("600", 60.0), ("soon", 30.0), ("", 30.0)],
    )
    def test_parses_clamps_and_falls_back(self, monkeypatch, raw: str, expected: float):
        monkeypatch.setenv("TEST_TIMEOUT", raw)
        assert resolve_timeout_seconds("TEST_TIMEOUT", 30.0, 1.0, 60.0) == expected


class TestLoadConfig:
    def test_defaults_when_environment_is_empty(self, monkeypatch):
        for name in (
            "SPRITES_TOKEN",
            "WEBHOOK_BASE_URL",
            "SPRITE_TIMEOUT_SECONDS",
            "GH_USER_NAME",
            "DATABASE_PATH",
        ):
            monkeypatch.delenv(name, raising=False)

        config = load_config()

        assert config.sprite_timeout_seconds == DEFAULT_SPRITE_TIMEOUT_SECONDS
        assert config.git_user_name == "Sprite Runner"
        assert config.database_path == "/data/sprite-runner.db"
        assert not config.sandbox_enabled

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SPRITES_TOKEN", "tok")
        monkeypatch.setenv("WEBHOOK_BASE_URL", "https://runner.example.com")
        monkeypatch.setenv("SPRITE_TIMEOUT_SECONDS", "7200")
        monkeypatch.setenv("GH_USER_NAME", "Build Bot")

        config = load_config()

        assert config.sprites_token == "tok"
        assert config.sprite_timeout_seconds == 7200.0
        assert config.git_user_name == "Build Bot"
        assert config.sandbox_enabled

    def test_sandbox_requires_token_and_webhook_base(self):
        assert not RunnerConfig(sprites_token="tok").sandbox_enabled
        assert not RunnerConfig(webhook_base_url="https://x").sandbox_enabled
