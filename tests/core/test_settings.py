"""Tests for chat_spine.core.settings."""

import pytest
from pydantic import ValidationError

from chat_spine.core.errors import ConfigError, ErrorCategory
from chat_spine.core.settings import ChatSpineSettings, RateLimitRule, load_settings, parse_duration


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("500ms", 0.5),
            ("30s", 30.0),
            ("1m", 60.0),
            ("1h", 3600.0),
            ("1h30m", 5400.0),
            ("2.5", 2.5),
            (10, 10.0),
            (0.25, 0.25),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "abc", "10 minutes", "5d", "1m junk"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestRateLimitRule:
    def test_duration_string_window(self):
        rule = RateLimitRule(limit=5, window="1m")
        assert rule.window == 60.0

    def test_zero_window_rejected(self):
        with pytest.raises(ValidationError):
            RateLimitRule(limit=5, window=0)

    def test_negative_limit_rejected(self):
        with pytest.raises(ValidationError):
            RateLimitRule(limit=-1, window=1)


class TestChatSpineSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = ChatSpineSettings()
        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.state_lock_ttl == 5.0
        assert settings.state_ttl == 3600.0
        assert settings.rate_limit_per_user == RateLimitRule(limit=30, window=60)
        assert settings.rate_limit_global is None
        assert settings.rate_limit_penalize_rejected is False
        assert settings.idempotency_ttl == 86400.0
        assert settings.idempotency_lock_ttl == 300.0
        assert settings.retry_max_attempts == 3
        assert settings.breaker_minimum_requests == 10

    def test_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CHAT_SPINE_REDIS_URL", "redis://redis:6379/2")
        monkeypatch.setenv("CHAT_SPINE_STATE_TTL", "2h")
        monkeypatch.setenv("CHAT_SPINE_RATE_LIMIT_COMMANDS", '{"buy": {"limit": 5, "window": "1m"}}')
        monkeypatch.setenv("CHAT_SPINE_RATE_LIMIT_ALLOWLIST", "[1001, 1002]")

        settings = ChatSpineSettings()

        assert settings.redis_url == "redis://redis:6379/2"
        assert settings.state_ttl == 7200.0
        assert settings.rate_limit_commands["buy"] == RateLimitRule(limit=5, window=60)
        assert settings.rate_limit_allowlist == {1001, 1002}

    def test_kwargs_durations(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = ChatSpineSettings(idempotency_poll_interval="250ms", rate_limit_retention="5m")
        assert settings.idempotency_poll_interval == 0.25
        assert settings.rate_limit_retention == 300.0

    def test_fallback_ratio_bounds(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ValidationError):
            ChatSpineSettings(rate_limit_fallback_ratio=0)


class TestLoadSettings:
    def test_returns_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = load_settings(key_prefix="bot:", state_ttl="30m")
        assert settings.key_prefix == "bot:"
        assert settings.state_ttl == 1800.0

    def test_invalid_value_raises_config_error(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigError) as excinfo:
            load_settings(rate_limit_fallback_ratio=0, state_ttl="forever")

        err = excinfo.value
        assert err.category == ErrorCategory.CONFIG
        assert set(err.context["fields"]) == {"rate_limit_fallback_ratio", "state_ttl"}
        assert isinstance(err.__cause__, ValidationError)

    def test_invalid_environment_raises_config_error(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CHAT_SPINE_RATE_LIMIT_PER_USER", '{"limit": 5, "window": "soon"}')
        with pytest.raises(ConfigError):
            load_settings()
