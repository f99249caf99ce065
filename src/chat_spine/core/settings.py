"""Settings for chat-spine.

Every TTL, interval and limit the coordination primitives use comes from
here, so one ``.env`` (or environment) describes a whole deployment and
every replica agrees on it.

Fields
──────
redis_url / key_prefix       : shared store location and key-space prefix
state_*                      : FSM lock TTL, state TTL, staleness sweep interval
rate_limit_*                 : global / per-user / per-command rules, allow-list,
                               sweeper cadence and retention
idempotency_*                : record TTL, safety lock TTL, poll cadence, sweeper
retry_* / breaker_*          : resilience defaults

Examples:
    >>> settings = ChatSpineSettings(rate_limit_per_user={"limit": 20, "window": "1m"})
    >>> settings.rate_limit_per_user.window
    60.0

Environment variables use the ``CHAT_SPINE_`` prefix; structured values are
JSON::

    CHAT_SPINE_REDIS_URL=redis://redis:6379/0
    CHAT_SPINE_RATE_LIMIT_COMMANDS='{"buy": {"limit": 5, "window": "1m"}}'
    CHAT_SPINE_RATE_LIMIT_ALLOWLIST='[1001, 1002]'

Use :func:`load_settings` to get a :class:`~chat_spine.core.errors.ConfigError`
instead of a pydantic error when a value is invalid.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> float:
    """Parse ``"500ms"``, ``"30s"``, ``"1m"``, ``"1h30m"`` or a number of seconds."""
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(number) * _UNIT_SECONDS[unit] for number, unit in parts)


class RateLimitRule(BaseModel):
    """A ``limit`` admitted requests per sliding ``window`` seconds."""

    limit: int = Field(ge=0)
    window: float = Field(gt=0)

    @field_validator("window", mode="before")
    @classmethod
    def _parse_window(cls, value: str | int | float) -> float:
        return parse_duration(value)


class ChatSpineSettings(BaseSettings):
    """Deployment-wide configuration for the coordination primitives."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Shared store ─────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = ""

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── FSM ──────────────────────────────────────────────────────
    state_lock_ttl: float = 5.0
    state_ttl: float = 3600.0
    state_sweep_interval: float = 300.0

    # ── Rate limiting ────────────────────────────────────────────
    rate_limit_global: RateLimitRule | None = None
    rate_limit_per_user: RateLimitRule | None = Field(
        default_factory=lambda: RateLimitRule(limit=30, window=60)
    )
    rate_limit_commands: dict[str, RateLimitRule] = Field(default_factory=dict)
    rate_limit_allowlist: set[int] = Field(default_factory=set)
    rate_limit_penalize_rejected: bool = False
    rate_limit_fallback_ratio: float = Field(default=0.5, gt=0, le=1)
    rate_limit_sweep_interval: float = 60.0
    rate_limit_retention: float = 300.0

    # ── Idempotency ──────────────────────────────────────────────
    idempotency_ttl: float = 24 * 3600.0
    idempotency_lock_ttl: float = 300.0
    idempotency_poll_interval: float = 0.1
    idempotency_max_wait: float | None = None
    idempotency_sweep_interval: float = 600.0
    idempotency_max_lock_age: float = 900.0

    # ── Resilience ───────────────────────────────────────────────
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1
    retry_max_delay: float = 5.0
    retry_multiplier: float = 2.0
    breaker_failure_rate: float = 0.5
    breaker_minimum_requests: int = 10
    breaker_recovery_timeout: float = 30.0
    breaker_half_open_max_calls: int = 3

    @field_validator(
        "state_lock_ttl",
        "state_ttl",
        "state_sweep_interval",
        "rate_limit_sweep_interval",
        "rate_limit_retention",
        "idempotency_ttl",
        "idempotency_lock_ttl",
        "idempotency_poll_interval",
        "idempotency_sweep_interval",
        "idempotency_max_lock_age",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: str | int | float) -> float:
        return parse_duration(value)


def load_settings(**overrides: Any) -> ChatSpineSettings:
    """Build settings from the environment plus *overrides*.

    Raises:
        ConfigError: If any value fails validation; the pydantic error is the cause
    """
    try:
        return ChatSpineSettings(**overrides)
    except ValidationError as exc:
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ConfigError(
            f"invalid chat-spine settings: {', '.join(fields)}",
            context={"fields": fields},
            cause=exc,
        ) from exc


__all__ = ["ChatSpineSettings", "RateLimitRule", "load_settings", "parse_duration"]
