"""Rate-limit rules and the policy that applies them to inbound events.

Scopes, checked in order (the first rejection short-circuits)::

    user:{entity_id}               per-user rule
    command:{command}:{entity_id}  per-command rule, when one is configured
    global:all                     global rule, when one is configured

Allow-listed entities bypass every scope and never touch the limiter.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from chat_spine.core.errors import RateLimitExceededError
from chat_spine.core.logging import get_logger
from chat_spine.core.settings import ChatSpineSettings, RateLimitRule

from .limiters import RateLimiter, RateLimitResult


def normalize_command(command: str) -> str:
    """``"/Buy@my_bot"`` → ``"buy"``."""
    return command.strip().lstrip("/").split("@", 1)[0].lower()


class RateLimitRules:
    """Configured limits plus the allow-list."""

    def __init__(
        self,
        global_rule: RateLimitRule | None = None,
        per_user: RateLimitRule | None = None,
        commands: Mapping[str, RateLimitRule] | None = None,
        allowlist: Iterable[int] = (),
    ):
        self._global = global_rule
        self._per_user = per_user
        self._commands = {normalize_command(name): rule for name, rule in (commands or {}).items()}
        self._allowlist = frozenset(allowlist)

    @classmethod
    def from_settings(cls, settings: ChatSpineSettings) -> RateLimitRules:
        return cls(
            global_rule=settings.rate_limit_global,
            per_user=settings.rate_limit_per_user,
            commands=settings.rate_limit_commands,
            allowlist=settings.rate_limit_allowlist,
        )

    def is_allowlisted(self, entity_id: int) -> bool:
        return entity_id in self._allowlist

    def command_rule(self, command: str) -> RateLimitRule | None:
        """Rule for *command*, or None when the command has no dedicated limit."""
        return self._commands.get(normalize_command(command))

    def per_user_rule(self) -> RateLimitRule | None:
        return self._per_user

    def global_rule(self) -> RateLimitRule | None:
        return self._global


@dataclass(frozen=True)
class PolicyDecision:
    """Verdict for one inbound event across every applicable scope."""

    allowed: bool
    results: dict[str, RateLimitResult] = field(default_factory=dict)
    exceeded_scope: str | None = None

    @property
    def exceeded(self) -> RateLimitResult | None:
        if self.exceeded_scope is None:
            return None
        return self.results[self.exceeded_scope]

    @property
    def degraded(self) -> bool:
        return any(result.degraded for result in self.results.values())


class RateLimitPolicy:
    """Applies :class:`RateLimitRules` to an entity and optional command."""

    def __init__(self, limiter: RateLimiter, rules: RateLimitRules, log: Any | None = None):
        self._limiter = limiter
        self._rules = rules
        self._log = log or get_logger(__name__)

    @property
    def rules(self) -> RateLimitRules:
        return self._rules

    def _scopes(self, entity_id: int, command: str | None) -> list[tuple[str, RateLimitRule]]:
        scopes: list[tuple[str, RateLimitRule]] = []
        per_user = self._rules.per_user_rule()
        if per_user is not None:
            scopes.append((f"user:{entity_id}", per_user))
        if command:
            rule = self._rules.command_rule(command)
            if rule is not None:
                scopes.append((f"command:{normalize_command(command)}:{entity_id}", rule))
        global_rule = self._rules.global_rule()
        if global_rule is not None:
            scopes.append(("global:all", global_rule))
        return scopes

    def check(self, entity_id: int, command: str | None = None) -> PolicyDecision:
        """Check every applicable scope in order.

        Raises:
            StoreUnavailableError: If the limiter has no fallback and the store fails
        """
        if self._rules.is_allowlisted(entity_id):
            return PolicyDecision(allowed=True)

        results: dict[str, RateLimitResult] = {}
        for scope, rule in self._scopes(entity_id, command):
            result = self._limiter.check(scope, rule.limit, rule.window)
            results[scope] = result
            if not result.allowed:
                self._log.warning(
                    "rate_limit_exceeded",
                    entity_id=entity_id,
                    scope=scope,
                    limit=result.limit,
                    backend=result.backend,
                    degraded=result.degraded,
                )
                return PolicyDecision(allowed=False, results=results, exceeded_scope=scope)
        return PolicyDecision(allowed=True, results=results)

    def enforce(self, entity_id: int, command: str | None = None) -> PolicyDecision:
        """Like :meth:`check`, but raise :class:`RateLimitExceededError` on rejection."""
        decision = self.check(entity_id, command)
        if not decision.allowed:
            exceeded = decision.exceeded
            raise RateLimitExceededError(
                decision.exceeded_scope or "unknown",
                retry_after=exceeded.retry_after if exceeded else None,
                result=exceeded,
                context={"entity_id": entity_id, "command": command},
            )
        return decision


__all__ = [
    "RateLimitRules",
    "PolicyDecision",
    "RateLimitPolicy",
    "normalize_command",
]
