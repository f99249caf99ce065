"""chat-spine ratelimit -- sliding-window limiting for inbound events.

MODULE MAP
──────────
  limiters.py  ─ RateLimitResult, RedisRateLimiter, MemoryRateLimiter, AdaptiveRateLimiter
  policy.py    ─ RateLimitRules, RateLimitPolicy, PolicyDecision
  sweeper.py   ─ RateLimitSweeper
"""

from .limiters import (
    AdaptiveRateLimiter,
    MemoryRateLimiter,
    RateLimiter,
    RateLimitResult,
    RedisRateLimiter,
)
from .policy import PolicyDecision, RateLimitPolicy, RateLimitRules, normalize_command
from .sweeper import RateLimitSweeper

__all__ = [
    "AdaptiveRateLimiter",
    "MemoryRateLimiter",
    "PolicyDecision",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitRules",
    "RateLimitSweeper",
    "RateLimiter",
    "RedisRateLimiter",
    "normalize_command",
]
