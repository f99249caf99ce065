"""chat-spine core -- errors, logging, settings and shared-store access.

Architecture::

    errors.py     Error taxonomy (contention / rejected / backend / cancelled)
    logging.py    structlog configuration + get_logger
    settings.py   ChatSpineSettings (pydantic-settings), RateLimitRule, load_settings
    store.py      KeySpace, Redis client factory, store_errors()

Everything above the core (state, ratelimit, execution, dispatch) builds on
these four modules and nothing in core imports from them.
"""

from .errors import (
    BackendError,
    ChatSpineError,
    CircuitOpenError,
    ConfigError,
    ContentionError,
    ErrorCategory,
    InternalError,
    InvalidTransitionError,
    OperationCancelled,
    OperationInProgressError,
    RateLimitExceededError,
    StateLockedError,
    StoreUnavailableError,
    describe_error,
    is_retryable,
    user_message_for,
)
from .logging import LogContext, configure_logging, get_logger
from .settings import ChatSpineSettings, RateLimitRule, load_settings, parse_duration
from .store import KeySpace, create_redis_client, store_errors

__all__ = [
    "BackendError",
    "ChatSpineError",
    "ChatSpineSettings",
    "CircuitOpenError",
    "ConfigError",
    "ContentionError",
    "ErrorCategory",
    "InternalError",
    "InvalidTransitionError",
    "KeySpace",
    "LogContext",
    "OperationCancelled",
    "OperationInProgressError",
    "RateLimitExceededError",
    "RateLimitRule",
    "StateLockedError",
    "StoreUnavailableError",
    "configure_logging",
    "create_redis_client",
    "describe_error",
    "get_logger",
    "is_retryable",
    "load_settings",
    "parse_duration",
    "store_errors",
    "user_message_for",
]
