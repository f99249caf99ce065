"""
Structured error types for chat-spine.

Every failure the coordination primitives can surface falls into one of a
small number of categories, and each category has a fixed answer to two
questions: *may the caller retry?* and *what should the user be told?*

Manifesto:
    - **Contention is not failure:** a held lock or an in-flight operation is
      an expected, recoverable outcome. It maps to a gentle "try again".
    - **Rejected is not broken:** an invalid FSM transition is a well-formed
      request that the current state does not permit. Never retried.
    - **Backend failures are loud:** the shared store being unreachable is
      logged with its cause and surfaces as "temporarily unavailable".
    - **Cancellation is verbatim:** caller-initiated abandonment is raised as
      ``OperationCancelled`` from every primitive that can wait.

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                       ChatSpineError                          │
        │   (category, retryable, retry_after, user_message, cause)     │
        ├───────────────────────────────────────────────────────────────┤
        │  ContentionError         InvalidTransitionError               │
        │  (CONTENTION, retry)     (INVALID_TRANSITION)                 │
        │    ├── StateLockedError                                       │
        │    └── OperationInProgressError                               │
        │                                                               │
        │  RateLimitExceededError  BackendError (BACKEND, retry)        │
        │  (RATE_LIMIT)              ├── StoreUnavailableError          │
        │                            └── CircuitOpenError               │
        │                                                               │
        │  OperationCancelled      ConfigError        InternalError     │
        │  (CANCELLED)             (CONFIG)           (INTERNAL)        │
        └───────────────────────────────────────────────────────────────┘

Examples:
    >>> err = StateLockedError(entity_id=42)
    >>> err.retryable
    True
    >>> user_message_for(err)
    'Your previous request is still being processed. Please try again in a moment.'

Tags:
    error-handling, exception-hierarchy, retry-logic, chat-spine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONTENTION = "CONTENTION"                  # lock held, operation in flight
    INVALID_TRANSITION = "INVALID_TRANSITION"  # FSM rejected the target state
    RATE_LIMIT = "RATE_LIMIT"                  # limiter said no
    BACKEND = "BACKEND"                        # shared store / downstream failure
    CANCELLED = "CANCELLED"                    # caller gave up
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


GENERIC_USER_MESSAGE = "The service is temporarily unavailable. Please try again later."


class ChatSpineError(Exception):
    """
    Base exception for all chat-spine errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``default_user_message``; instances may override each one.

    Attributes:
        message: Developer-facing description (goes to logs)
        category: ErrorCategory for routing/alerting
        retryable: Whether the same call may succeed if repeated later
        retry_after: Suggested wait in seconds, when known
        user_message: End-user facing text
        context: Extra structured fields for logging
        cause: Underlying exception (also chained as ``__cause__``)
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    default_user_message: str = GENERIC_USER_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        user_message: str | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category if category is not None else self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = retry_after
        self.user_message = user_message or self.default_user_message
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ChatSpineError:
        """Attach extra logging fields (fluent API)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Structured fields for one log line."""
        fields: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        optional = {
            "retry_after": self.retry_after,
            "context": dict(self.context) if self.context else None,
            "cause": repr(self.cause) if self.cause is not None else None,
        }
        fields.update((key, value) for key, value in optional.items() if value is not None)
        return fields

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONTENTION (recoverable by waiting)
# =============================================================================


class ContentionError(ChatSpineError):
    """Another caller currently owns the resource."""

    default_category = ErrorCategory.CONTENTION
    default_retryable = True
    default_user_message = "Your previous request is still being processed. Please try again in a moment."


class StateLockedError(ContentionError):
    """The entity's FSM lock is held by a concurrent writer."""

    def __init__(self, entity_id: int | None = None, message: str | None = None, **kwargs: Any):
        self.entity_id = entity_id
        super().__init__(
            message or f"state for entity {entity_id} is locked, try again later",
            **kwargs,
        )


class OperationInProgressError(ContentionError):
    """An idempotent operation with the same key is still running."""

    def __init__(self, key: str, message: str | None = None, **kwargs: Any):
        self.key = key
        super().__init__(message or f"operation {key!r} is already in progress", **kwargs)


# =============================================================================
# REJECTED REQUESTS (never retried automatically)
# =============================================================================


class InvalidTransitionError(ChatSpineError):
    """Raised when an illegal state transition is attempted.

    The transition table is strict. If a legitimate transition
    is blocked, add it to the table explicitly.
    """

    default_category = ErrorCategory.INVALID_TRANSITION
    default_user_message = "That action is not possible right now."

    def __init__(self, current: str, target: str, **kwargs: Any):
        self.current = current
        self.target = target
        super().__init__(f"invalid state transition: {current} → {target}", **kwargs)


class RateLimitExceededError(ChatSpineError):
    """A rate-limit scope rejected the request."""

    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        scope: str,
        *,
        retry_after: float | None = None,
        result: Any = None,
        **kwargs: Any,
    ):
        self.scope = scope
        self.result = result
        if retry_after:
            kwargs.setdefault(
                "user_message",
                f"Too many requests. Please try again in {max(1, round(retry_after))} seconds.",
            )
        else:
            kwargs.setdefault("user_message", "Too many requests. Please slow down.")
        super().__init__(f"rate limit exceeded for scope {scope!r}", retry_after=retry_after, **kwargs)


class ConfigError(ChatSpineError):
    """Invalid configuration (bad rule, bad duration)."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# BACKEND / INFRASTRUCTURE
# =============================================================================


class BackendError(ChatSpineError):
    """Infrastructure failure: the shared store or a downstream dependency."""

    default_category = ErrorCategory.BACKEND
    default_retryable = True


class StoreUnavailableError(BackendError):
    """The shared key-value store is unreachable or returned an error."""

    def __init__(self, message: str = "shared store unavailable", **kwargs: Any):
        super().__init__(message, **kwargs)


class CircuitOpenError(BackendError):
    """Raised when a circuit is open (or half-open and saturated)."""

    def __init__(self, message: str = "Circuit breaker is open", **kwargs: Any):
        super().__init__(message, **kwargs)


# =============================================================================
# CANCELLATION / INTERNAL
# =============================================================================


class OperationCancelled(ChatSpineError):
    """The caller's cancellation signal fired while a primitive was waiting."""

    default_category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "operation cancelled by caller", **kwargs: Any):
        super().__init__(message, **kwargs)


class InternalError(ChatSpineError):
    """Unexpected fault captured at the dispatch boundary."""

    default_category = ErrorCategory.INTERNAL


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Return whether *error* is worth retrying.

    ChatSpineError answers for itself; builtin connection/timeout errors are
    treated as transient; everything else is not retried.
    """
    if isinstance(error, ChatSpineError):
        return error.retryable
    return isinstance(error, (builtins.ConnectionError, builtins.TimeoutError))


def user_message_for(error: BaseException | None) -> str:
    """Map an error to the message shown to the end user."""
    if error is None:
        return ""
    if isinstance(error, ChatSpineError):
        return error.user_message
    return GENERIC_USER_MESSAGE


def describe_error(error: BaseException, log: Any) -> tuple[str, bool]:
    """Log *error* with its structured fields and return (user_message, retryable)."""
    if isinstance(error, ChatSpineError):
        fields = error.to_dict()
        if error.category in (ErrorCategory.BACKEND, ErrorCategory.INTERNAL):
            log.error("application_error", **fields)
        else:
            log.info("request_declined", **fields)
    else:
        log.error("unknown_error", error_type=type(error).__name__, message=str(error))
    return user_message_for(error), is_retryable(error)


__all__ = [
    "ErrorCategory",
    "ChatSpineError",
    "ContentionError",
    "StateLockedError",
    "OperationInProgressError",
    "InvalidTransitionError",
    "RateLimitExceededError",
    "ConfigError",
    "BackendError",
    "StoreUnavailableError",
    "CircuitOpenError",
    "OperationCancelled",
    "InternalError",
    "GENERIC_USER_MESSAGE",
    "is_retryable",
    "user_message_for",
    "describe_error",
]
