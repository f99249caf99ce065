"""
Inbound-event dispatch: the pipeline every user update goes through.

Architecture:
    ::

        dispatch(event)
          │  LogContext(entity_id, command, operation_key)
          ▼
        IdempotencyManager.execute(operation_key)     (only with a key)
          │
          ├── RateLimitPolicy.enforce(entity_id, command)
          ├── StateMachine.get(entity_id)
          └── handler(event, state, fsm)
                command handler first, then the current state's handler
          │
          ▼
        supervisor boundary: every outcome → DispatchResult(status, ...)

    Nothing raises out of :meth:`Dispatcher.dispatch`. Expected outcomes
    (rate limited, locked, in progress, invalid transition, cancelled) are
    statuses. Backend failures are logged and reported as ``UNAVAILABLE``.
    Anything unexpected is logged with its traceback and reported as
    ``INTERNAL_ERROR`` carrying an :class:`InternalError` whose ``cause`` is
    the original exception.

Examples:
    >>> dispatcher = Dispatcher(fsm, policy, idempotency)
    >>> dispatcher.register("buy", start_buying)
    >>> result = dispatcher.dispatch(InboundEvent(42, "buy", operation_key="msg:42:7"))
    >>> result.status
    <DispatchStatus.OK: 'ok'>

Tags:
    dispatch, supervisor, pipeline, chat-spine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chat_spine.core.errors import (
    BackendError,
    ChatSpineError,
    InternalError,
    InvalidTransitionError,
    OperationCancelled,
    OperationInProgressError,
    RateLimitExceededError,
    StateLockedError,
    describe_error,
)
from chat_spine.core.logging import LogContext, get_logger
from chat_spine.execution.idempotency import IdempotencyManager
from chat_spine.ratelimit.policy import RateLimitPolicy, normalize_command
from chat_spine.state.machine import StateMachine
from chat_spine.state.states import ConversationState, EntityState


@dataclass(frozen=True)
class InboundEvent:
    """One user update, already parsed out of the transport."""

    entity_id: int
    command: str | None = None
    operation_key: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[InboundEvent, EntityState | None, StateMachine], Any]


class DispatchStatus(str, Enum):
    OK = "ok"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    LOCKED = "locked"
    IN_PROGRESS = "in_progress"
    INVALID_TRANSITION = "invalid_transition"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    INTERNAL_ERROR = "internal_error"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class DispatchResult:
    status: DispatchStatus
    value: Any = None
    from_cache: bool = False
    user_message: str = ""
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status in (DispatchStatus.OK, DispatchStatus.DUPLICATE)


class _Unhandled(Exception):
    """No handler matched; raised inside the idempotent operation so nothing is cached."""


_STATUS_BY_ERROR: tuple[tuple[type[BaseException], DispatchStatus], ...] = (
    (RateLimitExceededError, DispatchStatus.RATE_LIMITED),
    (StateLockedError, DispatchStatus.LOCKED),
    (OperationInProgressError, DispatchStatus.IN_PROGRESS),
    (InvalidTransitionError, DispatchStatus.INVALID_TRANSITION),
    (OperationCancelled, DispatchStatus.CANCELLED),
    (BackendError, DispatchStatus.UNAVAILABLE),
)


class Dispatcher:
    """Routes inbound events to handlers under rate limiting and idempotency."""

    def __init__(
        self,
        fsm: StateMachine,
        policy: RateLimitPolicy,
        idempotency: IdempotencyManager,
        *,
        idempotency_ttl: float = 24 * 3600.0,
        log: Any | None = None,
    ):
        self._fsm = fsm
        self._policy = policy
        self._idempotency = idempotency
        self._idempotency_ttl = idempotency_ttl
        self._log = log or get_logger(__name__)
        self._command_handlers: dict[str, Handler] = {}
        self._state_handlers: dict[ConversationState, Handler] = {}
        self._lock = threading.RLock()

    def register(self, command: str, handler: Handler) -> None:
        with self._lock:
            self._command_handlers[normalize_command(command)] = handler

    def register_state_handler(self, state: ConversationState, handler: Handler) -> None:
        with self._lock:
            self._state_handlers[state] = handler

    def _resolve(self, event: InboundEvent, state: EntityState | None) -> Handler | None:
        with self._lock:
            if event.command:
                handler = self._command_handlers.get(normalize_command(event.command))
                if handler is not None:
                    return handler
            current = state.current_state if state is not None else ConversationState.IDLE
            return self._state_handlers.get(current)

    def _process(self, event: InboundEvent) -> Any:
        self._policy.enforce(event.entity_id, event.command)
        state = self._fsm.get(event.entity_id)
        handler = self._resolve(event, state)
        if handler is None:
            raise _Unhandled()
        return handler(event, state, self._fsm)

    def dispatch(self, event: InboundEvent, cancel: threading.Event | None = None) -> DispatchResult:
        """Run *event* through the pipeline. Never raises."""
        with LogContext(
            entity_id=event.entity_id,
            command=event.command,
            operation_key=event.operation_key,
        ):
            try:
                if event.operation_key:
                    outcome = self._idempotency.execute(
                        event.operation_key,
                        self._idempotency_ttl,
                        lambda: self._process(event),
                        cancel=cancel,
                    )
                    value, from_cache = outcome.result, outcome.from_cache
                else:
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelled("dispatch cancelled before start")
                    value, from_cache = self._process(event), False
            except _Unhandled:
                self._log.info("dispatch_unhandled")
                return DispatchResult(DispatchStatus.UNHANDLED)
            except ChatSpineError as exc:
                return self._failed(exc)
            except Exception as exc:
                self._log.exception("dispatch_failed", error_type=type(exc).__name__)
                fault = InternalError(f"unexpected {type(exc).__name__}: {exc}", cause=exc)
                return DispatchResult(
                    DispatchStatus.INTERNAL_ERROR,
                    user_message=fault.user_message,
                    error=fault,
                )

            if from_cache:
                self._log.info("dispatch_duplicate")
                return DispatchResult(DispatchStatus.DUPLICATE, value=value, from_cache=True)
            return DispatchResult(DispatchStatus.OK, value=value)

    def _failed(self, exc: ChatSpineError) -> DispatchResult:
        user_message, _ = describe_error(exc, self._log)
        status = DispatchStatus.INTERNAL_ERROR
        for error_type, mapped in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                status = mapped
                break
        return DispatchResult(status, user_message=user_message, error=exc)


__all__ = [
    "InboundEvent",
    "Handler",
    "DispatchStatus",
    "DispatchResult",
    "Dispatcher",
]
