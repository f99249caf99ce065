"""
chat-spine logging - structured logging for every coordination primitive.

Every component (locks, FSM, limiters, idempotency manager, sweepers)
logs through :func:`get_logger` with snake_case event names and keyword
fields, so a single ``entity_id`` or ``operation_key`` can be followed
across replicas in the log aggregator.

Architecture:
    ::

        configure_logging(level="INFO", json_format=True, service="chat-spine")
            │
            ▼
        structlog processor chain:
          1. TimeStamper (iso)
          2. merge_contextvars       ← LogContext(entity_id=..., command=...)
          3. add_log_level / add_logger_name
          4. StackInfoRenderer / set_exc_info
          5. _add_service_name
          6. _rename_for_ecs + format_exc_info (JSON only)
          7. JSONRenderer | ConsoleRenderer

Examples:
    >>> from chat_spine.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> log = get_logger(__name__)
    >>> log.warning("state_lock_held", entity_id=42)

    Scoped context for one inbound event:

    >>> with LogContext(entity_id=42, command="buy"):
    ...     log.info("dispatch_started")

Tags:
    logging, structlog, observability, chat-spine

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_service_name = "chat-spine"

# structlog key → ECS key
_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger": "log.logger",
}


def _add_service_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", _service_name)
    return event_dict


def _rename_for_ecs(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Rename structlog's default keys to their Elasticsearch Common Schema names."""
    for source, target in _ECS_FIELDS.items():
        if source in event_dict:
            event_dict[target] = event_dict.pop(source)
    return event_dict


def _build_processors(json_format: bool, add_timestamp: bool) -> list[Processor]:
    processors: list[Processor] = []
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
    processors += [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_name,
    ]
    if json_format:
        processors += [
            _rename_for_ecs,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "chat-spine",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines when True, colored console when False;
            None picks JSON unless stdout is a terminal
        service: Value of the ``service.name`` field on every line
        add_timestamp: Stamp every line with an ISO timestamp
    """
    global _service_name
    _service_name = service

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"unknown log level {level!r}")
    if json_format is None:
        json_format = not sys.stdout.isatty()

    structlog.configure(
        processors=_build_processors(json_format, add_timestamp),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # redis-py logs through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Structured logger for *name*, usually ``__name__``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Add fields to every later log line on this thread or task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind fields for the duration of a ``with`` block.

    On exit each field goes back to the value it had before, so nested
    contexts for the same key restore the outer value.

    Example:
        with LogContext(entity_id=42, operation_key="msg:42:7"):
            log.info("dispatch_started")
    """

    def __init__(self, **kwargs: Any):
        self._fields = kwargs
        self._tokens: Any = None

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
