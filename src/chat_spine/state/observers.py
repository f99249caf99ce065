"""Transition observers: hooks notified after every applied FSM transition.

Observers are passed to the :class:`~chat_spine.state.machine.StateMachine`
explicitly; there is no process-wide hook. An observer that raises is
logged by the machine and never fails the transition.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

from chat_spine.core.logging import get_logger


@runtime_checkable
class TransitionObserver(Protocol):
    def record_transition(self, from_state: str, to_state: str) -> None:
        ...


class TransitionCounter:
    """Thread-safe count of applied transitions per ``(from, to)`` pair."""

    def __init__(self):
        self._counts: Counter[tuple[str, str]] = Counter()
        self._lock = threading.Lock()

    def record_transition(self, from_state: str, to_state: str) -> None:
        with self._lock:
            self._counts[(from_state, to_state)] += 1

    def count(self, from_state: str, to_state: str) -> int:
        with self._lock:
            return self._counts[(from_state, to_state)]

    def snapshot(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(self._counts)

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())


class LoggingTransitionObserver:
    """Logs every applied transition at INFO."""

    def __init__(self, log: Any | None = None):
        self._log = log or get_logger(__name__)

    def record_transition(self, from_state: str, to_state: str) -> None:
        self._log.info("state_transition", from_state=from_state, to_state=to_state)


class CompositeObserver:
    """Fans one notification out to several observers, in order.

    A failing observer is logged and does not stop the ones after it.
    """

    def __init__(self, observers: Iterable[TransitionObserver] = (), log: Any | None = None):
        self._observers = list(observers)
        self._log = log or get_logger(__name__)

    def add(self, observer: TransitionObserver) -> None:
        self._observers.append(observer)

    def record_transition(self, from_state: str, to_state: str) -> None:
        for observer in self._observers:
            try:
                observer.record_transition(from_state, to_state)
            except Exception:
                self._log.exception(
                    "transition_observer_failed",
                    observer=type(observer).__name__,
                    from_state=from_state,
                    to_state=to_state,
                )


__all__ = [
    "TransitionObserver",
    "TransitionCounter",
    "LoggingTransitionObserver",
    "CompositeObserver",
]
