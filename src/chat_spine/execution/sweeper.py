"""Background sweeper loop: periodic cleanup passes on a daemon thread.

Subclasses implement :meth:`PeriodicSweeper.sweep`, which performs one pass
and returns how many items it removed. The base class owns the thread
lifecycle: a pass runs immediately on :meth:`start` and then every
``interval`` seconds until :meth:`stop` is called.

A failed pass is logged and the loop carries on; sweepers never take the
process down. They are scoped to the process, not to any request.

Usage::

    sweeper = StateSweeper(storage, ttl=3600, interval=300)
    sweeper.start()
    ...
    sweeper.stop()
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from chat_spine.core.logging import get_logger


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PeriodicSweeper(ABC):
    """Runs :meth:`sweep` every ``interval`` seconds on a daemon thread."""

    name: str = "sweeper"

    def __init__(self, interval: float, log: Any | None = None):
        self.interval = interval
        self._log = log or get_logger(__name__)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_run: datetime | None = None
        self.last_removed: int = 0
        self.passes: int = 0

    @abstractmethod
    def sweep(self) -> int:
        """Perform one cleanup pass. Returns the number of items removed."""
        ...

    def run_once(self) -> int:
        """Run one logged pass. Never raises; returns 0 on failure."""
        try:
            removed = self.sweep()
        except Exception:
            self._log.exception("sweep_failed", sweeper=self.name)
            removed = 0
        else:
            if removed:
                self._log.info("sweep_completed", sweeper=self.name, removed=removed)
            else:
                self._log.debug("sweep_completed", sweeper=self.name, removed=0)
        finally:
            self.passes += 1
            self.last_run = _utcnow()
        self.last_removed = removed
        return removed

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> threading.Thread:
        """Start the loop in a daemon thread. Returns the thread."""
        if self.is_running:
            assert self._thread is not None
            return self._thread

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"{self.name}-loop",
            daemon=True,
        )
        self._thread.start()
        self._log.info("sweeper_started", sweeper=self.name, interval=self.interval)
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        """Request shutdown and wait up to *timeout* seconds for the thread."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            self._log.info("sweeper_stopped", sweeper=self.name, passes=self.passes)

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)


__all__ = ["PeriodicSweeper"]
