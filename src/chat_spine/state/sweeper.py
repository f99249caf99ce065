"""Staleness sweeper for entity state.

Backstop for the storage TTL: removes any state whose ``last_updated`` is
older than ``ttl``, e.g. documents written before the TTL was shortened.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from chat_spine.core.errors import ChatSpineError
from chat_spine.execution.sweeper import PeriodicSweeper

from .states import utcnow
from .storage import StateStorage


class StateSweeper(PeriodicSweeper):
    name = "state-sweeper"

    def __init__(
        self,
        storage: StateStorage,
        ttl: float = 3600.0,
        interval: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        log: Any | None = None,
    ):
        super().__init__(interval, log=log)
        self._storage = storage
        self._max_age = timedelta(seconds=ttl)
        self._clock = clock

    def sweep(self) -> int:
        removed = 0
        now = self._clock()
        for entity_id in self._storage.scan_entity_ids():
            try:
                state = self._storage.get_state(entity_id)
                if state is None:
                    continue
                if now - state.last_updated > self._max_age:
                    self._storage.clear_state(entity_id)
                    removed += 1
            except ChatSpineError as exc:
                self._log.warning("state_sweep_entity_failed", entity_id=entity_id, error=str(exc))
        return removed


__all__ = ["StateSweeper"]
