"""Tests for the PeriodicSweeper lifecycle."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

from chat_spine.execution.sweeper import PeriodicSweeper


class CountingSweeper(PeriodicSweeper):
    name = "counting"

    def __init__(self, results, interval=0.01, log=None):
        super().__init__(interval, log=log)
        self._results = list(results)
        self.calls = 0
        self.ran = threading.Event()

    def sweep(self) -> int:
        self.calls += 1
        self.ran.set()
        result = self._results.pop(0) if self._results else 0
        if isinstance(result, Exception):
            raise result
        return result


class TestRunOnce:
    def test_returns_removed_count(self):
        sweeper = CountingSweeper([3])
        assert sweeper.run_once() == 3
        assert sweeper.passes == 1
        assert sweeper.last_removed == 3
        assert sweeper.last_run is not None

    def test_failure_is_logged_not_raised(self):
        log = MagicMock()
        sweeper = CountingSweeper([RuntimeError("scan failed")], log=log)
        assert sweeper.run_once() == 0
        assert sweeper.passes == 1
        log.exception.assert_called_once_with("sweep_failed", sweeper="counting")

    def test_next_pass_runs_after_failure(self):
        sweeper = CountingSweeper([RuntimeError("x"), 2], log=MagicMock())
        sweeper.run_once()
        assert sweeper.run_once() == 2


class TestLifecycle:
    def test_start_runs_immediately_and_stop_joins(self):
        sweeper = CountingSweeper([], interval=60)
        sweeper.start()
        try:
            assert sweeper.ran.wait(2.0)
            assert sweeper.is_running
        finally:
            sweeper.stop(timeout=2.0)
        assert not sweeper.is_running
        assert sweeper.calls == 1

    def test_start_is_idempotent(self):
        sweeper = CountingSweeper([], interval=60)
        first = sweeper.start()
        try:
            assert sweeper.start() is first
        finally:
            sweeper.stop(timeout=2.0)

    def test_repeats_on_interval(self):
        sweeper = CountingSweeper([], interval=0.01)
        sweeper.start()
        try:
            deadline = threading.Event()
            for _ in range(200):
                if sweeper.calls >= 3:
                    break
                deadline.wait(0.01)
        finally:
            sweeper.stop(timeout=2.0)
        assert sweeper.calls >= 3

    def test_stop_without_start(self):
        CountingSweeper([]).stop()
