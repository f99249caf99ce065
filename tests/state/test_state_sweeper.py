"""Tests for StateSweeper: staleness backstop for entity state."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from chat_spine.core.errors import StoreUnavailableError
from chat_spine.state.states import ConversationState, EntityState
from chat_spine.state.storage import RedisStateStorage
from chat_spine.state.sweeper import StateSweeper


@pytest.fixture()
def storage(redis_client, keys, clock):
    return RedisStateStorage(redis_client, keys, ttl=86400, clock=clock.now)


def write(storage, entity_id):
    storage.set_state(EntityState(entity_id, ConversationState.BUYING_SEARCH))


class TestSweep:
    def test_removes_only_stale_states(self, storage, clock):
        write(storage, 1)          # written at t0
        clock.advance(3000)
        write(storage, 2)          # written at t0 + 3000
        clock.advance(700)         # now: 1 is 3700s old, 2 is 700s old

        sweeper = StateSweeper(storage, ttl=3600, clock=clock.now)
        assert sweeper.sweep() == 1
        assert storage.get_state(1) is None
        assert storage.get_state(2) is not None

    def test_nothing_to_do(self, storage, clock):
        write(storage, 1)
        assert StateSweeper(storage, ttl=3600, clock=clock.now).sweep() == 0

    def test_per_entity_error_does_not_stop_pass(self, clock):
        stale = EntityState(2, ConversationState.IDLE, last_updated=clock.ago(7200))
        storage = MagicMock()
        storage.scan_entity_ids.return_value = iter([1, 2])
        storage.get_state.side_effect = [StoreUnavailableError(), stale]
        log = MagicMock()

        sweeper = StateSweeper(storage, ttl=3600, clock=clock.now, log=log)
        assert sweeper.sweep() == 1
        storage.clear_state.assert_called_once_with(2)
        log.warning.assert_called_once()

    def test_entity_vanished_mid_scan(self, clock):
        storage = MagicMock()
        storage.scan_entity_ids.return_value = iter([1])
        storage.get_state.return_value = None
        assert StateSweeper(storage, clock=clock.now).sweep() == 0
        storage.clear_state.assert_not_called()

    def test_scan_failure_contained_by_run_once(self, broken_redis, keys):
        log = MagicMock()
        sweeper = StateSweeper(RedisStateStorage(broken_redis, keys), log=log)
        assert sweeper.run_once() == 0
        log.exception.assert_called_once()
