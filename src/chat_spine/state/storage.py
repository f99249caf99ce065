"""Entity state storage: JSON documents in Redis with a TTL.

Every state write refreshes the TTL, so an entity that stops talking to the
bot is forgotten after ``ttl`` seconds even if no sweeper ever runs.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import redis

from chat_spine.core.errors import StoreUnavailableError
from chat_spine.core.logging import get_logger
from chat_spine.core.store import KeySpace, scan_keys, store_errors

from .states import EntityState, utcnow


@runtime_checkable
class StateStorage(Protocol):
    """Persistence contract used by the FSM controller and the sweeper."""

    def get_state(self, entity_id: int) -> EntityState | None:
        ...

    def set_state(self, state: EntityState) -> EntityState:
        ...

    def clear_state(self, entity_id: int) -> None:
        ...

    def list_states(self) -> list[EntityState]:
        ...

    def scan_entity_ids(self) -> Iterator[int]:
        ...


class RedisStateStorage:
    """Stores one ``EntityState`` JSON document per entity."""

    def __init__(
        self,
        client: redis.Redis,
        keys: KeySpace | None = None,
        ttl: float = 3600.0,
        scan_count: int = 100,
        clock: Callable[[], datetime] = utcnow,
        log: Any | None = None,
    ):
        self._client = client
        self._keys = keys or KeySpace()
        self._ttl = ttl
        self._scan_count = scan_count
        self._clock = clock
        self._log = log or get_logger(__name__)

    @property
    def ttl(self) -> float:
        return self._ttl

    def get_state(self, entity_id: int) -> EntityState | None:
        """Return the stored state, or None when the entity has none.

        Raises:
            StoreUnavailableError: On a backend error or an undecodable document
        """
        with store_errors("state_get", entity_id=entity_id):
            raw = self._client.get(self._keys.state(entity_id))
        if raw is None:
            return None

        try:
            return EntityState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            self._log.error("state_decode_failed", entity_id=entity_id, error=str(exc))
            raise StoreUnavailableError(
                f"stored state for entity {entity_id} is unreadable",
                context={"operation": "state_get", "entity_id": entity_id},
                cause=exc,
            ) from exc

    def set_state(self, state: EntityState) -> EntityState:
        """Persist *state*, stamping ``last_updated`` with the current UTC time."""
        stamped = replace(state, last_updated=self._clock())
        payload = json.dumps(stamped.to_dict())
        with store_errors("state_set", entity_id=state.entity_id):
            self._client.set(self._keys.state(state.entity_id), payload, ex=max(1, int(self._ttl)))
        return stamped

    def clear_state(self, entity_id: int) -> None:
        with store_errors("state_clear", entity_id=entity_id):
            self._client.delete(self._keys.state(entity_id))

    def scan_entity_ids(self) -> Iterator[int]:
        """Yield the id of every entity with a stored state.

        Keys whose id cannot be parsed are logged and skipped.
        """
        for key in scan_keys(self._client, self._keys.state_pattern, self._scan_count, "state_scan"):
            try:
                yield self._keys.entity_id_from_state_key(key)
            except ValueError as exc:
                self._log.warning("state_key_unparsable", key=str(key), error=str(exc))

    def list_states(self) -> list[EntityState]:
        """Every stored state. Vanished keys and undecodable values are skipped."""
        states: list[EntityState] = []
        for entity_id in self.scan_entity_ids():
            with store_errors("state_list", entity_id=entity_id):
                raw = self._client.get(self._keys.state(entity_id))
            if raw is None:
                continue
            try:
                states.append(EntityState.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError) as exc:
                self._log.warning("state_decode_failed", entity_id=entity_id, error=str(exc))
        return states


__all__ = ["StateStorage", "RedisStateStorage"]
