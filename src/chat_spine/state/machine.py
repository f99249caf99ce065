"""FSM controller: lock-guarded reads and writes of conversation state.

Every mutation (set, transition, clear) takes the entity lock first, so two
replicas handling the same entity can never interleave a read-modify-write.
Contention and invalid transitions are ordinary outcomes, returned as
:class:`MutationOutcome` values; only infrastructure failures raise.

Example::

    fsm = StateMachine(RedisStateStorage(client), EntityLock(client))
    result = fsm.transition(42, ConversationState.BUYING_SEARCH)
    if result.outcome is MutationOutcome.LOCKED:
        ...  # ask the user to retry
    result.raise_for_outcome()  # or get exceptions instead
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from chat_spine.core.errors import InvalidTransitionError, StateLockedError
from chat_spine.core.logging import get_logger
from chat_spine.execution.lock import EntityLock

from .observers import TransitionObserver
from .states import DEFAULT_TRANSITIONS, ConversationState, EntityState, TransitionTable
from .storage import StateStorage


class MutationOutcome(str, Enum):
    """Result of a lock-guarded state mutation."""

    APPLIED = "applied"
    LOCKED = "locked"
    INVALID_TRANSITION = "invalid_transition"


@dataclass(frozen=True)
class TransitionResult:
    outcome: MutationOutcome
    entity_id: int
    from_state: ConversationState
    to_state: ConversationState

    @property
    def applied(self) -> bool:
        return self.outcome is MutationOutcome.APPLIED

    def raise_for_outcome(self) -> None:
        """Raise the matching error unless the transition was applied."""
        if self.outcome is MutationOutcome.LOCKED:
            raise StateLockedError(entity_id=self.entity_id)
        if self.outcome is MutationOutcome.INVALID_TRANSITION:
            raise InvalidTransitionError(
                self.from_state.value,
                self.to_state.value,
                context={"entity_id": self.entity_id},
            )


def raise_for_outcome(outcome: MutationOutcome, entity_id: int | None = None) -> None:
    """Exception-style view of a ``set``/``clear`` outcome."""
    if outcome is MutationOutcome.LOCKED:
        raise StateLockedError(entity_id=entity_id)
    if outcome is MutationOutcome.INVALID_TRANSITION:
        raise InvalidTransitionError("unknown", "unknown", context={"entity_id": entity_id})


class StateMachine:
    """Per-entity conversation FSM backed by shared storage and a distributed lock."""

    def __init__(
        self,
        storage: StateStorage,
        lock: EntityLock,
        table: TransitionTable = DEFAULT_TRANSITIONS,
        observer: TransitionObserver | None = None,
        log: Any | None = None,
    ):
        self._storage = storage
        self._lock = lock
        self._table = table
        self._observer = observer
        self._log = log or get_logger(__name__)

    @property
    def table(self) -> TransitionTable:
        return self._table

    def get(self, entity_id: int) -> EntityState | None:
        """Current state, or None if the entity has never been seen (or expired)."""
        return self._storage.get_state(entity_id)

    def list_all(self) -> list[EntityState]:
        return self._storage.list_states()

    def set(
        self,
        entity_id: int,
        state: ConversationState,
        context: dict[str, Any] | None = None,
    ) -> MutationOutcome:
        """Overwrite the entity's state and context, bypassing the transition table."""
        if not self._lock.acquire(entity_id):
            self._log.warning("state_lock_held", entity_id=entity_id, operation="set")
            return MutationOutcome.LOCKED
        try:
            self._storage.set_state(
                EntityState(entity_id=entity_id, current_state=state, context=dict(context or {}))
            )
        finally:
            self._lock.release(entity_id)
        return MutationOutcome.APPLIED

    def transition(self, entity_id: int, target: ConversationState) -> TransitionResult:
        """Move to *target* if the table allows it from the current state.

        An entity without stored state is treated as ``idle``. The existing
        context is carried over unchanged.
        """
        if not self._lock.acquire(entity_id):
            self._log.warning("state_lock_held", entity_id=entity_id, operation="transition")
            return TransitionResult(MutationOutcome.LOCKED, entity_id, ConversationState.IDLE, target)

        try:
            stored = self._storage.get_state(entity_id)
            current = stored.current_state if stored is not None else ConversationState.IDLE
            context = dict(stored.context) if stored is not None else {}

            if not self._table.is_allowed(current, target):
                self._log.warning(
                    "invalid_state_transition",
                    entity_id=entity_id,
                    from_state=current.value,
                    to_state=target.value,
                )
                return TransitionResult(MutationOutcome.INVALID_TRANSITION, entity_id, current, target)

            self._storage.set_state(
                EntityState(entity_id=entity_id, current_state=target, context=context)
            )
        finally:
            self._lock.release(entity_id)

        self._notify(current, target)
        return TransitionResult(MutationOutcome.APPLIED, entity_id, current, target)

    def clear(self, entity_id: int) -> MutationOutcome:
        if not self._lock.acquire(entity_id):
            self._log.warning("state_lock_held", entity_id=entity_id, operation="clear")
            return MutationOutcome.LOCKED
        try:
            self._storage.clear_state(entity_id)
        finally:
            self._lock.release(entity_id)
        return MutationOutcome.APPLIED

    def _notify(self, current: ConversationState, target: ConversationState) -> None:
        if self._observer is None:
            return
        try:
            self._observer.record_transition(current.value, target.value)
        except Exception:
            self._log.exception(
                "transition_observer_failed",
                from_state=current.value,
                to_state=target.value,
            )


__all__ = ["MutationOutcome", "TransitionResult", "StateMachine", "raise_for_outcome"]
