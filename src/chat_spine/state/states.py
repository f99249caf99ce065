"""Conversation states, the transition table and the persisted entity state.

Valid transition graph::

    IDLE            → BUYING_SEARCH
    BUYING_SEARCH   → BUYING_AMOUNT | IDLE
    BUYING_AMOUNT   → BUYING_CONFIRM | BUYING_SEARCH
    BUYING_CONFIRM  → IDLE

    IDLE and ERROR are reachable from every state (reset / emergency).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class ConversationState(str, Enum):
    """Where an entity currently is in its conversation."""

    IDLE = "idle"
    BUYING_SEARCH = "buying_search"
    BUYING_AMOUNT = "buying_amount"
    BUYING_CONFIRM = "buying_confirm"
    ERROR = "error"


class TransitionTable:
    """Allowed ``from → to`` moves plus targets reachable from anywhere."""

    def __init__(
        self,
        transitions: Mapping[ConversationState, frozenset[ConversationState]],
        universal: frozenset[ConversationState] = frozenset(
            {ConversationState.IDLE, ConversationState.ERROR}
        ),
    ):
        self._transitions = {state: frozenset(targets) for state, targets in transitions.items()}
        self._universal = frozenset(universal)

    def is_allowed(self, current: ConversationState, target: ConversationState) -> bool:
        if target in self._universal:
            return True
        return target in self._transitions.get(current, frozenset())

    def successors(self, current: ConversationState) -> frozenset[ConversationState]:
        """Every state reachable from *current* in one move."""
        return self._transitions.get(current, frozenset()) | self._universal


VALID_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.IDLE: frozenset({
        ConversationState.BUYING_SEARCH,
    }),
    ConversationState.BUYING_SEARCH: frozenset({
        ConversationState.BUYING_AMOUNT,
        ConversationState.IDLE,
    }),
    ConversationState.BUYING_AMOUNT: frozenset({
        ConversationState.BUYING_CONFIRM,
        ConversationState.BUYING_SEARCH,  # back
    }),
    ConversationState.BUYING_CONFIRM: frozenset({
        ConversationState.IDLE,
    }),
    ConversationState.ERROR: frozenset(),  # recovery only via universal targets
}

DEFAULT_TRANSITIONS = TransitionTable(VALID_TRANSITIONS)


@dataclass
class EntityState:
    """The persisted FSM record for one entity."""

    entity_id: int
    current_state: ConversationState
    context: dict[str, Any] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "current_state": self.current_state.value,
            "context": dict(self.context),
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EntityState:
        """Build from :meth:`to_dict` output.

        Raises:
            KeyError, ValueError: If a field is missing or malformed
        """
        last_updated = datetime.fromisoformat(data["last_updated"])
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=UTC)
        return cls(
            entity_id=int(data["entity_id"]),
            current_state=ConversationState(data["current_state"]),
            context=dict(data.get("context") or {}),
            last_updated=last_updated,
        )


__all__ = [
    "ConversationState",
    "TransitionTable",
    "VALID_TRANSITIONS",
    "DEFAULT_TRANSITIONS",
    "EntityState",
]
