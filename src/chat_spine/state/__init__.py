"""chat-spine state -- the per-entity conversation FSM.

MODULE MAP
──────────
  states.py     ─ ConversationState, TransitionTable, EntityState
  storage.py    ─ StateStorage protocol, RedisStateStorage
  machine.py    ─ StateMachine, MutationOutcome, TransitionResult
  observers.py  ─ transition observers (counter, logging, composite)
  sweeper.py    ─ StateSweeper (staleness backstop)
"""

from .machine import MutationOutcome, StateMachine, TransitionResult, raise_for_outcome
from .observers import (
    CompositeObserver,
    LoggingTransitionObserver,
    TransitionCounter,
    TransitionObserver,
)
from .states import (
    DEFAULT_TRANSITIONS,
    VALID_TRANSITIONS,
    ConversationState,
    EntityState,
    TransitionTable,
)
from .storage import RedisStateStorage, StateStorage
from .sweeper import StateSweeper

__all__ = [
    "CompositeObserver",
    "ConversationState",
    "DEFAULT_TRANSITIONS",
    "EntityState",
    "LoggingTransitionObserver",
    "MutationOutcome",
    "RedisStateStorage",
    "StateMachine",
    "StateStorage",
    "StateSweeper",
    "TransitionCounter",
    "TransitionObserver",
    "TransitionResult",
    "TransitionTable",
    "VALID_TRANSITIONS",
    "raise_for_outcome",
]
