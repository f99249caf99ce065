"""
chat-spine - coordination primitives for horizontally scaled chat bots.

Every replica shares one Redis, which holds:

- chat_spine.state:     per-entity conversation FSM behind a distributed lock
- chat_spine.ratelimit: exact sliding-window limits with an in-process fallback
- chat_spine.execution: idempotent execution, retry, circuit breaker, sweepers
- chat_spine.dispatch:  the pipeline an inbound event goes through
- chat_spine.runtime:   wiring of all of the above from settings
"""

__version__ = "0.1.0"

from chat_spine.core import ChatSpineSettings, KeySpace, configure_logging, get_logger
from chat_spine.dispatch import DispatchResult, DispatchStatus, Dispatcher, InboundEvent
from chat_spine.runtime import ChatSpineRuntime

__all__ = [
    "__version__",
    "ChatSpineRuntime",
    "ChatSpineSettings",
    "DispatchResult",
    "DispatchStatus",
    "Dispatcher",
    "InboundEvent",
    "KeySpace",
    "configure_logging",
    "get_logger",
]
