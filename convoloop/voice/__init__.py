"""Turn-taking core: state model, events, reducer and orchestrator."""

from .turn_state import (
    TurnState,
    TurnSnapshot,
    Session,
    ALLOWED_TRANSITIONS,
    make_initial_snapshot,
)
from .turn_events import TurnEvent
from .turn_reducer import Command, reduce_turn
from .cancel_registry import CancelRegistry
from .latency_metrics import LatencyCollector, TurnLatency
from .turn_router import TurnMachineConfig, TurnStateMachine

__all__ = [
    "TurnState",
    "TurnSnapshot",
    "Session",
    "ALLOWED_TRANSITIONS",
    "make_initial_snapshot",
    "TurnEvent",
    "Command",
    "reduce_turn",
    "CancelRegistry",
    "LatencyCollector",
    "TurnLatency",
    "TurnMachineConfig",
    "TurnStateMachine",
]
