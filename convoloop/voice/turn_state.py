"""Turn state model for the conversation loop.

TurnState is the finite set of states the conversation can be in.
TurnSnapshot is the immutable state record produced by the reducer.
Session is the participant identity pair sent with every clip.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Tuple


class TurnState(str, Enum):
    """Conversation loop states."""
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"


# Sub-phases of PROCESSING.
PHASE_FINALIZING = "finalizing"          # capture stop in flight
PHASE_AWAITING_REPLY = "awaiting_reply"  # dialogue round-trip in flight


# IDLE is reachable from everywhere (shutdown, device failure); there is
# no terminal state.
ALLOWED_TRANSITIONS: Dict[TurnState, Tuple[TurnState, ...]] = {
    TurnState.IDLE:       (TurnState.LISTENING,),
    TurnState.LISTENING:  (TurnState.PROCESSING, TurnState.IDLE),
    TurnState.PROCESSING: (TurnState.SPEAKING, TurnState.LISTENING, TurnState.IDLE),
    TurnState.SPEAKING:   (TurnState.LISTENING, TurnState.IDLE),
}


@dataclass(frozen=True)
class Session:
    """Identity pair of the two conversation participants."""
    from_id: str
    to_id: str

    @property
    def label(self) -> str:
        return f"{self.from_id}->{self.to_id}"


@dataclass(frozen=True)
class TurnSnapshot:
    """Immutable snapshot of the orchestrator at a given sequence point.

    ``seq`` counts processed events, ``turn_seq`` counts human turns that
    reached PROCESSING. ``busy`` is raised for the whole of PROCESSING and
    for nothing else.
    """
    state: TurnState = TurnState.IDLE
    seq: int = 0
    turn_seq: int = 0
    busy: bool = False
    phase: Optional[str] = None
    reason: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def turn_id(self) -> str:
        return f"turn_{self.turn_seq}"

    def evolve(self, **kwargs) -> TurnSnapshot:
        """Create a new snapshot with updated fields."""
        return replace(self, **kwargs)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "seq": self.seq,
            "turn_seq": self.turn_seq,
            "busy": self.busy,
            "phase": self.phase,
            "reason": self.reason,
            "last_error": self.last_error,
        }


def make_initial_snapshot() -> TurnSnapshot:
    """Create the initial IDLE snapshot."""
    return TurnSnapshot()


def is_transition_allowed(current: TurnState, target: TurnState) -> bool:
    """True for self-transitions and for edges in ALLOWED_TRANSITIONS."""
    return current == target or target in ALLOWED_TRANSITIONS.get(current, ())
