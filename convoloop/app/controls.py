"""
convoloop — Single-Control Mapping

The UI exposes one control whose meaning follows the turn state:

    IDLE        start           "Start"
    LISTENING   stop_listening  "Stop"
    PROCESSING  (disabled)      "Processing..."
    SPEAKING    interrupt       "Interrupt"

ControlGate adds a short debounce so a double click does not become
start-then-stop. The state machine resolves the toggle itself; the gate
only filters presses before they are posted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..voice.turn_state import TurnSnapshot, TurnState

logger = logging.getLogger(__name__)

# Presses arriving within this window after an accepted press are dropped.
DEFAULT_DEBOUNCE_SECS: float = 0.15

_ACTIONS = {
    TurnState.IDLE: ("start", "Start"),
    TurnState.LISTENING: ("stop_listening", "Stop"),
    TurnState.PROCESSING: ("stop_listening", "Processing..."),
    TurnState.SPEAKING: ("interrupt", "Interrupt"),
}


@dataclass
class ControlState:
    """What the control should show right now."""
    action: str
    label: str
    enabled: bool
    busy: bool
    playback_active: bool

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "label": self.label,
            "enabled": self.enabled,
            "busy": self.busy,
            "playback_active": self.playback_active,
        }


@dataclass
class PressResult:
    """Outcome of one control press."""
    accepted: bool
    reason: str
    state: str
    action: Optional[str] = None
    debounced: bool = False


def control_state(snapshot: TurnSnapshot, playback_active: bool = False) -> ControlState:
    """Map a snapshot to the control's action, label and enabled flag."""
    action, label = _ACTIONS[snapshot.state]
    return ControlState(
        action=action,
        label=label,
        enabled=snapshot.state != TurnState.PROCESSING,
        busy=snapshot.busy,
        playback_active=playback_active,
    )


class ControlGate:
    """Debounced front door for the single control.

    Usage:
        gate = ControlGate(machine)
        result = gate.press()
        if not result.accepted:
            ...
    """

    def __init__(self, machine, debounce_secs: float = DEFAULT_DEBOUNCE_SECS):
        self.machine = machine
        self.debounce_secs = debounce_secs
        self._last_press = None

    def _should_debounce(self) -> bool:
        if self._last_press is None:
            return False
        return (time.monotonic() - self._last_press) < self.debounce_secs

    def press(self) -> PressResult:
        """Post a toggle unless debounced or the control is disabled."""
        snapshot = self.machine.snapshot
        state = snapshot.state.value

        if self._should_debounce():
            logger.debug("control press debounced  state=%s", state)
            return PressResult(accepted=False, reason="debounced", state=state, debounced=True)

        current = control_state(snapshot, self.machine.playback_active)
        if not current.enabled:
            logger.debug("control press rejected  state=%s", state)
            return PressResult(accepted=False, reason="control_disabled", state=state)

        self._last_press = time.monotonic()
        self.machine.toggle()
        logger.info("control pressed  state=%s  action=%s", state, current.action)
        return PressResult(accepted=True, reason="accepted", state=state, action=current.action)

    def reset(self) -> None:
        self._last_press = None
