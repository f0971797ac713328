"""
convoloop App — Loop Hardening Modules

Stage watchdogs and the single-control mapping used by the CLI and the
HTTP control surface.
"""

from .watchdog import run_with_timeout, WatchdogResult
from .controls import (
    ControlGate,
    ControlState,
    PressResult,
    control_state,
    DEFAULT_DEBOUNCE_SECS,
)

__all__ = [
    "run_with_timeout",
    "WatchdogResult",
    "ControlGate",
    "ControlState",
    "PressResult",
    "control_state",
    "DEFAULT_DEBOUNCE_SECS",
]
