"""Pure reducer for the conversation loop.

Contract:
    next_snapshot, commands = reduce_turn(current_snapshot, event)

Rules:
    1. Reducer is pure -- no side effects.
    2. Commands are side-effect intents only; the orchestrator executes them.
    3. seq must be strictly monotonic.
    4. Every recoverable failure converges on StartCapture (back to LISTENING).
    5. DEVICE_FAILED and SHUTDOWN_REQUESTED drop to IDLE from any state.
    6. TOGGLE_REQUESTED is resolved against the current state only and is
       rejected while PROCESSING.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

from ..errors import EmptyCaptureError
from .turn_events import TurnEvent
from .turn_state import (
    PHASE_AWAITING_REPLY,
    PHASE_FINALIZING,
    TurnSnapshot,
    TurnState,
)


@dataclass(frozen=True)
class Command:
    """Side-effect intent emitted by the reducer."""
    name: str
    args: dict = field(default_factory=dict)


# ── Transition Table ─────────────────────────────────────────────────────
#
# State       x Event               -> Next State   + Commands
# -----------------------------------------------------------------------
# IDLE          START_REQUESTED      -> LISTENING    + StartCapture
# LISTENING     SPEECH_STARTED       -> LISTENING    + StopPlayback, MarkSpeech
# LISTENING     SPEECH_STOPPED       -> PROCESSING   + DisarmMonitor, StopCapture
# LISTENING     STOP_REQUESTED       -> PROCESSING   + DisarmMonitor, StopCapture
# PROCESSING    CAPTURE_FINISHED(+)  -> PROCESSING   + SendClip
# PROCESSING    CAPTURE_FINISHED(0)  -> LISTENING    + ReportError, StartCapture
# PROCESSING    REPLY_RECEIVED       -> SPEAKING     + PlayReply, ArmBargeIn
# PROCESSING    REPLY_FAILED         -> LISTENING    + ReportError, StartCapture
# PROCESSING    INTERRUPT_REQUESTED  -> LISTENING    + CancelDialogue, StartCapture
# SPEAKING      PLAYBACK_COMPLETED   -> LISTENING    + DisarmMonitor, StartCapture
# SPEAKING      PLAYBACK_FAILED      -> LISTENING    + ReportError, DisarmMonitor, StartCapture
# SPEAKING      SPEECH_STARTED       -> LISTENING    + StopPlayback, DisarmMonitor, StartCapture
# SPEAKING      INTERRUPT_REQUESTED  -> LISTENING    + StopPlayback, DisarmMonitor, StartCapture
# ANY           DEVICE_FAILED        -> IDLE         + ReleaseAll, ReportError(fatal)
# ANY           SHUTDOWN_REQUESTED   -> IDLE         + ReleaseAll
# ANY           TOGGLE_REQUESTED     -> resolved to START / STOP / INTERRUPT
# -----------------------------------------------------------------------

_TOGGLE_MAP = {
    TurnState.IDLE: "START_REQUESTED",
    TurnState.LISTENING: "STOP_REQUESTED",
    TurnState.SPEAKING: "INTERRUPT_REQUESTED",
}


def _restart_capture(s: TurnSnapshot, seq: int, reason: str, **kwargs) -> TurnSnapshot:
    return s.evolve(
        state=TurnState.LISTENING, seq=seq, busy=False, phase=None,
        reason=reason, **kwargs,
    )


def reduce_turn(snapshot: TurnSnapshot, event: TurnEvent) -> Tuple[TurnSnapshot, List[Command]]:
    """Pure reducer: (snapshot, event) -> (next_snapshot, commands).

    Raises ValueError on non-monotonic seq.
    """
    if event.seq <= snapshot.seq:
        raise ValueError(
            f"Non-monotonic seq: event={event.seq} snapshot={snapshot.seq}"
        )

    s = snapshot
    seq = event.seq
    et = event.event_type

    # ── Any-state events ─────────────────────────────────────────────
    if et == "SHUTDOWN_REQUESTED":
        return (
            s.evolve(state=TurnState.IDLE, seq=seq, busy=False, phase=None, reason="shutdown"),
            [Command("ReleaseAll")]
        )

    if et == "DEVICE_FAILED":
        error = event.get("error")
        return (
            s.evolve(
                state=TurnState.IDLE, seq=seq, busy=False, phase=None,
                reason="device_failed",
                last_error=getattr(error, "code", "DEVICE_UNAVAILABLE"),
            ),
            [
                Command("ReleaseAll"),
                Command("ReportError", {"error": error, "fatal": True}),
            ]
        )

    if et == "TOGGLE_REQUESTED":
        resolved = _TOGGLE_MAP.get(s.state)
        if resolved is None:
            return (
                s.evolve(seq=seq),
                [Command("EmitDiagnostic", {
                    "reason": "control_disabled",
                    "event_type": et,
                    "state": s.state.value,
                })]
            )
        et = resolved

    # ── IDLE ─────────────────────────────────────────────────────────
    if s.state == TurnState.IDLE:
        if et == "START_REQUESTED":
            return (
                s.evolve(state=TurnState.LISTENING, seq=seq, reason="user_start", last_error=None),
                [Command("StartCapture")]
            )

    # ── LISTENING ────────────────────────────────────────────────────
    elif s.state == TurnState.LISTENING:
        if et == "SPEECH_STARTED":
            # Barge-in: silence any stray output, keep the speech onset.
            return (
                s.evolve(seq=seq, reason="speech_started"),
                [Command("StopPlayback"), Command("MarkSpeech")]
            )

        if et in ("SPEECH_STOPPED", "STOP_REQUESTED"):
            reason = "speech_stopped" if et == "SPEECH_STOPPED" else "user_stop"
            return (
                s.evolve(
                    state=TurnState.PROCESSING, seq=seq, turn_seq=s.turn_seq + 1,
                    busy=True, phase=PHASE_FINALIZING, reason=reason,
                ),
                [Command("DisarmMonitor"), Command("StopCapture")]
            )

    # ── PROCESSING ───────────────────────────────────────────────────
    elif s.state == TurnState.PROCESSING:
        if et == "CAPTURE_FINISHED" and s.phase == PHASE_FINALIZING:
            clip = event.get("clip")
            if clip is None or clip.is_empty:
                error = EmptyCaptureError()
                return (
                    _restart_capture(s, seq, "empty_capture", last_error=error.code),
                    [
                        Command("ReportError", {"error": error, "fatal": False}),
                        Command("StartCapture"),
                    ]
                )
            return (
                s.evolve(seq=seq, phase=PHASE_AWAITING_REPLY, reason="capture_finished"),
                [Command("SendClip", {"clip": clip})]
            )

        if et == "REPLY_RECEIVED" and s.phase == PHASE_AWAITING_REPLY:
            return (
                s.evolve(
                    state=TurnState.SPEAKING, seq=seq, busy=False, phase=None,
                    reason="reply_received",
                ),
                [Command("PlayReply", {"clip": event.get("clip")}), Command("ArmBargeIn")]
            )

        if et == "REPLY_FAILED":
            error = event.get("error")
            return (
                _restart_capture(
                    s, seq, "reply_failed",
                    last_error=getattr(error, "code", "DIALOGUE_FAILED"),
                ),
                [
                    Command("ReportError", {"error": error, "fatal": False}),
                    Command("StartCapture"),
                ]
            )

        if et == "INTERRUPT_REQUESTED":
            # Abort whatever is pending; a reply arriving later is stale.
            return (
                _restart_capture(s, seq, "user_interrupt"),
                [Command("CancelDialogue"), Command("StartCapture")]
            )

    # ── SPEAKING ─────────────────────────────────────────────────────
    elif s.state == TurnState.SPEAKING:
        if et == "PLAYBACK_COMPLETED":
            return (
                _restart_capture(s, seq, "playback_completed"),
                [Command("DisarmMonitor"), Command("StartCapture")]
            )

        if et == "PLAYBACK_FAILED":
            error = event.get("error")
            return (
                _restart_capture(
                    s, seq, "playback_failed",
                    last_error=getattr(error, "code", "PLAYBACK_FAILED"),
                ),
                [
                    Command("ReportError", {"error": error, "fatal": False}),
                    Command("DisarmMonitor"),
                    Command("StartCapture"),
                ]
            )

        if et in ("SPEECH_STARTED", "INTERRUPT_REQUESTED"):
            reason = "barge_in" if et == "SPEECH_STARTED" else "user_interrupt"
            return (
                _restart_capture(s, seq, reason),
                [Command("StopPlayback"), Command("DisarmMonitor"), Command("StartCapture")]
            )

    # ── Default: deterministic no-op ─────────────────────────────────
    return (
        s.evolve(seq=seq),
        [Command("EmitDiagnostic", {
            "reason": "no_transition",
            "event_type": et,
            "state": s.state.value,
        })]
    )
