"""Typed event model for the conversation loop.

Every event carries a monotonic seq and ts_monotonic_ns. Events produced
by an asynchronous source (VAD monitor, capture stop, dialogue call,
playback) also carry that source's kind and the generation token it was
issued under, so late events from a cancelled instance can be dropped.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional

EventType = Literal[
    "START_REQUESTED",
    "STOP_REQUESTED",
    "INTERRUPT_REQUESTED",
    "TOGGLE_REQUESTED",
    "SHUTDOWN_REQUESTED",
    "SPEECH_STARTED",
    "SPEECH_STOPPED",
    "CAPTURE_FINISHED",
    "DEVICE_FAILED",
    "REPLY_RECEIVED",
    "REPLY_FAILED",
    "PLAYBACK_COMPLETED",
    "PLAYBACK_FAILED",
]

ALL_EVENT_TYPES: frozenset[str] = frozenset([
    "START_REQUESTED", "STOP_REQUESTED", "INTERRUPT_REQUESTED",
    "TOGGLE_REQUESTED", "SHUTDOWN_REQUESTED", "SPEECH_STARTED",
    "SPEECH_STOPPED", "CAPTURE_FINISHED", "DEVICE_FAILED",
    "REPLY_RECEIVED", "REPLY_FAILED", "PLAYBACK_COMPLETED",
    "PLAYBACK_FAILED",
])

# Source kinds tracked by the cancel registry.
SOURCE_MONITOR = "monitor"
SOURCE_CAPTURE = "capture"
SOURCE_DIALOGUE = "dialogue"
SOURCE_PLAYBACK = "playback"
# In-flight device acquisition: the capture stream and the barge-in
# listen stream.
SOURCE_ACQUIRE = "acquire"
SOURCE_LISTEN = "listen"

ALL_SOURCES: frozenset[str] = frozenset([
    SOURCE_MONITOR, SOURCE_CAPTURE, SOURCE_DIALOGUE, SOURCE_PLAYBACK,
    SOURCE_ACQUIRE, SOURCE_LISTEN,
])

# Sources whose result is delivered once; the token is consumed on use.
ONE_SHOT_SOURCES: frozenset[str] = frozenset([
    SOURCE_CAPTURE, SOURCE_DIALOGUE, SOURCE_PLAYBACK, SOURCE_ACQUIRE,
    SOURCE_LISTEN,
])


@dataclass(frozen=True)
class TurnEvent:
    """Immutable event in the conversation loop.

    Fields:
        event_type: One of the defined event types.
        seq: Strictly monotonic sequence number assigned at post time.
        ts_monotonic_ns: Monotonic nanosecond timestamp.
        source: Source kind for device/network events, None for user input.
        token: Generation token of the source instance that produced it.
        payload: Optional event data (clip, error).
    """
    event_type: EventType
    seq: int
    ts_monotonic_ns: int
    source: Optional[str] = None
    token: Optional[int] = None
    payload: Optional[dict] = None

    def __post_init__(self):
        if self.event_type not in ALL_EVENT_TYPES:
            raise ValueError(f"Unknown event type: {self.event_type}")
        if self.seq < 1:
            raise ValueError(f"seq must be positive, got {self.seq}")
        if self.source is not None and self.source not in ALL_SOURCES:
            raise ValueError(f"Unknown event source: {self.source}")
        if self.source is not None and self.token is None:
            raise ValueError("sourced events must carry a token")

    def get(self, key: str, default: Any = None) -> Any:
        """Read a payload field."""
        if not self.payload:
            return default
        return self.payload.get(key, default)
