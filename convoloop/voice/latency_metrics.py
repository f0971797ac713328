"""Latency instrumentation for the conversation loop.

Stamps are recorded by the orchestrator as events are processed, not via
external stopwatches.

Metrics:
    response_ms: t_reply_audible_ns - t_speech_end_ns
                 (end of user speech -> reply playback started)
"""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional


@dataclass
class TurnLatency:
    """Latency record for a single turn."""
    turn_id: str
    t_speech_end_ns: Optional[int] = None
    t_reply_audible_ns: Optional[int] = None
    outcome: str = "pending"
    finalized: bool = False

    @property
    def response_ns(self) -> Optional[int]:
        if self.t_speech_end_ns is not None and self.t_reply_audible_ns is not None:
            return self.t_reply_audible_ns - self.t_speech_end_ns
        return None

    @property
    def response_ms(self) -> Optional[float]:
        ns = self.response_ns
        return ns / 1_000_000 if ns is not None else None


class LatencyCollector:
    """Collects per-turn latency and computes percentiles over a window.

    Thread-safe.
    """

    def __init__(self, max_window: int = 500) -> None:
        self._lock = Lock()
        self._records: Dict[str, TurnLatency] = {}
        self._finalized: List[TurnLatency] = []
        self._max_window = max_window

    def record_speech_end(self, turn_id: str, t_ns: int) -> None:
        """Record when the user's turn ended (VAD stop or manual stop)."""
        with self._lock:
            rec = self._records.setdefault(turn_id, TurnLatency(turn_id=turn_id))
            rec.t_speech_end_ns = t_ns

    def record_reply_audible(self, turn_id: str, t_ns: int) -> None:
        """Record when reply playback started. Only the first stamp counts."""
        with self._lock:
            rec = self._records.setdefault(turn_id, TurnLatency(turn_id=turn_id))
            if rec.t_reply_audible_ns is None:
                rec.t_reply_audible_ns = t_ns

    def finalize_turn(self, turn_id: str, outcome: str) -> Optional[TurnLatency]:
        """Finalize a turn and move it to the completed window."""
        with self._lock:
            rec = self._records.pop(turn_id, None)
            if rec is not None and not rec.finalized:
                rec.finalized = True
                rec.outcome = outcome
                self._finalized.append(rec)
                if len(self._finalized) > self._max_window:
                    self._finalized = self._finalized[-self._max_window:]
            return rec

    def compute_percentiles(self, window: Optional[int] = None) -> dict:
        """Compute response latency percentiles over finalized turns.

        Returns:
            {"count", "p50_ms", "p95_ms", "p99_ms", "outcomes"}
        """
        with self._lock:
            records = list(self._finalized)

        if window is not None:
            records = records[-window:]

        outcomes: Dict[str, int] = {}
        for r in records:
            outcomes[r.outcome] = outcomes.get(r.outcome, 0) + 1

        latencies_ms = sorted(
            r.response_ms for r in records if r.response_ms is not None
        )

        if not latencies_ms:
            return {
                "count": 0,
                "p50_ms": None,
                "p95_ms": None,
                "p99_ms": None,
                "outcomes": outcomes,
            }

        def percentile(data: List[float], pct: float) -> float:
            k = (pct / 100) * (len(data) - 1)
            f = int(k)
            c = f + 1 if f + 1 < len(data) else f
            d = k - f
            return data[f] + d * (data[c] - data[f])

        return {
            "count": len(latencies_ms),
            "p50_ms": round(percentile(latencies_ms, 50), 2),
            "p95_ms": round(percentile(latencies_ms, 95), 2),
            "p99_ms": round(percentile(latencies_ms, 99), 2),
            "outcomes": outcomes,
        }

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def finalized_count(self) -> int:
        with self._lock:
            return len(self._finalized)
