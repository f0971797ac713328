"""Generation token registry for asynchronous event sources.

One live generation per source kind (monitor, capture, dialogue, playback,
and the two in-flight device acquisitions).
Issuing a new token supersedes the previous instance; revoking leaves no
live instance. Events are acted on only if their token is still current.
"""
from __future__ import annotations

from threading import Lock
from typing import Dict, Optional


class CancelRegistry:
    """Thread-safe registry of source generation tokens.

    Usage:
        registry = CancelRegistry()
        t1 = registry.issue("playback")       # -> 1
        registry.is_current("playback", t1)   # -> True
        t2 = registry.issue("playback")       # -> 2 (supersedes t1)
        registry.is_current("playback", t1)   # -> False
        registry.consume("playback", t2)      # -> True  (first consume)
        registry.consume("playback", t2)      # -> False (already consumed)
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 0
        self._live: Dict[str, Optional[int]] = {}

    def issue(self, source: str) -> int:
        """Start a new generation for *source* and return its token."""
        with self._lock:
            self._counter += 1
            self._live[source] = self._counter
            return self._counter

    def current(self, source: str) -> Optional[int]:
        """Token of the live instance of *source*, or None."""
        with self._lock:
            return self._live.get(source)

    def is_current(self, source: str, token: Optional[int]) -> bool:
        with self._lock:
            live = self._live.get(source)
            return live is not None and live == token

    def consume(self, source: str, token: Optional[int]) -> bool:
        """Accept one event for a one-shot source. Returns True at most once per token."""
        with self._lock:
            live = self._live.get(source)
            if live is None or live != token:
                return False
            self._live[source] = None
            return True

    def revoke(self, source: str) -> Optional[int]:
        """Cancel the live instance of *source*. Returns the revoked token."""
        with self._lock:
            token = self._live.get(source)
            self._live[source] = None
            return token

    def revoke_all(self) -> int:
        """Revoke every source. Returns count of live tokens revoked."""
        with self._lock:
            count = sum(1 for t in self._live.values() if t is not None)
            for key in self._live:
                self._live[key] = None
            return count

    @property
    def active_count(self) -> int:
        """Number of sources with a live instance."""
        with self._lock:
            return sum(1 for t in self._live.values() if t is not None)
