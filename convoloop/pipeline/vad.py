"""
Voice Activity Detection (VAD) Module

Detects speech in a live audio stream with configurable sensitivity.
Supports two classifier backends: simple energy-based (dBFS threshold)
and WebRTC VAD. VoiceActivityMonitor polls a classifier on a fixed
interval and turns the voiced/unvoiced sequence into debounced
"speaking started" / "speaking stopped" signals.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

from .audio import AudioStream

logger = logging.getLogger(__name__)

# Floor for silent windows so log10 stays finite.
_SILENCE_DB = -100.0


@dataclass
class VADConfig:
    """VAD configuration."""
    sample_rate: int = 16000
    interval_ms: int = 100  # Poll interval
    threshold_db: float = -50.0  # Energy threshold (dBFS)
    start_polls: int = 2  # Consecutive voiced polls to enter speaking
    stop_polls: int = 10  # Consecutive unvoiced polls to leave speaking
    backend: str = "energy"  # energy, webrtc
    aggressiveness: int = 2  # WebRTC VAD aggressiveness 0-3


class VAD:
    """Voice activity classifier."""

    def __init__(self, config: Optional[VADConfig] = None):
        """
        Initialize VAD.

        Args:
            config: VAD configuration
        """
        self.config = config or VADConfig()
        self.backend = self.config.backend
        self._webrtc_vad = None
        if self.backend == "webrtc":
            self._init_webrtc_vad()
        elif self.backend != "energy":
            logger.warning("Unknown VAD backend %r, using energy-based", self.backend)
            self.backend = "energy"

    def _init_webrtc_vad(self) -> None:
        """Initialize WebRTC VAD (requires py-webrtcvad)."""
        try:
            import webrtcvad
        except ImportError:
            logger.warning("webrtcvad not installed, using energy-based VAD")
            self.backend = "energy"
            return
        self._webrtc_vad = webrtcvad.Vad(self.config.aggressiveness)
        logger.info("WebRTC VAD loaded (aggressiveness=%d)", self.config.aggressiveness)

    def process_window(self, audio_bytes: bytes) -> Tuple[bool, float]:
        """
        Classify one poll window of PCM16 mono audio.

        Returns:
            (is_speech, level) where level is the window's dBFS.
        """
        level = self.level_db(audio_bytes)
        if not audio_bytes:
            return False, level
        if self.backend == "webrtc":
            return self._detect_webrtc(audio_bytes), level
        return level > self.config.threshold_db, level

    @staticmethod
    def level_db(audio_bytes: bytes) -> float:
        """RMS level of a PCM16 buffer in dBFS."""
        usable = len(audio_bytes) - (len(audio_bytes) % 2)
        if usable <= 0:
            return _SILENCE_DB
        samples = np.frombuffer(audio_bytes[:usable], dtype=np.int16).astype(np.float64)
        rms = math.sqrt(float(np.mean(samples * samples)))
        if rms <= 0.0:
            return _SILENCE_DB
        return max(_SILENCE_DB, 20.0 * math.log10(rms / 32768.0))

    def _detect_webrtc(self, audio_bytes: bytes) -> bool:
        """Majority vote over 30 ms frames."""
        frame_len = int(self.config.sample_rate * 0.03) * 2
        frames = [
            audio_bytes[i:i + frame_len]
            for i in range(0, len(audio_bytes) - frame_len + 1, frame_len)
        ]
        if not frames:
            return False
        voiced = sum(
            1 for f in frames if self._webrtc_vad.is_speech(f, self.config.sample_rate)
        )
        return voiced * 2 > len(frames)


class MonitorHandle:
    """Subscription to one stream's speaking signals.

    Signals fire on the event loop. Once detached, nothing fires.
    """

    def __init__(self, stream: AudioStream, config: VADConfig):
        self.stream = stream
        self._config = config
        self._window: Deque[bytes] = deque()
        self._started_cbs: List[Callable[[], None]] = []
        self._stopped_cbs: List[Callable[[], None]] = []
        self._voiced_run = 0
        self._silent_run = 0
        self.speaking = False
        self.detached = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None

    def on_speaking_started(self, callback: Callable[[], None]) -> None:
        self._started_cbs.append(callback)

    def on_speaking_stopped(self, callback: Callable[[], None]) -> None:
        self._stopped_cbs.append(callback)

    def _feed(self, fragment: bytes) -> None:
        # Device thread; deque.append is atomic.
        self._window.append(fragment)

    def _drain(self) -> bytes:
        parts = []
        while self._window:
            parts.append(self._window.popleft())
        return b"".join(parts)

    def update(self, voiced: bool) -> None:
        """Advance the debounce state with one poll result."""
        if self.detached:
            return
        if voiced:
            self._voiced_run += 1
            self._silent_run = 0
            if not self.speaking and self._voiced_run >= self._config.start_polls:
                self.speaking = True
                self._emit(self._started_cbs, "speaking_started")
        else:
            self._silent_run += 1
            self._voiced_run = 0
            if self.speaking and self._silent_run >= self._config.stop_polls:
                self.speaking = False
                self._emit(self._stopped_cbs, "speaking_stopped")

    def _emit(self, callbacks: List[Callable[[], None]], name: str) -> None:
        logger.debug("vad %s  stream=%s", name, self.stream.name)
        for cb in list(callbacks):
            if self.detached:
                return
            try:
                cb()
            except Exception:
                logger.exception("vad callback failed  signal=%s", name)


class VoiceActivityMonitor:
    """Attach debounced speaking signals to live audio streams.

    Usage:
        monitor = VoiceActivityMonitor(VADConfig())
        handle = monitor.attach(stream)
        handle.on_speaking_started(on_start)
        handle.on_speaking_stopped(on_stop)
        ...
        monitor.detach(handle)
    """

    def __init__(self, config: Optional[VADConfig] = None, vad: Optional[VAD] = None):
        self.config = config or VADConfig()
        self.vad = vad or VAD(self.config)

    def attach(self, stream: AudioStream) -> MonitorHandle:
        """Start polling *stream*. Must be called from the event loop."""
        handle = MonitorHandle(stream, self.config)
        handle._unsubscribe = stream.subscribe(handle._feed)
        handle._task = self._spawn_poller(handle)
        logger.debug(
            "vad attached  stream=%s  interval=%dms  backend=%s",
            stream.name, self.config.interval_ms, self.vad.backend,
        )
        return handle

    def detach(self, handle: MonitorHandle) -> None:
        """Stop polling immediately; no callback fires after this returns."""
        if handle.detached:
            return
        handle.detached = True
        if handle._unsubscribe:
            handle._unsubscribe()
        if handle._task is not None and not handle._task.done():
            handle._task.cancel()
        handle._window.clear()
        logger.debug("vad detached  stream=%s", handle.stream.name)

    def _spawn_poller(self, handle: MonitorHandle) -> Optional[asyncio.Task]:
        return asyncio.get_running_loop().create_task(
            self._poll(handle), name=f"vad_poll_{handle.stream.name}",
        )

    async def _poll(self, handle: MonitorHandle) -> None:
        interval = self.config.interval_ms / 1000.0
        while not handle.detached:
            await asyncio.sleep(interval)
            if handle.detached:
                return
            voiced, _level = self.vad.process_window(handle._drain())
            handle.update(voiced)
