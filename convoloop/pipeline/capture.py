"""
Microphone capture: device contract, RecordingSession and Recorder.

A RecordingSession binds to one acquired AudioStream and accumulates its
fragments. Before speech is marked only a rolling pre-roll window is
kept; stopping before any speech yields the empty clip. Recorder holds the
single-instance guarantee: starting always wins over a stale session.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .audio import AudioClip, AudioStream, encode_wav

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Capture configuration."""
    sample_rate: int = 16000
    channels: int = 1
    block_ms: int = 20  # Fragment size delivered by the device
    preroll_ms: int = 500  # Audio kept from before the speech onset
    device: Optional[str] = None  # Input device name/index, None = default


class CaptureDevice:
    """Capture capability contract.

    acquire() opens the microphone and returns a live stream, raising
    DeviceAcquisitionError when the device is unavailable or denied.
    """

    async def acquire(self) -> AudioStream:
        raise NotImplementedError


async def open_in_thread(opener: Callable[..., AudioStream], *args) -> AudioStream:
    """Run a blocking stream *opener* in a worker thread.

    The thread cannot be interrupted, so if the caller is cancelled (or
    timed out by the watchdog) while it is still opening, the stream it
    eventually returns is released rather than left running.
    """
    future = asyncio.ensure_future(asyncio.to_thread(opener, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        future.add_done_callback(_release_orphan)
        raise


def _release_orphan(future: asyncio.Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    stream = future.result()
    logger.info("stream opened after cancellation, releasing  stream=%s", stream.name)
    stream.release()


class RecordingSession:
    """One capture bound to one stream."""

    def __init__(self, stream: AudioStream, config: Optional[CaptureConfig] = None):
        self.stream = stream
        self.config = config or CaptureConfig()
        self._lock = threading.Lock()
        self._buffer: List[bytes] = []
        self._buffered_bytes = 0
        self._voiced = False
        self._state = "recording"  # recording | stopping | stopped | discarded
        self._preroll_bytes = int(stream.bytes_per_ms * self.config.preroll_ms)
        self._unsubscribe = stream.subscribe(self._on_fragment)

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == "recording"

    @property
    def is_open(self) -> bool:
        """Recording or finalizing; still holds the hardware."""
        return self._state in ("recording", "stopping")

    @property
    def voiced(self) -> bool:
        return self._voiced

    @property
    def buffered_bytes(self) -> int:
        with self._lock:
            return self._buffered_bytes

    def _on_fragment(self, fragment: bytes) -> None:
        with self._lock:
            if self._state not in ("recording", "stopping"):
                return
            self._buffer.append(fragment)
            self._buffered_bytes += len(fragment)
            if not self._voiced:
                self._trim_preroll()

    def _trim_preroll(self) -> None:
        while self._buffer and self._buffered_bytes - len(self._buffer[0]) >= self._preroll_bytes:
            self._buffered_bytes -= len(self._buffer.pop(0))

    def mark_speech(self) -> None:
        """Speech onset: keep everything from the pre-roll window on."""
        with self._lock:
            if self._state != "recording" or self._voiced:
                return
            self._voiced = True
        logger.debug("capture voiced  stream=%s", self.stream.name)

    async def stop(self) -> AudioClip:
        """Finalize the device, collect the buffer, release the stream.

        Returns the empty clip when no speech was marked.
        """
        with self._lock:
            if self._state != "recording":
                return AudioClip.empty()
            self._state = "stopping"

        try:
            # Device stop waits for in-flight callbacks: the last
            # fragment lands in the buffer before this returns.
            await self.stream.aclose()
        finally:
            self._unsubscribe()
            with self._lock:
                fragments, voiced = self._buffer, self._voiced
                self._buffer = []
                self._buffered_bytes = 0
                if self._state == "stopping":
                    self._state = "stopped"

        if not voiced or not fragments:
            logger.info("capture stopped empty  stream=%s  voiced=%s", self.stream.name, voiced)
            return AudioClip.empty()

        clip = encode_wav(b"".join(fragments), self.stream.sample_rate, self.stream.channels)
        logger.info(
            "capture stopped  stream=%s  duration=%.0fms  bytes=%d",
            self.stream.name, clip.duration_ms, clip.size,
        )
        return clip

    def discard_and_release(self) -> None:
        """Drop the buffer and release the hardware without producing a clip."""
        with self._lock:
            if self._state in ("stopped", "discarded"):
                return
            self._state = "discarded"
            self._buffer = []
            self._buffered_bytes = 0
        self._unsubscribe()
        self.stream.release()
        logger.debug("capture discarded  stream=%s", self.stream.name)


class Recorder:
    """Owns at most one RecordingSession at a time."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._active: Optional[RecordingSession] = None

    @property
    def active(self) -> Optional[RecordingSession]:
        """The open session, if any."""
        if self._active is not None and not self._active.is_open:
            self._active = None
        return self._active

    @property
    def is_recording(self) -> bool:
        active = self.active
        return active is not None and active.is_recording

    def start(self, stream: AudioStream) -> RecordingSession:
        """Begin a new session; a previous open session is discarded."""
        previous = self.active
        if previous is not None:
            logger.info("capture superseded  stream=%s", previous.stream.name)
            previous.discard_and_release()
        session = RecordingSession(stream, self.config)
        self._active = session
        logger.info("capture started  stream=%s", stream.name)
        return session

    def mark_speech(self) -> None:
        active = self.active
        if active is not None:
            active.mark_speech()

    async def stop(self) -> AudioClip:
        """Stop the active session; with nothing active yields the empty clip."""
        active = self.active
        if active is None:
            return AudioClip.empty()
        return await active.stop()

    def discard(self) -> None:
        active = self.active
        if active is not None:
            active.discard_and_release()
        self._active = None
