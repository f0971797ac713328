"""
Audio primitives shared by capture, playback and the dialogue client.

AudioClip is the immutable unit handed between components. AudioStream is
a live PCM16 input that fans fragments out to its subscribers (the active
RecordingSession and the VAD monitor); device backends feed it from their
own threads via push().
"""

import asyncio
import io
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import numpy as np
import soundfile as sf

from ..errors import PlaybackDecodeError

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2  # int16


@dataclass(frozen=True)
class AudioClip:
    """Complete, immutable unit of audio."""
    data: bytes = b""
    mime_type: str = "audio/wav"
    duration_ms: float = 0.0
    sample_rate: int = 0

    @property
    def is_empty(self) -> bool:
        return len(self.data) == 0

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def empty(cls) -> "AudioClip":
        return cls()


def encode_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> AudioClip:
    """Encode raw PCM16 into a WAV clip. Empty input yields the empty clip."""
    frame_bytes = SAMPLE_WIDTH * channels
    usable = len(pcm) - (len(pcm) % frame_bytes)
    if usable <= 0:
        return AudioClip.empty()

    samples = np.frombuffer(pcm[:usable], dtype=np.int16).reshape(-1, channels)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return AudioClip(
        data=buf.getvalue(),
        mime_type="audio/wav",
        duration_ms=round(samples.shape[0] * 1000.0 / sample_rate, 1),
        sample_rate=sample_rate,
    )


def decode_clip(clip: AudioClip) -> Tuple[np.ndarray, int]:
    """Decode a clip into float32 frames shaped (n, channels).

    Raises:
        PlaybackDecodeError: if the clip is empty or not a supported format.
    """
    if clip.is_empty:
        raise PlaybackDecodeError("reply clip is empty", code="EMPTY_REPLY")
    try:
        data, sample_rate = sf.read(io.BytesIO(clip.data), dtype="float32", always_2d=True)
    except (RuntimeError, ValueError, TypeError) as e:
        raise PlaybackDecodeError(
            f"cannot decode {clip.mime_type} clip: {e}",
            details={"mime_type": clip.mime_type, "size": clip.size},
        ) from e
    return data, sample_rate


class AudioStream:
    """Live PCM16 input stream with fan-out to subscribers.

    push() may be called from any thread. release() stops the underlying
    device first, so fragments still in flight reach subscribers, and only
    then drops every subscriber.
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1, name: str = "mic"):
        self.sample_rate = sample_rate
        self.channels = channels
        self.name = name
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[bytes], None]] = {}
        self._next_id = 0
        self._releasing = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def bytes_per_ms(self) -> float:
        return self.sample_rate * self.channels * SAMPLE_WIDTH / 1000.0

    def subscribe(self, callback: Callable[[bytes], None]) -> Callable[[], None]:
        """Register a fragment consumer. Returns its unsubscribe function."""
        with self._lock:
            sub_id = self._next_id
            self._next_id += 1
            if not self._released:
                self._subscribers[sub_id] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(sub_id, None)

        return _unsubscribe

    def push(self, fragment: bytes) -> None:
        """Deliver one fragment to every subscriber."""
        if not fragment:
            return
        with self._lock:
            if self._released:
                return
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            callback(fragment)

    def release(self) -> None:
        """Stop the device and drop all subscribers. Idempotent."""
        with self._lock:
            if self._releasing:
                return
            self._releasing = True
        try:
            self._close_device()
        finally:
            with self._lock:
                self._released = True
                self._subscribers.clear()
            logger.debug("audio stream released  name=%s", self.name)

    async def aclose(self) -> None:
        """release() off the event loop; device stop may block."""
        await asyncio.to_thread(self.release)

    def _close_device(self) -> None:
        """Hook for device-backed streams."""
