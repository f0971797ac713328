"""
sounddevice-backed microphone and speaker.

SoundDeviceCapture opens a RawInputStream per acquire(); PortAudio calls
back on its own thread and every block is pushed into the AudioStream.
SoundDeviceOutput decodes a clip with soundfile and feeds an OutputStream
from a callback; finished_callback reports natural completion.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from ..errors import DeviceAcquisitionError, PlaybackDecodeError
from .audio import AudioClip, AudioStream, decode_clip
from .capture import CaptureConfig, CaptureDevice, open_in_thread
from .playback import ActiveOutput, OutputDevice

logger = logging.getLogger(__name__)


class SoundDeviceStream(AudioStream):
    """AudioStream fed by a sounddevice RawInputStream."""

    def __init__(self, config: CaptureConfig, name: str):
        super().__init__(sample_rate=config.sample_rate, channels=config.channels, name=name)
        self._sd_stream = sd.RawInputStream(
            samplerate=config.sample_rate,
            channels=config.channels,
            dtype="int16",
            blocksize=int(config.sample_rate * config.block_ms / 1000),
            device=config.device,
            callback=self._callback,
        )

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("input status  stream=%s  status=%s", self.name, status)
        self.push(bytes(indata))

    def start(self) -> None:
        self._sd_stream.start()

    def _close_device(self) -> None:
        try:
            self._sd_stream.stop()
        finally:
            self._sd_stream.close()


class SoundDeviceCapture(CaptureDevice):
    """Microphone via PortAudio."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._count = 0

    async def acquire(self) -> AudioStream:
        self._count += 1
        name = f"mic_{self._count}"
        return await open_in_thread(self._open, name)

    def _open(self, name: str) -> SoundDeviceStream:
        stream = None
        try:
            stream = SoundDeviceStream(self.config, name)
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            if stream is not None:
                stream.release()
            raise DeviceAcquisitionError(
                f"cannot open microphone: {e}",
                details={"device": self.config.device},
            ) from e
        logger.info(
            "microphone acquired  stream=%s  rate=%d  channels=%d",
            name, self.config.sample_rate, self.config.channels,
        )
        return stream


class _SoundDeviceOutput(ActiveOutput):
    """One running OutputStream over decoded frames."""

    def __init__(
        self,
        frames: np.ndarray,
        sample_rate: int,
        device,
        on_finished: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ):
        self._frames = frames
        self._pos = 0
        self._stopped = False
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._on_finished = on_finished
        self._on_error = on_error
        self._sd_stream = sd.OutputStream(
            samplerate=sample_rate,
            channels=frames.shape[1],
            dtype="float32",
            device=device,
            callback=self._callback,
            finished_callback=self._finished,
        )

    def _callback(self, outdata, frames, time_info, status) -> None:
        try:
            chunk = self._frames[self._pos:self._pos + frames]
            n = len(chunk)
            outdata[:n] = chunk
        except Exception as e:
            self._error = e
            raise sd.CallbackAbort() from e
        if n < frames:
            outdata[n:] = 0
            raise sd.CallbackStop()
        self._pos += n

    def _finished(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if self._error is not None:
            self._on_error(self._error)
        else:
            self._on_finished()

    def start(self) -> None:
        self._sd_stream.start()

    def stop(self) -> None:
        with self._lock:
            if self._stopped and self._sd_stream.closed:
                return
            self._stopped = True
        try:
            self._sd_stream.abort()
            self._sd_stream.close()
        except sd.PortAudioError as e:
            logger.warning("output close failed  error=%s", e)


class SoundDeviceOutput(OutputDevice):
    """Speaker via PortAudio."""

    def __init__(self, device=None):
        self.device = device

    async def start(
        self,
        clip: AudioClip,
        on_finished: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> ActiveOutput:
        frames, sample_rate = await asyncio.to_thread(decode_clip, clip)
        output = None
        try:
            output = _SoundDeviceOutput(frames, sample_rate, self.device, on_finished, on_error)
            output.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            if output is not None:
                output.stop()
            raise PlaybackDecodeError(
                f"cannot open speaker: {e}", code="OUTPUT_UNAVAILABLE",
            ) from e
        return output
