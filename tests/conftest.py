"""Shared fakes for convoloop tests.

Fake devices stand in for PortAudio so the turn loop can be driven
deterministically: tests push PCM fragments into FakeStream, flip the
VAD debounce directly through FakeMonitor handles and finish playback
through FakeOutputDevice.
"""
import asyncio
import threading
from typing import List, Optional

import pytest

from convoloop.clients.dialogue_client import DialogueClient
from convoloop.errors import DeviceAcquisitionError, PlaybackDecodeError
from convoloop.pipeline.audio import AudioClip, AudioStream
from convoloop.pipeline.capture import CaptureConfig, CaptureDevice, Recorder
from convoloop.pipeline.playback import ActiveOutput, OutputDevice, PlaybackController
from convoloop.pipeline.vad import MonitorHandle, VADConfig, VoiceActivityMonitor
from convoloop.voice.turn_router import TurnMachineConfig, TurnStateMachine
from convoloop.voice.turn_state import Session, TurnState

SAMPLE_RATE = 16000
FRAGMENT_MS = 20
# 20 ms of PCM16 mono at a clearly voiced level.
VOICED_FRAGMENT = (3000).to_bytes(2, "little", signed=True) * (SAMPLE_RATE * FRAGMENT_MS // 1000)
SILENT_FRAGMENT = b"\x00\x00" * (SAMPLE_RATE * FRAGMENT_MS // 1000)

REPLY_CLIP = AudioClip(data=b"RIFF-reply-audio", mime_type="audio/wav", duration_ms=2000.0)


class FakeStream(AudioStream):
    """AudioStream with no device behind it."""

    def __init__(self, name: str = "fake"):
        super().__init__(sample_rate=SAMPLE_RATE, channels=1, name=name)
        self.close_count = 0

    def _close_device(self) -> None:
        self.close_count += 1

    def speak(self, ms: int) -> None:
        for _ in range(ms // FRAGMENT_MS):
            self.push(VOICED_FRAGMENT)


class FakeCaptureDevice(CaptureDevice):
    def __init__(self):
        self.streams: List[FakeStream] = []
        self.fail = False
        self.delay = 0.0

    async def acquire(self) -> AudioStream:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeviceAcquisitionError("permission denied", code="PERMISSION_DENIED")
        stream = FakeStream(name=f"fake_{len(self.streams) + 1}")
        self.streams.append(stream)
        return stream

    @property
    def open_streams(self) -> List[FakeStream]:
        return [s for s in self.streams if not s.released]


class FakeOutput(ActiveOutput):
    def __init__(self, clip, on_finished, on_error):
        self.clip = clip
        self.on_finished = on_finished
        self.on_error = on_error
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeOutputDevice(OutputDevice):
    def __init__(self):
        self.outputs: List[FakeOutput] = []
        self.fail_start = False
        self.start_error: Optional[BaseException] = None

    async def start(self, clip, on_finished, on_error) -> ActiveOutput:
        if self.fail_start:
            raise PlaybackDecodeError("cannot decode reply")
        if self.start_error is not None:
            raise self.start_error
        output = FakeOutput(clip, on_finished, on_error)
        self.outputs.append(output)
        return output

    @property
    def last(self) -> Optional[FakeOutput]:
        return self.outputs[-1] if self.outputs else None

    def finish(self, from_thread: bool = False) -> None:
        """Report natural completion of the latest output."""
        self._call(self.last.on_finished, from_thread)

    def fail(self, exc: BaseException, from_thread: bool = False) -> None:
        self._call(lambda: self.last.on_error(exc), from_thread)

    @staticmethod
    def _call(fn, from_thread: bool) -> None:
        if from_thread:
            t = threading.Thread(target=fn)
            t.start()
            t.join()
        else:
            fn()


class FakeDialogueClient(DialogueClient):
    """Returns queued replies; an Exception in the queue is raised instead."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []
        self.hold: Optional[asyncio.Event] = None
        self.closed = False

    async def converse(self, session, clip):
        self.calls.append((session, clip))
        if self.hold is not None:
            await self.hold.wait()
        reply = self.replies.pop(0) if self.replies else REPLY_CLIP
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def close(self) -> None:
        self.closed = True


class FakeMonitor(VoiceActivityMonitor):
    """Monitor without a poll timer; tests drive handle.update() directly."""

    def __init__(self):
        super().__init__(VADConfig(start_polls=1, stop_polls=1))
        self.handles: List[MonitorHandle] = []

    def _spawn_poller(self, handle):
        self.handles.append(handle)
        return None

    @property
    def current(self) -> Optional[MonitorHandle]:
        live = [h for h in self.handles if not h.detached]
        return live[-1] if live else None

    def speech_started(self) -> None:
        self.current.update(True)

    def speech_stopped(self) -> None:
        self.current.update(False)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class Rig:
    """A started TurnStateMachine wired to fakes.

    Usage:
        async with Rig() as rig:
            rig.machine.request_start()
            await rig.wait_recording()
    """

    def __init__(self, replies=None, **config):
        self.session = Session(from_id="user-1", to_id="agent-1")
        self.capture = FakeCaptureDevice()
        self.monitor = FakeMonitor()
        self.output = FakeOutputDevice()
        self.playback = PlaybackController(self.output)
        self.dialogue = FakeDialogueClient(replies)
        self.recorder = Recorder(CaptureConfig(sample_rate=SAMPLE_RATE, preroll_ms=500))
        self.machine = TurnStateMachine(
            session=self.session,
            capture_device=self.capture,
            monitor=self.monitor,
            playback=self.playback,
            dialogue=self.dialogue,
            recorder=self.recorder,
            config=TurnMachineConfig(**config),
        )
        self.snapshots = []
        self.errors = []
        self.machine.subscribe(self.snapshots.append)
        self.machine.subscribe_errors(self.errors.append)

    async def __aenter__(self) -> "Rig":
        await self.machine.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.machine.aclose()

    @property
    def state(self) -> TurnState:
        return self.machine.state

    async def wait_state(self, state: TurnState, timeout: float = 2.0) -> None:
        await wait_until(lambda: self.machine.state == state, timeout)
        await self.machine.settle()

    async def wait_recording(self) -> None:
        await wait_until(lambda: self.recorder.is_recording and self.monitor.current is not None)

    async def start_listening(self) -> FakeStream:
        self.machine.request_start()
        await self.wait_recording()
        return self.recorder.active.stream

    async def speak_turn(self, ms: int = 3000) -> None:
        """Speech onset, *ms* of voiced audio, then end of speech."""
        stream = self.recorder.active.stream
        self.monitor.speech_started()
        await wait_until(lambda: self.recorder.active is not None and self.recorder.active.voiced)
        stream.speak(ms)
        self.monitor.speech_stopped()

    async def to_speaking(self) -> None:
        await self.start_listening()
        await self.speak_turn()
        await self.wait_state(TurnState.SPEAKING)
        await wait_until(lambda: self.playback.is_active)


@pytest.fixture
def session():
    return Session(from_id="user-1", to_id="agent-1")
