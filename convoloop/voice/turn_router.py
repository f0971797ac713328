"""Turn state machine: drives the reducer and executes its commands.

Wires together:
    - TurnSnapshot + TurnEvent -> reduce_turn -> (snapshot, commands)
    - One asyncio.Queue drained by one consumer task; every source
      (VAD timer, device threads, network tasks, user input) posts into it
    - CancelRegistry tokens so late events from a detached monitor, a
      stopped playback or an abandoned capture/dialogue are dropped
    - Watchdog timeouts around every suspension point
    - Latency instrumentation

The consumer is the only writer of the snapshot and never waits on a
device or the network: acquisition, playback start, capture stop and the
dialogue round-trip run as tasks, so a stop or interrupt is handled while
any of them is pending. Each task is tagged with a registry token and its
result is discarded (streams released) once that token is superseded.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..app.watchdog import WatchdogResult, run_with_timeout
from ..errors import ConvoError, DeviceAcquisitionError, DialogueTransportError
from ..pipeline.audio import AudioClip, AudioStream
from ..pipeline.capture import CaptureDevice, Recorder, RecordingSession
from ..pipeline.playback import PlaybackController
from ..pipeline.vad import MonitorHandle, VoiceActivityMonitor
from .cancel_registry import CancelRegistry
from .latency_metrics import LatencyCollector
from .turn_events import (
    ONE_SHOT_SOURCES,
    SOURCE_ACQUIRE,
    SOURCE_CAPTURE,
    SOURCE_DIALOGUE,
    SOURCE_LISTEN,
    SOURCE_MONITOR,
    SOURCE_PLAYBACK,
    TurnEvent,
)
from .turn_reducer import Command, reduce_turn
from .turn_state import (
    Session,
    TurnSnapshot,
    TurnState,
    is_transition_allowed,
    make_initial_snapshot,
)

logger = logging.getLogger(__name__)

SnapshotObserver = Callable[[TurnSnapshot], None]
ErrorObserver = Callable[[ConvoError], None]


@dataclass
class TurnMachineConfig:
    """Orchestrator policy and timeouts."""
    barge_in: bool = True  # Listen for speech while the reply plays
    acquire_timeout_secs: float = 5.0
    capture_stop_timeout_secs: float = 5.0
    dialogue_timeout_secs: float = 60.0


class TurnStateMachine:
    """Drives the conversation loop.

    Usage:
        machine = TurnStateMachine(session, mic, monitor, playback, client)
        await machine.start()
        machine.toggle()          # start listening
        ...
        await machine.aclose()
    """

    def __init__(
        self,
        session: Session,
        capture_device: CaptureDevice,
        monitor: VoiceActivityMonitor,
        playback: PlaybackController,
        dialogue,  # DialogueClient
        recorder: Optional[Recorder] = None,
        config: Optional[TurnMachineConfig] = None,
        registry: Optional[CancelRegistry] = None,
        latency: Optional[LatencyCollector] = None,
    ) -> None:
        self.session = session
        self.config = config or TurnMachineConfig()
        self._capture_device = capture_device
        self._monitor = monitor
        self._playback = playback
        self._dialogue = dialogue
        self._recorder = recorder or Recorder()
        self._registry = registry or CancelRegistry()
        self.latency = latency or LatencyCollector()

        self._snapshot = make_initial_snapshot()
        self._seq = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._starting: Set[asyncio.Task] = set()  # acquisitions, playback start

        self._monitor_handle: Optional[MonitorHandle] = None
        self._listen_stream: Optional[AudioStream] = None
        self._dialogue_cancel: Optional[asyncio.Event] = None

        self._observers: List[SnapshotObserver] = []
        self._error_observers: List[ErrorObserver] = []
        self.transitions: List[Tuple[TurnState, TurnState]] = []

        self._unsubscribe_playback = playback.on_activity(self._on_playback_activity)

        self._handlers: Dict[str, Callable] = {
            "StartCapture": self._cmd_start_capture,
            "StopCapture": self._cmd_stop_capture,
            "MarkSpeech": self._cmd_mark_speech,
            "StopPlayback": self._cmd_stop_playback,
            "SendClip": self._cmd_send_clip,
            "CancelDialogue": self._cmd_cancel_dialogue,
            "PlayReply": self._cmd_play_reply,
            "ArmBargeIn": self._cmd_arm_barge_in,
            "DisarmMonitor": self._cmd_disarm_monitor,
            "ReleaseAll": self._cmd_release_all,
            "ReportError": self._cmd_report_error,
            "EmitDiagnostic": self._cmd_emit_diagnostic,
        }

    # ---- read-only views ---------------------------------------------------

    @property
    def snapshot(self) -> TurnSnapshot:
        return self._snapshot

    @property
    def state(self) -> TurnState:
        return self._snapshot.state

    @property
    def busy(self) -> bool:
        return self._snapshot.busy

    @property
    def recorder(self) -> Recorder:
        return self._recorder

    @property
    def playback(self) -> PlaybackController:
        return self._playback

    @property
    def dialogue(self):
        return self._dialogue

    @property
    def is_recording(self) -> bool:
        return self._recorder.is_recording

    @property
    def playback_active(self) -> bool:
        return self._playback.is_active

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    # ---- subscriptions -----------------------------------------------------

    def subscribe(self, callback: SnapshotObserver) -> Callable[[], None]:
        """Observe snapshot changes. Returns unsubscribe."""
        self._observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return _unsubscribe

    def subscribe_errors(self, callback: ErrorObserver) -> Callable[[], None]:
        """Observe reported errors, recoverable or not. Returns unsubscribe."""
        self._error_observers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._error_observers:
                self._error_observers.remove(callback)

        return _unsubscribe

    # ---- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start the event consumer on the running loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queue = asyncio.Queue()
        self._consumer = self._loop.create_task(self._consume(), name="turn_consumer")
        logger.info("turn machine started  session=%s", self.session.label)

    async def aclose(self) -> None:
        """Release every device, drain the queue and stop the consumer."""
        if not self.running:
            return
        self.shutdown()
        await self._queue.join()

        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        self._unsubscribe_playback()
        logger.info(
            "turn machine closed  session=%s  turns=%d  events=%d",
            self.session.label, self._snapshot.turn_seq, self._snapshot.seq,
        )

    async def __aenter__(self) -> "TurnStateMachine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def settle(self) -> None:
        """Wait until queued events and in-flight device start-ups are done."""
        while True:
            await self._queue.join()
            if not self._starting:
                return
            await asyncio.gather(*list(self._starting), return_exceptions=True)

    # ---- user controls (thread-safe) ---------------------------------------

    def request_start(self) -> None:
        self.post("START_REQUESTED")

    def request_stop(self) -> None:
        self.post("STOP_REQUESTED")

    def request_interrupt(self) -> None:
        self.post("INTERRUPT_REQUESTED")

    def toggle(self) -> None:
        """Tri-state control, resolved against the state when it is processed."""
        self.post("TOGGLE_REQUESTED")

    def shutdown(self) -> None:
        self.post("SHUTDOWN_REQUESTED")

    # ---- event intake ------------------------------------------------------

    def post(
        self,
        event_type: str,
        source: Optional[str] = None,
        token: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> None:
        """Queue an event from any thread.

        seq is assigned on the loop thread, so queue order and seq order
        always agree.
        """
        if self._loop is None or self._queue is None:
            raise RuntimeError("turn machine is not started")
        if threading.get_ident() == self._loop_thread:
            self._enqueue(event_type, source, token, payload)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._enqueue, event_type, source, token, payload)

    def _enqueue(self, event_type, source, token, payload) -> None:
        self._seq += 1
        event = TurnEvent(
            event_type=event_type,
            seq=self._seq,
            ts_monotonic_ns=time.monotonic_ns(),
            source=source,
            token=token,
            payload=payload,
        )
        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception(
                    "turn dispatch failed  event=%s  state=%s",
                    event.event_type, self._snapshot.state.value,
                )
            finally:
                self._queue.task_done()

    def _accept(self, event: TurnEvent) -> bool:
        if event.source is None:
            return True
        if event.source in ONE_SHOT_SOURCES:
            return self._registry.consume(event.source, event.token)
        return self._registry.is_current(event.source, event.token)

    async def _dispatch(self, event: TurnEvent) -> None:
        if not self._accept(event):
            logger.debug(
                "stale event dropped  event=%s  source=%s  token=%s  state=%s",
                event.event_type, event.source, event.token, self._snapshot.state.value,
            )
            return

        prev = self._snapshot
        nxt, commands = reduce_turn(prev, event)

        if not is_transition_allowed(prev.state, nxt.state):
            logger.warning(
                "transition REJECTED  session=%s  %s → %s  event=%s",
                self.session.label, prev.state.value, nxt.state.value, event.event_type,
            )
            self._snapshot = prev.evolve(seq=event.seq)
            return

        self._snapshot = nxt
        if nxt.state != prev.state:
            self.transitions.append((prev.state, nxt.state))
            logger.info(
                "transition OK  session=%s  %s → %s  seq=%d  turn_seq=%d  reason=%s",
                self.session.label, prev.state.value, nxt.state.value,
                nxt.seq, nxt.turn_seq, nxt.reason,
            )
        self._record_latency(prev, nxt, event)

        for command in commands:
            await self._execute(command)

        if (prev.state, prev.busy, prev.phase, prev.last_error) != (
            nxt.state, nxt.busy, nxt.phase, nxt.last_error
        ):
            self._notify(self._snapshot)

    async def _execute(self, command: Command) -> None:
        handler = self._handlers.get(command.name)
        if handler is None:
            logger.error("unknown command  name=%s", command.name)
            return
        await handler(**command.args)

    # ---- commands ----------------------------------------------------------

    async def _cmd_start_capture(self) -> None:
        self._disarm_monitor()
        self._registry.issue(SOURCE_CAPTURE)
        token = self._registry.issue(SOURCE_ACQUIRE)
        self._spawn(self._open_capture(token), "acquire", starting=True)

    async def _cmd_stop_capture(self) -> None:
        self._registry.revoke(SOURCE_ACQUIRE)
        session = self._recorder.active
        token = self._registry.current(SOURCE_CAPTURE) or 0
        self._spawn(self._finish_capture(session, token), "capture_stop")

    async def _cmd_mark_speech(self) -> None:
        self._recorder.mark_speech()

    async def _cmd_stop_playback(self) -> None:
        self._registry.revoke(SOURCE_PLAYBACK)
        self._playback.stop()

    async def _cmd_send_clip(self, clip: AudioClip) -> None:
        token = self._registry.issue(SOURCE_DIALOGUE)
        cancel_evt = asyncio.Event()
        self._dialogue_cancel = cancel_evt
        self._spawn(self._converse(clip, token, cancel_evt), "dialogue")

    async def _cmd_cancel_dialogue(self) -> None:
        self._registry.revoke(SOURCE_DIALOGUE)
        if self._dialogue_cancel is not None:
            self._dialogue_cancel.set()
            self._dialogue_cancel = None

    async def _cmd_play_reply(self, clip: AudioClip) -> None:
        if self._recorder.active is not None:
            logger.error("capture still open at playback start; discarding it")
            self._recorder.discard()
        token = self._registry.issue(SOURCE_PLAYBACK)
        self._spawn(self._start_playback(clip, token), "playback", starting=True)

    async def _cmd_arm_barge_in(self) -> None:
        if not self.config.barge_in:
            return
        token = self._registry.issue(SOURCE_LISTEN)
        self._spawn(self._open_listen(token), "acquire_listen", starting=True)

    async def _cmd_disarm_monitor(self) -> None:
        self._disarm_monitor()

    async def _cmd_release_all(self) -> None:
        self._disarm_monitor()
        if self._dialogue_cancel is not None:
            self._dialogue_cancel.set()
            self._dialogue_cancel = None
        self._registry.revoke_all()
        self._recorder.discard()
        self._playback.stop()

    async def _cmd_report_error(self, error: Optional[ConvoError], fatal: bool) -> None:
        if error is None:
            error = ConvoError("unknown failure")
        if fatal:
            logger.error("turn loop halted  session=%s  error=%s", self.session.label, error)
        else:
            logger.warning("turn recovered  session=%s  error=%s", self.session.label, error)
        for cb in list(self._error_observers):
            try:
                cb(error)
            except Exception:
                logger.exception("error observer failed")

    async def _cmd_emit_diagnostic(self, **info) -> None:
        logger.debug("turn diagnostic  %s", info)

    # ---- helpers -----------------------------------------------------------

    async def _open_capture(self, token: int) -> None:
        result = await self._acquire("acquire")
        if not result.ok:
            # Only the live acquisition may fail the loop; DEVICE_FAILED
            # carries the token so a superseded one is dropped at dispatch.
            if self._registry.is_current(SOURCE_ACQUIRE, token):
                self.post("DEVICE_FAILED", SOURCE_ACQUIRE, token,
                          {"error": self._acquire_error(result)})
            return
        stream = result.value
        if not self._registry.consume(SOURCE_ACQUIRE, token):
            logger.debug("stale capture stream released  stream=%s", stream.name)
            stream.release()
            return
        self._recorder.start(stream)
        self._attach_monitor(stream)

    async def _open_listen(self, token: int) -> None:
        result = await self._acquire("acquire_listen")
        if not result.ok:
            logger.warning(
                "barge-in disabled for this reply  session=%s  error=%s",
                self.session.label, self._acquire_error(result),
            )
            return
        stream = result.value
        if not self._registry.consume(SOURCE_LISTEN, token):
            logger.debug("stale listen stream released  stream=%s", stream.name)
            stream.release()
            return
        self._listen_stream = stream
        self._attach_monitor(stream)

    async def _start_playback(self, clip: AudioClip, token: int) -> None:
        if not self._registry.is_current(SOURCE_PLAYBACK, token):
            return
        handle = await self._playback.play(clip)
        if not self._registry.is_current(SOURCE_PLAYBACK, token):
            if self._playback.current is handle:
                self._playback.stop()
            return
        handle.on_completed(
            lambda: self.post("PLAYBACK_COMPLETED", SOURCE_PLAYBACK, token)
        )
        handle.on_error(
            lambda exc: self.post("PLAYBACK_FAILED", SOURCE_PLAYBACK, token, {"error": exc})
        )

    async def _acquire(self, stage: str) -> WatchdogResult:
        return await run_with_timeout(
            self._capture_device.acquire(),
            timeout_secs=self.config.acquire_timeout_secs,
            stage_name=stage,
        )

    @staticmethod
    def _acquire_error(result: WatchdogResult) -> DeviceAcquisitionError:
        if isinstance(result.exception, DeviceAcquisitionError):
            return result.exception
        if result.timed_out:
            return DeviceAcquisitionError("microphone acquisition timed out", code="DEVICE_TIMEOUT")
        return DeviceAcquisitionError(f"microphone acquisition failed: {result.exception}")

    def _attach_monitor(self, stream: AudioStream) -> None:
        if self._monitor_handle is not None:
            self._monitor.detach(self._monitor_handle)
        token = self._registry.issue(SOURCE_MONITOR)
        handle = self._monitor.attach(stream)
        handle.on_speaking_started(lambda: self.post("SPEECH_STARTED", SOURCE_MONITOR, token))
        handle.on_speaking_stopped(lambda: self.post("SPEECH_STOPPED", SOURCE_MONITOR, token))
        self._monitor_handle = handle

    def _disarm_monitor(self) -> None:
        self._registry.revoke(SOURCE_MONITOR)
        self._registry.revoke(SOURCE_LISTEN)
        if self._monitor_handle is not None:
            self._monitor.detach(self._monitor_handle)
            self._monitor_handle = None
        if self._listen_stream is not None:
            self._listen_stream.release()
            self._listen_stream = None

    async def _finish_capture(self, session: Optional[RecordingSession], token: int) -> None:
        clip = AudioClip.empty()
        if session is not None:
            result = await run_with_timeout(
                session.stop(),
                timeout_secs=self.config.capture_stop_timeout_secs,
                stage_name="capture_stop",
            )
            if result.ok:
                clip = result.value
            elif result.timed_out:
                session.discard_and_release()
        self.post("CAPTURE_FINISHED", SOURCE_CAPTURE, token, {"clip": clip})

    async def _converse(self, clip: AudioClip, token: int, cancel_evt: asyncio.Event) -> None:
        result = await run_with_timeout(
            self._dialogue.converse(self.session, clip),
            timeout_secs=self.config.dialogue_timeout_secs,
            stage_name="dialogue",
            cancel_evt=cancel_evt,
        )
        if result.cancelled:
            return

        if result.ok:
            reply = result.value
            if reply is not None and not reply.is_empty:
                self.post("REPLY_RECEIVED", SOURCE_DIALOGUE, token, {"clip": reply})
                return
            error = DialogueTransportError("dialogue service returned no audio", code="EMPTY_REPLY")
        elif result.timed_out:
            error = DialogueTransportError("dialogue request timed out", code="TIMEOUT")
        elif isinstance(result.exception, DialogueTransportError):
            error = result.exception
        else:
            error = DialogueTransportError(str(result.exception), code="DIALOGUE_FAILED")
        self.post("REPLY_FAILED", SOURCE_DIALOGUE, token, {"error": error})

    def _spawn(self, coro, name: str, starting: bool = False) -> asyncio.Task:
        task = self._loop.create_task(coro, name=f"{name}_{self.session.label}")
        self._pending.add(task)
        if starting:
            self._starting.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        self._starting.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("turn task failed  task=%s  error=%s", task.get_name(), task.exception())

    def _on_playback_activity(self, active: bool) -> None:
        if active and self._snapshot.state == TurnState.SPEAKING:
            self.latency.record_reply_audible(self._snapshot.turn_id, time.monotonic_ns())
        self._notify(self._snapshot)

    def _record_latency(self, prev: TurnSnapshot, nxt: TurnSnapshot, event: TurnEvent) -> None:
        if prev.state == TurnState.LISTENING and nxt.state == TurnState.PROCESSING:
            self.latency.record_speech_end(nxt.turn_id, event.ts_monotonic_ns)
        elif prev.state in (TurnState.PROCESSING, TurnState.SPEAKING) and nxt.state != prev.state:
            if nxt.state != TurnState.SPEAKING:
                self.latency.finalize_turn(prev.turn_id, nxt.reason or "unknown")

    def _notify(self, snapshot: TurnSnapshot) -> None:
        for cb in list(self._observers):
            try:
                cb(snapshot)
            except Exception:
                logger.exception("snapshot observer failed")
