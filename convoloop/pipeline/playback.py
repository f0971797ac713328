"""
Reply playback: output device contract, PlaybackHandle and
PlaybackController.

Contract:
    - play() stops whatever is playing first, so at most one output runs.
    - Each play() settles exactly once: completed or error.
    - stop() before settlement suppresses both terminal events.
    - Activity hooks report when output truly starts and when it ends;
      they exist for the UI and carry no control meaning.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from ..errors import PlaybackDecodeError
from .audio import AudioClip

logger = logging.getLogger(__name__)


class ActiveOutput:
    """A running output started by an OutputDevice."""

    def stop(self) -> None:
        raise NotImplementedError


class OutputDevice:
    """Output capability contract.

    start() decodes *clip* and begins output, returning an ActiveOutput.
    It raises PlaybackDecodeError if the clip cannot be played. Once
    started, the device calls exactly one of on_finished() or
    on_error(exc), possibly from another thread, unless stopped first.
    """

    async def start(
        self,
        clip: AudioClip,
        on_finished: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> ActiveOutput:
        raise NotImplementedError


class PlaybackHandle:
    """Result channel for one play() call."""

    def __init__(self, clip: AudioClip):
        self.clip = clip
        self._completed_cbs: List[Callable[[], None]] = []
        self._error_cbs: List[Callable[[BaseException], None]] = []
        self._output: Optional[ActiveOutput] = None
        self._outcome: Optional[str] = None  # completed | error | stopped
        self._error: Optional[BaseException] = None

    @property
    def outcome(self) -> Optional[str]:
        return self._outcome

    @property
    def settled(self) -> bool:
        return self._outcome is not None

    def on_completed(self, callback: Callable[[], None]) -> None:
        if self._outcome == "completed":
            callback()
            return
        self._completed_cbs.append(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> None:
        if self._outcome == "error":
            callback(self._error)
            return
        self._error_cbs.append(callback)

    def _settle(self, outcome: str, error: Optional[BaseException] = None) -> bool:
        if self._outcome is not None:
            return False
        self._outcome = outcome
        self._error = error
        if outcome == "completed":
            callbacks = [lambda cb=cb: cb() for cb in self._completed_cbs]
        elif outcome == "error":
            callbacks = [lambda cb=cb: cb(error) for cb in self._error_cbs]
        else:
            callbacks = []
        self._completed_cbs.clear()
        self._error_cbs.clear()
        for fire in callbacks:
            try:
                fire()
            except Exception:
                logger.exception("playback callback failed  outcome=%s", outcome)
        return True


class PlaybackController:
    """Plays one reply clip at a time."""

    def __init__(self, device: OutputDevice):
        self._device = device
        self._current: Optional[PlaybackHandle] = None
        self._activity_cbs: List[Callable[[bool], None]] = []
        self._active = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_active(self) -> bool:
        """True while output is running."""
        return self._active

    @property
    def current(self) -> Optional[PlaybackHandle]:
        return self._current

    def on_activity(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Subscribe to active/inactive changes. Returns unsubscribe."""
        self._activity_cbs.append(callback)

        def _unsubscribe() -> None:
            if callback in self._activity_cbs:
                self._activity_cbs.remove(callback)

        return _unsubscribe

    async def play(self, clip: AudioClip) -> PlaybackHandle:
        """Stop any current output and start *clip*.

        Never raises for decode/output failures; they settle the handle
        with an error instead.
        """
        self.stop()
        self._loop = asyncio.get_running_loop()
        handle = PlaybackHandle(clip)
        self._current = handle

        try:
            output = await self._device.start(
                clip,
                on_finished=lambda: self._threadsafe(handle, "completed"),
                on_error=lambda exc: self._threadsafe(handle, "error", exc),
            )
        except Exception as e:
            error = _as_decode_error(e)
            logger.warning("playback failed to start  error=%s", error)
            if self._current is handle:
                self._current = None
            self._loop.call_soon(handle._settle, "error", error)
            return handle

        if self._current is not handle:
            # stop() or a newer play() arrived while the device was starting.
            output.stop()
            return handle

        handle._output = output
        if not handle.settled:
            self._set_active(True)
            logger.info(
                "playback started  mime=%s  bytes=%d", clip.mime_type, clip.size,
            )
        return handle

    def stop(self) -> None:
        """Stop output; idempotent. The stopped handle never settles with an event."""
        handle = self._current
        if handle is None:
            return
        self._current = None
        handle._settle("stopped")
        if handle._output is not None:
            handle._output.stop()
        self._set_active(False)
        logger.info("playback stopped")

    def _threadsafe(self, handle: PlaybackHandle, outcome: str, error: Optional[BaseException] = None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._finish, handle, outcome, error)

    def _finish(self, handle: PlaybackHandle, outcome: str, error: Optional[BaseException]) -> None:
        if handle.settled:
            return
        if outcome == "error":
            error = _as_decode_error(error)
        if self._current is handle:
            self._current = None
            self._set_active(False)
        logger.info("playback %s", outcome)
        handle._settle(outcome, error)
        # The device has finished but its stream is still open.
        if handle._output is not None:
            handle._output.stop()

    def _set_active(self, active: bool) -> None:
        if self._active == active:
            return
        self._active = active
        for cb in list(self._activity_cbs):
            try:
                cb(active)
            except Exception:
                logger.exception("playback activity callback failed")


def _as_decode_error(error: BaseException) -> PlaybackDecodeError:
    if isinstance(error, PlaybackDecodeError):
        return error
    wrapped = PlaybackDecodeError(f"output failed: {error}")
    wrapped.__cause__ = error
    return wrapped
