"""VAD classifier and monitor debounce tests."""
import asyncio

import numpy as np
import pytest

from convoloop.pipeline.vad import VAD, VADConfig, VoiceActivityMonitor

from conftest import FakeMonitor, FakeStream, SILENT_FRAGMENT, VOICED_FRAGMENT, wait_until


def _tone(amplitude: int, n: int = 1600) -> bytes:
    t = np.arange(n)
    return (amplitude * np.sin(2 * np.pi * 440 * t / 16000)).astype(np.int16).tobytes()


class TestVADClassifier:

    def test_silence_is_floor_level(self):
        assert VAD.level_db(b"") == -100.0
        assert VAD.level_db(SILENT_FRAGMENT) == -100.0

    def test_energy_threshold(self):
        vad = VAD(VADConfig(threshold_db=-40.0))
        loud, loud_db = vad.process_window(_tone(8000))
        quiet, quiet_db = vad.process_window(_tone(50))
        assert loud is True
        assert quiet is False
        assert loud_db > -40.0 > quiet_db

    def test_empty_window_is_unvoiced(self):
        voiced, _ = VAD().process_window(b"")
        assert voiced is False

    def test_unknown_backend_falls_back_to_energy(self):
        vad = VAD(VADConfig(backend="neural"))
        assert vad.backend == "energy"

    def test_full_scale_is_near_zero_dbfs(self):
        level = VAD.level_db(np.full(160, 32767, dtype=np.int16).tobytes())
        assert -0.1 < level <= 0.0


class TestMonitorDebounce:

    def test_start_and_stop_are_debounced(self):
        monitor = FakeMonitor()
        monitor.config.start_polls = 2
        monitor.config.stop_polls = 3
        handle = monitor.attach(FakeStream())
        events = []
        handle.on_speaking_started(lambda: events.append("start"))
        handle.on_speaking_stopped(lambda: events.append("stop"))

        handle.update(True)
        assert events == []
        handle.update(True)
        handle.update(True)
        assert events == ["start"]

        handle.update(False)
        handle.update(False)
        handle.update(True)  # resets the silent run
        handle.update(False)
        handle.update(False)
        assert events == ["start"]
        handle.update(False)
        assert events == ["start", "stop"]

    def test_no_callbacks_after_detach(self):
        monitor = FakeMonitor()
        stream = FakeStream()
        handle = monitor.attach(stream)
        events = []
        handle.on_speaking_started(lambda: events.append("start"))
        monitor.detach(handle)
        handle.update(True)
        stream.push(VOICED_FRAGMENT)
        assert events == []
        assert len(handle._window) == 0

    def test_detach_from_inside_callback_stops_remaining_callbacks(self):
        monitor = FakeMonitor()
        handle = monitor.attach(FakeStream())
        events = []
        handle.on_speaking_started(lambda: monitor.detach(handle))
        handle.on_speaking_started(lambda: events.append("late"))
        handle.update(True)
        assert events == []


class TestMonitorPolling:

    @pytest.mark.asyncio
    async def test_poller_emits_from_live_stream(self):
        monitor = VoiceActivityMonitor(VADConfig(interval_ms=10, start_polls=1, stop_polls=1))
        stream = FakeStream()
        handle = monitor.attach(stream)
        started = asyncio.Event()
        stopped = asyncio.Event()
        handle.on_speaking_started(started.set)
        handle.on_speaking_stopped(stopped.set)

        stream.speak(100)
        await asyncio.wait_for(started.wait(), 1.0)
        await asyncio.wait_for(stopped.wait(), 1.0)  # nothing pushed since: silent poll

        monitor.detach(handle)
        await wait_until(lambda: handle._task.done())
