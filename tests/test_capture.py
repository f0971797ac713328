"""RecordingSession, Recorder and threaded stream opening tests."""
import io
import threading

import pytest
import soundfile as sf

from convoloop.app.watchdog import run_with_timeout
from convoloop.pipeline.audio import AudioClip, decode_clip, encode_wav
from convoloop.pipeline.capture import CaptureConfig, Recorder, RecordingSession, open_in_thread

from conftest import FakeStream, VOICED_FRAGMENT, wait_until

BYTES_PER_MS = 32  # 16 kHz mono PCM16


class TestRecordingSession:

    @pytest.mark.asyncio
    async def test_stop_without_speech_yields_empty_clip(self):
        stream = FakeStream()
        session = RecordingSession(stream, CaptureConfig())
        stream.speak(1000)
        clip = await session.stop()
        assert clip.is_empty
        assert stream.released
        assert stream.close_count == 1
        assert session.buffered_bytes == 0

    def test_preroll_window_is_bounded_until_speech(self):
        stream = FakeStream()
        session = RecordingSession(stream, CaptureConfig(preroll_ms=500))
        stream.speak(3000)
        assert 500 * BYTES_PER_MS <= session.buffered_bytes < 500 * BYTES_PER_MS + len(VOICED_FRAGMENT)

        session.mark_speech()
        stream.speak(1000)
        assert session.buffered_bytes >= 1500 * BYTES_PER_MS

    @pytest.mark.asyncio
    async def test_stop_after_speech_encodes_wav(self):
        stream = FakeStream()
        session = RecordingSession(stream, CaptureConfig(preroll_ms=200))
        stream.speak(200)
        session.mark_speech()
        stream.speak(3000)

        clip = await session.stop()
        assert clip.mime_type == "audio/wav"
        assert clip.duration_ms == pytest.approx(3200, abs=20)
        info = sf.info(io.BytesIO(clip.data))
        assert info.samplerate == 16000
        assert info.channels == 1
        assert session.state == "stopped"
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_late_fragments_are_ignored(self):
        stream = FakeStream()
        session = RecordingSession(stream)
        session.mark_speech()
        stream.speak(500)
        first = await session.stop()
        assert not first.is_empty

        stream.push(VOICED_FRAGMENT)
        second = await session.stop()
        assert second.is_empty
        assert session.buffered_bytes == 0

    def test_discard_releases_without_clip(self):
        stream = FakeStream()
        session = RecordingSession(stream)
        session.mark_speech()
        stream.speak(500)
        session.discard_and_release()
        assert session.state == "discarded"
        assert stream.released
        assert session.buffered_bytes == 0
        session.discard_and_release()
        assert stream.close_count == 1


class TestRecorder:

    def test_single_active_session(self):
        recorder = Recorder()
        first_stream, second_stream = FakeStream("a"), FakeStream("b")
        first = recorder.start(first_stream)
        second = recorder.start(second_stream)
        assert recorder.active is second
        assert first.state == "discarded"
        assert first_stream.released
        assert not second_stream.released

    @pytest.mark.asyncio
    async def test_stop_with_nothing_active_is_empty(self):
        recorder = Recorder()
        clip = await recorder.stop()
        assert clip == AudioClip.empty()
        assert recorder.is_recording is False

    @pytest.mark.asyncio
    async def test_closed_session_is_not_active(self):
        recorder = Recorder()
        stream = FakeStream()
        recorder.start(stream)
        recorder.mark_speech()
        stream.speak(300)
        clip = await recorder.stop()
        assert not clip.is_empty
        assert recorder.active is None
        recorder.discard()
        assert recorder.active is None


class TestOpenInThread:

    @pytest.mark.asyncio
    async def test_returns_stream_from_worker_thread(self):
        stream = await open_in_thread(FakeStream, "quick")
        assert stream.name == "quick"
        assert not stream.released

    @pytest.mark.asyncio
    async def test_stream_opened_after_timeout_is_released(self):
        gate = threading.Event()
        opened = []

        def slow_open(name):
            gate.wait(2.0)
            stream = FakeStream(name)
            opened.append(stream)
            return stream

        result = await run_with_timeout(
            open_in_thread(slow_open, "late"), timeout_secs=0.05, stage_name="acquire",
        )
        assert result.timed_out
        assert opened == []

        gate.set()
        await wait_until(lambda: opened and opened[0].released)
        assert opened[0].close_count == 1


class TestClipCodec:

    def test_encode_empty_pcm_is_empty_clip(self):
        assert encode_wav(b"", 16000).is_empty
        assert encode_wav(b"\x01", 16000).is_empty

    def test_decode_round_trip_shape(self):
        clip = encode_wav(VOICED_FRAGMENT * 10, 16000)
        frames, rate = decode_clip(clip)
        assert rate == 16000
        assert frames.shape == (3200, 1)
