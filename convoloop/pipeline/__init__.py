"""convoloop audio pipeline components.

Device backends live in ``convoloop.pipeline.devices`` and are imported
on demand; they need PortAudio at import time.
"""

from .audio import AudioClip, AudioStream, encode_wav, decode_clip
from .vad import VAD, VADConfig, VoiceActivityMonitor, MonitorHandle
from .capture import CaptureConfig, CaptureDevice, RecordingSession, Recorder, open_in_thread
from .playback import ActiveOutput, OutputDevice, PlaybackController, PlaybackHandle

__all__ = [
    "AudioClip",
    "AudioStream",
    "encode_wav",
    "decode_clip",
    "VAD",
    "VADConfig",
    "VoiceActivityMonitor",
    "MonitorHandle",
    "CaptureConfig",
    "CaptureDevice",
    "RecordingSession",
    "Recorder",
    "open_in_thread",
    "ActiveOutput",
    "OutputDevice",
    "PlaybackController",
    "PlaybackHandle",
]
