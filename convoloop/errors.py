"""
convoloop - Error taxonomy

DeviceAcquisitionError is the only fatal kind: it halts the turn cycle
until the user starts again. The other kinds are recovered by restarting
capture and are only logged/observed.
"""

from typing import Any, Dict, Optional


class ConvoError(Exception):
    """Base error with a stable code, message and details."""

    recoverable: bool = True
    default_code: str = "CONVO_ERROR"

    def __init__(
        self,
        message: str = "",
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.code
        self.details = details or {}
        super().__init__(f"{self.code}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


class DeviceAcquisitionError(ConvoError):
    """Microphone/speaker unavailable or permission denied."""
    recoverable = False
    default_code = "DEVICE_UNAVAILABLE"


class EmptyCaptureError(ConvoError):
    """Capture stopped with zero accumulated audio."""
    default_code = "EMPTY_CAPTURE"

    def __init__(self, message: str = "capture stopped before any speech", **kwargs):
        super().__init__(message, **kwargs)


class DialogueTransportError(ConvoError):
    """Network or dialogue service failure."""
    default_code = "UNAVAILABLE"


class PlaybackDecodeError(ConvoError):
    """Reply audio could not be decoded or played."""
    default_code = "PLAYBACK_FAILED"
