"""
convoloop - Dialogue Client
HTTP client that sends one captured clip to the dialogue service and
returns the reply audio.

No retry happens here: a failed turn is dropped and the orchestrator
re-arms listening instead.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

from ..errors import DialogueTransportError
from ..pipeline.audio import AudioClip
from ..voice.turn_state import Session

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0  # Reply synthesis can be slow


@dataclass
class DialogueConfig:
    """Dialogue service configuration."""
    base_url: str = "http://127.0.0.1:3000"
    path: str = "/convo"
    timeout_secs: float = DEFAULT_TIMEOUT
    upload_name: str = "audio.wav"


class DialogueClient:
    """Dialogue capability contract: clip in, reply clip out."""

    async def converse(self, session: Session, clip: AudioClip) -> AudioClip:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpDialogueClient(DialogueClient):
    """Dialogue service over HTTP multipart upload."""

    def __init__(
        self,
        config: Optional[DialogueConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize dialogue client.

        Args:
            config: Dialogue service configuration
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.config = config or DialogueConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.timeout = httpx.Timeout(self.config.timeout_secs)
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def converse(self, session: Session, clip: AudioClip) -> AudioClip:
        """
        Send a captured clip and return the reply clip.

        Args:
            session: Participant identity pair
            clip: Captured user audio

        Returns:
            Reply audio clip (mime type taken from Content-Type)

        Raises:
            DialogueTransportError: On timeout, connection failure,
                non-2xx status or empty reply body
        """
        correlation_id = f"req_{uuid.uuid4().hex[:12]}"
        url = f"{self.base_url}{self.config.path}"
        params = {"to_id": session.to_id, "from_id": session.from_id}
        files = {"file": (self.config.upload_name, clip.data, clip.mime_type)}

        logger.info(
            "dialogue request  session=%s  bytes=%d  duration=%.0fms  corr=%s",
            session.label, clip.size, clip.duration_ms, correlation_id,
        )

        try:
            response = await self.client.post(
                url,
                params=params,
                files=files,
                headers={"X-Correlation-ID": correlation_id},
            )
        except httpx.TimeoutException as e:
            raise DialogueTransportError(
                "dialogue request timed out",
                code="TIMEOUT",
                details={"timeout_seconds": self.config.timeout_secs},
            ) from e
        except httpx.RequestError as e:
            raise DialogueTransportError(
                f"dialogue service unavailable: {e}",
                code="UNAVAILABLE",
                details={"error": str(e)},
            ) from e

        if not response.is_success:
            raise DialogueTransportError(
                f"dialogue request failed: {response.status_code}",
                code=f"HTTP_{response.status_code}",
                details={"status_code": response.status_code},
            )

        body = response.content
        if not body:
            raise DialogueTransportError("dialogue service returned no audio", code="EMPTY_REPLY")

        mime_type = response.headers.get("content-type", "audio/wav").split(";")[0].strip()
        logger.info(
            "dialogue reply  session=%s  bytes=%d  mime=%s  corr=%s",
            session.label, len(body), mime_type, correlation_id,
        )
        return AudioClip(data=body, mime_type=mime_type)

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
