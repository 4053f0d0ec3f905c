"""Async client for the speech-to-text HTTP service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from .errors import ServiceError
from .recorder import RecordedClip

LOGGER = logging.getLogger("tornade-assistant.transcription")


@dataclass(slots=True)
class TranscriptionClient:
    url: str
    timeout: float | None = None
    client: httpx.AsyncClient | None = None
    logger: logging.Logger = field(default=LOGGER, repr=False)
    _owns_client: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self._owns_client = False

    async def transcribe(self, clip: RecordedClip) -> str:
        """Upload a clip as ``recording.wav`` and return the recognized text."""
        if clip.is_empty:
            raise ServiceError("No speech captured")
        files = {"file": ("recording.wav", clip.to_wav(), "audio/wav")}
        self.logger.debug("[stt] Uploading %sms of audio", clip.duration_ms)
        try:
            response = await self.client.post(self.url, files=files)
        except httpx.RequestError as exc:
            raise ServiceError(f"Transcription service unreachable: {exc}") from exc
        if not response.is_success:
            raise ServiceError(f"Transcription failed (HTTP {response.status_code})")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ServiceError("Transcription service returned invalid JSON") from exc
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise ServiceError("Transcription response is missing 'text'")
        return text.strip()
