"""Text-to-speech over HTTP, played through a local PCM sink."""

from __future__ import annotations

import io
import logging
import wave
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from tornade.utils import chunk_bytes

from .audio import AplaySink
from .errors import ServiceError

LOGGER = logging.getLogger("tornade-assistant.speech")

PLAYBACK_CHUNK_BYTES = 4096


@dataclass(frozen=True)
class DecodedAudio:
    frames: bytes
    rate: int
    width: int
    channels: int


def decode_wav(data: bytes) -> DecodedAudio:
    """Decode a WAV payload into raw PCM frames."""
    if not data:
        raise ServiceError("Speech synthesis returned no audio")
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            return DecodedAudio(
                frames=wav.readframes(wav.getnframes()),
                rate=wav.getframerate(),
                width=wav.getsampwidth(),
                channels=wav.getnchannels(),
            )
    except (wave.Error, EOFError) as exc:
        raise ServiceError(f"Speech synthesis returned undecodable audio: {exc}") from exc


class SpeechSynthesisPlayer:
    """Synthesize a reply and play it to completion."""

    def __init__(
        self,
        url: str,
        *,
        sink: AplaySink | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        on_complete: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url = url
        self.sink = sink or AplaySink()
        self.on_complete = on_complete
        self._logger = logger or LOGGER
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()
            self._owns_client = False

    async def synthesize(self, text: str) -> DecodedAudio:
        try:
            response = await self._client.post(self.url, json={"text": text})
        except httpx.RequestError as exc:
            raise ServiceError(f"Speech synthesis service unreachable: {exc}") from exc
        if not response.is_success:
            raise ServiceError(f"Speech synthesis failed (HTTP {response.status_code})")
        return decode_wav(response.content)

    async def speak(self, text: str) -> None:
        audio = await self.synthesize(text)
        self._logger.debug(
            "[tts] Playing %s bytes (rate=%s, width=%s, channels=%s)",
            len(audio.frames),
            audio.rate,
            audio.width,
            audio.channels,
        )
        await self.sink.start(audio.rate, audio.width, audio.channels)
        try:
            for chunk in chunk_bytes(audio.frames, PLAYBACK_CHUNK_BYTES):
                await self.sink.write(chunk)
        except BaseException:
            self.sink.kill()
            raise
        await self.sink.stop()
        if self.on_complete:
            self.on_complete()

    def cancel(self) -> None:
        """Abort any active playback."""
        self.sink.kill()
