"""Bounded utterance capture after a wake word."""

from __future__ import annotations

import asyncio
import io
import logging
import threading
import time
import wave
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .errors import InvalidStateError
from .wake_detector import compute_rms

if TYPE_CHECKING:
    from .audio import AudioCapture
    from .config import PhraseConfig

LOGGER = logging.getLogger("tornade-assistant.recorder")


@dataclass(frozen=True)
class RecordedClip:
    audio: bytes
    rate: int
    width: int = 2
    channels: int = 1

    @property
    def is_empty(self) -> bool:
        return not self.audio

    @property
    def duration_ms(self) -> int:
        frame_bytes = self.width * self.channels
        if not self.rate or not frame_bytes:
            return 0
        return int(len(self.audio) / frame_bytes / self.rate * 1000)

    def to_wav(self) -> bytes:
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(self.channels)
            wav.setsampwidth(self.width)
            wav.setframerate(self.rate)
            wav.writeframes(self.audio)
        return buffer.getvalue()


class UtteranceRecorder:
    """Accumulate capture frames until ``end()``, the duration cap, or trailing silence.

    Frames arrive on the audio thread; everything that touches the event loop
    goes through ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        phrase: PhraseConfig,
        *,
        rate: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self.phrase = phrase
        self.rate = rate
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._capture: AudioCapture | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[RecordedClip] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._started_at = 0.0
        self._captured_samples = 0
        self._silence_samples = 0

    @property
    def recording(self) -> bool:
        return self._capture is not None

    def begin(self, capture: AudioCapture) -> None:
        if self._capture is not None:
            raise InvalidStateError("A recording is already in progress")
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._future = loop.create_future()
        with self._lock:
            self._buffer = bytearray()
            self._captured_samples = 0
            self._silence_samples = 0
        self._capture = capture
        self._started_at = time.monotonic()
        self._timer = loop.call_later(self.phrase.max_seconds, self._on_timeout)
        capture.add_listener(self._on_frame)
        self._logger.debug("Recording started (max %.1fs)", self.phrase.max_seconds)

    def end(self) -> None:
        """Stop recording and resolve the pending result with what was captured."""
        if self._capture is None:
            return
        self._detach()
        with self._lock:
            audio = bytes(self._buffer)
            self._buffer = bytearray()
        clip = RecordedClip(audio=audio, rate=self.rate)
        elapsed_ms = int((time.monotonic() - self._started_at) * 1000)
        self._logger.debug("Recording finished after %sms (%s bytes)", elapsed_ms, len(audio))
        if self._future is not None and not self._future.done():
            self._future.set_result(clip)

    def cancel(self) -> None:
        """Tear down without producing a clip."""
        if self._capture is None and (self._future is None or self._future.done()):
            return
        self._detach()
        with self._lock:
            self._buffer = bytearray()
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._logger.debug("Recording cancelled")

    async def result(self) -> RecordedClip:
        if self._future is None:
            raise InvalidStateError("Recording was never started")
        return await self._future

    def _detach(self) -> None:
        capture = self._capture
        self._capture = None
        if capture is not None:
            capture.remove_listener(self._on_frame)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        if self._capture is not None:
            self._logger.debug("Recording reached %.1fs limit", self.phrase.max_seconds)
            self.end()

    def _on_frame(self, frame: np.ndarray) -> None:
        chunk = frame.astype("<i2", copy=False).tobytes()
        silent_enough = False
        with self._lock:
            if self._capture is None:
                return
            self._buffer.extend(chunk)
            self._captured_samples += len(frame)
            if self.phrase.silence_ms > 0:
                silent_enough = self._track_silence(chunk, len(frame))
        if silent_enough and self._loop is not None:
            self._loop.call_soon_threadsafe(self.end)

    def _track_silence(self, chunk: bytes, samples: int) -> bool:
        min_samples = int(self.phrase.min_seconds * self.rate)
        if compute_rms(chunk, 2) < self.phrase.rms_floor and self._captured_samples >= min_samples:
            self._silence_samples += samples
        else:
            self._silence_samples = 0
        return self._silence_samples * 1000 >= self.phrase.silence_ms * self.rate
