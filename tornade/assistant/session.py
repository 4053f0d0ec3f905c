"""Voice session state machine.

The controller is the only component collaborators talk to. It owns every
live resource (detector, capture, recorder, playback) and guarantees they are
released together whenever the session returns to ``idle`` or ``error``.

Lifecycle::

    idle -> initializing -> listening -> recording -> processing -> speaking -> listening
                    \\___________________ any failure ___________________/-> error

``stop_session()`` is valid everywhere and always lands in ``idle``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal
from uuid import uuid4

import numpy as np

from .audio import AudioCapture
from .errors import AssistantError, ConfigurationError, InvalidStateError
from .recorder import RecordedClip, UtteranceRecorder
from .wake_detector import PorcupineWakeDetector, WakeDetector, WakeResources

if TYPE_CHECKING:
    from .config import AssistantConfig
    from .llm import DialogueEngine
    from .speech import SpeechSynthesisPlayer
    from .transcription import TranscriptionClient

LOGGER = logging.getLogger("tornade-assistant.session")

Sender = Literal["user", "ai"]


class SessionStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LISTENING = "listening"
    RECORDING = "recording"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


RESOURCELESS_STATES = frozenset({SessionStatus.IDLE, SessionStatus.ERROR})


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(cls, sender: Sender, text: str) -> ChatMessage:
        return cls(id=f"{sender}-{uuid4().hex}", sender=sender, text=text)

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    messages: tuple[ChatMessage, ...]
    error: str | None
    level: float = 0.0


SnapshotListener = Callable[[SessionSnapshot], None]


class SessionController:
    """Wake word -> record -> transcribe -> dialogue -> speak, in a loop."""

    def __init__(
        self,
        config: AssistantConfig,
        *,
        transcriber: TranscriptionClient,
        dialogue: DialogueEngine,
        speech: SpeechSynthesisPlayer,
        detector_factory: Callable[[], WakeDetector] | None = None,
        capture_factory: Callable[[], AudioCapture] | None = None,
        recorder_factory: Callable[[], UtteranceRecorder] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.transcriber = transcriber
        self.dialogue = dialogue
        self.speech = speech
        self.logger = logger or LOGGER
        self._detector_factory = detector_factory or PorcupineWakeDetector
        self._capture_factory = capture_factory or (lambda: AudioCapture(config.mic))
        self._recorder_factory = recorder_factory or (
            lambda: UtteranceRecorder(config.phrase, rate=config.mic.rate)
        )

        self._status = SessionStatus.IDLE
        self._messages: list[ChatMessage] = []
        self._transmitted: list[ChatMessage] = []
        self._error: str | None = None
        self._listeners: list[SnapshotListener] = []

        self._loop: asyncio.AbstractEventLoop | None = None
        self._detector: WakeDetector | None = None
        self._capture: AudioCapture | None = None
        self._recorder: UtteranceRecorder | None = None
        self._turn_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ #
    # Exposed state
    # ------------------------------------------------------------------ #
    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        return tuple(self._messages)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def level(self) -> float:
        capture = self._capture
        return capture.level() if capture is not None else 0.0

    @property
    def has_resources(self) -> bool:
        return any(
            resource is not None for resource in (self._detector, self._capture, self._recorder, self._turn_task)
        )

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            messages=tuple(self._messages),
            error=self._error,
            level=self.level,
        )

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    # ------------------------------------------------------------------ #
    # Control surface
    # ------------------------------------------------------------------ #
    async def start_session(self) -> None:
        if self._status is SessionStatus.ERROR:
            raise InvalidStateError("Session is in error; stop it before starting again")
        if self._detector is not None or self._status is not SessionStatus.IDLE:
            self.logger.debug("[session] start ignored; session already %s", self._status.value)
            return
        self._loop = asyncio.get_running_loop()
        self._error = None
        self._set_status(SessionStatus.INITIALIZING)
        try:
            self._initialize()
        except Exception as exc:
            self.logger.warning("[session] Failed to start session: %s", exc)
            self._fail(exc)
            return
        self._set_status(SessionStatus.LISTENING)

    async def stop_session(self) -> None:
        task = self._release_resources()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._messages.clear()
        self._transmitted.clear()
        self._error = None
        self._set_status(SessionStatus.IDLE)

    def edit_message(self, message_id: str, text: str) -> bool:
        """Change the displayed text of a message. Never re-contacts any service."""
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                self._messages[index] = replace(message, text=text)
                self._notify()
                return True
        return False

    def delete_message(self, message_id: str) -> bool:
        """Remove a message from the displayed log only."""
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                del self._messages[index]
                self._notify()
                return True
        return False

    # ------------------------------------------------------------------ #
    # Initialization and teardown
    # ------------------------------------------------------------------ #
    def _initialize(self) -> None:
        wake = self.config.wake
        resources = WakeResources(
            keyword_path=wake.keyword_path,
            model_path=wake.model_path,
            access_key=wake.access_key,
            sensitivity=wake.sensitivity,
        )
        detector = self._detector_factory()
        self._detector = detector
        detector.start(wake.keyword, resources, self._on_detect_threadsafe, self._on_engine_error_threadsafe)
        if self.config.mic.rate != detector.sample_rate:
            raise ConfigurationError(
                f"Microphone rate {self.config.mic.rate} Hz does not match the wake word engine "
                f"({detector.sample_rate} Hz); set TORNADE_MIC_RATE={detector.sample_rate}"
            )

        capture = self._capture_factory()
        self._capture = capture
        capture.open(block_size=detector.frame_length)
        capture.add_listener(self._on_audio_frame)

    def _release_resources(self) -> asyncio.Task[None] | None:
        """Release everything the session owns. Each release is idempotent."""
        detector, self._detector = self._detector, None
        recorder, self._recorder = self._recorder, None
        capture, self._capture = self._capture, None
        task, self._turn_task = self._turn_task, None

        if detector is not None:
            with contextlib.suppress(Exception):
                detector.stop()
        if recorder is not None:
            recorder.cancel()
        if capture is not None:
            capture.close()
        self.speech.cancel()

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            return task
        return None

    def _fail(self, exc: BaseException) -> None:
        self._release_resources()
        self._error = str(exc) or exc.__class__.__name__
        self._set_status(SessionStatus.ERROR)

    # ------------------------------------------------------------------ #
    # Audio-thread and worker-thread entry points
    # ------------------------------------------------------------------ #
    def _on_audio_frame(self, frame: np.ndarray) -> None:
        detector = self._detector
        if self._status is not SessionStatus.LISTENING or detector is None or not detector.running:
            return
        detector.feed(frame)

    def _on_detect_threadsafe(self, label: str) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._handle_wake_word, label)

    def _on_engine_error_threadsafe(self, exc: Exception) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._handle_engine_error, exc)

    def _handle_engine_error(self, exc: Exception) -> None:
        if self._status in RESOURCELESS_STATES:
            return
        self.logger.warning("[session] Wake word engine failed: %s", exc)
        self._fail(exc)

    # ------------------------------------------------------------------ #
    # The turn
    # ------------------------------------------------------------------ #
    def _handle_wake_word(self, label: str) -> None:
        if self._status is not SessionStatus.LISTENING or self._capture is None:
            return
        self.logger.info("[session] Wake word detected: %s", label)
        self._set_status(SessionStatus.RECORDING)
        recorder = self._recorder_factory()
        self._recorder = recorder
        try:
            recorder.begin(self._capture)
        except Exception as exc:
            self._fail(exc)
            return
        self._turn_task = asyncio.create_task(self._run_turn(recorder))

    async def _run_turn(self, recorder: UtteranceRecorder) -> None:
        try:
            clip = await recorder.result()
            self._recorder = None
            await self._process(clip)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("[session] Turn failed: %s", exc, exc_info=not isinstance(exc, AssistantError))
            self._fail(exc)
            return
        if self._turn_task is asyncio.current_task():
            self._turn_task = None

    async def _process(self, clip: RecordedClip) -> None:
        self._set_status(SessionStatus.PROCESSING)
        user_text = await self.transcriber.transcribe(clip)
        if self.config.log_transcripts:
            self.logger.info("[session] Transcript: %s", user_text)
        user_message = ChatMessage.create("user", user_text)
        history = list(self._transmitted)
        self._append(user_message)

        reply = await self.dialogue.respond(history, user_text)
        if self.config.log_transcripts:
            self.logger.info("[session] Response: %s", reply)
        ai_message = ChatMessage.create("ai", reply)
        self._transmitted.extend((user_message, ai_message))
        self._append(ai_message)

        self._set_status(SessionStatus.SPEAKING)
        await self.speech.speak(reply)
        self._set_status(SessionStatus.LISTENING)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._notify()

    def _set_status(self, status: SessionStatus) -> None:
        if status is self._status:
            self._notify()
            return
        self.logger.debug("[session] %s -> %s", self._status.value, status.value)
        self._status = status
        self._notify()

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("[session] Snapshot listener failed")

