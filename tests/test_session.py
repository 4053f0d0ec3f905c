"""Tests for the voice session controller (tornade/assistant/session.py)."""

from __future__ import annotations

import asyncio
import json
from itertools import groupby
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
import pytest
from fakes import FakeCapture, FakeDetector
from tornade.assistant.config import MicConfig, PhraseConfig
from tornade.assistant.errors import (
    ConfigurationError,
    EngineError,
    InvalidStateError,
    MicrophonePermissionError,
    ServiceError,
)
from tornade.assistant.llm import DialogueEngine
from tornade.assistant.session import ChatMessage, SessionController, SessionStatus
from tornade.assistant.speech import SpeechSynthesisPlayer
from tornade.assistant.tools import ToolDispatcher
from tornade.assistant.transcription import TranscriptionClient

pytestmark = pytest.mark.anyio

SPEECH = np.full(512, 3000, dtype=np.int16)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def config(make_assistant_config):
    return make_assistant_config(phrase=PhraseConfig(min_seconds=0.0, max_seconds=0.2, silence_ms=0, rms_floor=120))


@pytest.fixture
def transcriber():
    mock = AsyncMock(spec=TranscriptionClient)
    mock.transcribe.return_value = "start the web server"
    return mock


@pytest.fixture
def dialogue():
    mock = AsyncMock(spec=DialogueEngine)
    mock.respond.return_value = "Web server is up, sir."
    return mock


@pytest.fixture
def speech():
    return MagicMock(spec=SpeechSynthesisPlayer)


@pytest.fixture
def statuses():
    return []


@pytest.fixture
def controller(config, transcriber, dialogue, speech, fake_detector, fake_capture, statuses):
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: fake_detector,
        capture_factory=lambda: fake_capture,
    )
    controller.add_listener(lambda snapshot: statuses.append(snapshot.status))
    return controller


def distinct(values):
    return [value for value, _group in groupby(values)]


async def run_turn(controller, fake_detector, fake_capture):
    """Trigger the wake word and let one full turn complete."""
    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.RECORDING)
    fake_capture.push(SPEECH)
    await wait_until(lambda: controller.status is SessionStatus.LISTENING)


# Start


async def test_start_reaches_listening(controller, fake_detector, fake_capture, statuses):
    await controller.start_session()

    assert controller.status is SessionStatus.LISTENING
    assert distinct(statuses) == [SessionStatus.INITIALIZING, SessionStatus.LISTENING]
    assert fake_detector.keyword == "Tornade"
    assert fake_detector.resources.access_key == "test_access_key"
    assert fake_capture.is_open
    assert fake_capture.block_size == fake_detector.frame_length
    assert controller.level == 0.25


async def test_start_while_active_is_noop(config, transcriber, dialogue, speech, fake_detector, fake_capture):
    created = []

    def factory():
        created.append(fake_detector)
        return fake_detector

    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=factory,
        capture_factory=lambda: fake_capture,
    )
    await controller.start_session()
    await controller.start_session()

    assert len(created) == 1
    assert controller.status is SessionStatus.LISTENING
    await controller.stop_session()


async def test_listening_frames_feed_detector(controller, fake_detector, fake_capture, silent_frame):
    await controller.start_session()
    fake_capture.push(silent_frame)
    fake_capture.push(silent_frame)

    assert len(fake_detector.fed) == 2
    await controller.stop_session()


# Full turn


async def test_full_turn(controller, fake_detector, fake_capture, transcriber, dialogue, speech, statuses):
    await controller.start_session()

    await run_turn(controller, fake_detector, fake_capture)

    assert distinct(statuses) == [
        SessionStatus.INITIALIZING,
        SessionStatus.LISTENING,
        SessionStatus.RECORDING,
        SessionStatus.PROCESSING,
        SessionStatus.SPEAKING,
        SessionStatus.LISTENING,
    ]
    clip = transcriber.transcribe.await_args.args[0]
    assert clip.audio == SPEECH.tobytes()
    dialogue.respond.assert_awaited_once_with([], "start the web server")
    speech.speak.assert_awaited_once_with("Web server is up, sir.")

    messages = controller.messages
    assert [(m.sender, m.text) for m in messages] == [
        ("user", "start the web server"),
        ("ai", "Web server is up, sir."),
    ]
    assert messages[0].id != messages[1].id
    await controller.stop_session()


async def test_frames_not_fed_to_detector_while_recording(controller, fake_detector, fake_capture):
    await controller.start_session()
    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.RECORDING)

    fake_capture.push(SPEECH)

    assert fake_detector.fed == []
    await controller.stop_session()


async def test_second_turn_sends_history(controller, fake_detector, fake_capture, dialogue):
    await controller.start_session()
    await run_turn(controller, fake_detector, fake_capture)
    await run_turn(controller, fake_detector, fake_capture)

    history = dialogue.respond.await_args_list[1].args[0]
    assert [(m.sender, m.text) for m in history] == [
        ("user", "start the web server"),
        ("ai", "Web server is up, sir."),
    ]
    assert len(controller.messages) == 4
    await controller.stop_session()


async def test_wake_word_ignored_outside_listening(controller, fake_detector, transcriber):
    await controller.start_session()
    callback = fake_detector.on_detect
    await controller.stop_session()

    callback("Tornade")
    await asyncio.sleep(0.05)

    assert controller.status is SessionStatus.IDLE
    transcriber.transcribe.assert_not_called()


# Stop


async def test_stop_from_idle(controller, speech):
    await controller.stop_session()
    await controller.stop_session()

    assert controller.status is SessionStatus.IDLE
    assert controller.has_resources is False


async def test_stop_releases_everything(controller, fake_detector, fake_capture, speech):
    await controller.start_session()
    await run_turn(controller, fake_detector, fake_capture)

    await controller.stop_session()

    assert controller.status is SessionStatus.IDLE
    assert controller.has_resources is False
    assert controller.messages == ()
    assert controller.error is None
    assert controller.level == 0.0
    assert fake_detector.stop_calls == 1
    assert fake_capture.close_calls == 1
    assert fake_capture.listeners == []
    speech.cancel.assert_called()


async def test_stop_while_recording(
    make_assistant_config, transcriber, dialogue, speech, fake_detector, fake_capture
):
    controller = SessionController(
        make_assistant_config(),
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: fake_detector,
        capture_factory=lambda: fake_capture,
    )
    await controller.start_session()
    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.RECORDING)

    await controller.stop_session()
    await asyncio.sleep(0.05)

    assert controller.status is SessionStatus.IDLE
    assert controller.has_resources is False
    transcriber.transcribe.assert_not_called()


async def test_stop_while_processing_discards_result(controller, fake_detector, fake_capture, transcriber, dialogue):
    gate = asyncio.Event()

    async def slow_transcribe(_clip):
        await gate.wait()
        return "too late"

    transcriber.transcribe.side_effect = slow_transcribe
    await controller.start_session()
    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.PROCESSING)

    await controller.stop_session()
    gate.set()
    await asyncio.sleep(0.05)

    assert controller.status is SessionStatus.IDLE
    assert controller.messages == ()
    dialogue.respond.assert_not_called()


async def test_stop_while_speaking(controller, fake_detector, speech):
    speaking = asyncio.Event()

    async def endless_speech(_text):
        speaking.set()
        await asyncio.Event().wait()

    speech.speak.side_effect = endless_speech
    await controller.start_session()
    fake_detector.on_detect("Tornade")
    await asyncio.wait_for(speaking.wait(), timeout=2.0)
    assert controller.status is SessionStatus.SPEAKING

    await controller.stop_session()

    assert controller.status is SessionStatus.IDLE
    assert controller.has_resources is False
    speech.cancel.assert_called()


async def test_restart_after_stop_starts_fresh(controller, fake_detector, fake_capture):
    await controller.start_session()
    await run_turn(controller, fake_detector, fake_capture)
    await controller.stop_session()

    await controller.start_session()

    assert controller.status is SessionStatus.LISTENING
    assert controller.messages == ()
    await controller.stop_session()


# Failures


async def test_config_error_enters_error_state(config, transcriber, dialogue, speech):
    detector = FakeDetector(start_error=ConfigurationError("Picovoice access key (PICOVOICE_ACCESS_KEY) is missing"))
    capture = FakeCapture()
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: detector,
        capture_factory=lambda: capture,
    )

    await controller.start_session()

    assert controller.status is SessionStatus.ERROR
    assert controller.error == "Picovoice access key (PICOVOICE_ACCESS_KEY) is missing"
    assert controller.has_resources is False
    assert capture.is_open is False


async def test_microphone_denied_releases_detector(config, transcriber, dialogue, speech, fake_detector):
    capture = FakeCapture(open_error=MicrophonePermissionError("Microphone access denied"))
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: fake_detector,
        capture_factory=lambda: capture,
    )

    await controller.start_session()

    assert controller.status is SessionStatus.ERROR
    assert controller.error == "Microphone access denied"
    assert fake_detector.stop_calls == 1
    assert controller.has_resources is False


async def test_mic_rate_must_match_wake_engine(make_assistant_config, transcriber, dialogue, speech, fake_detector):
    config = make_assistant_config(
        mic=MicConfig(rate=48000, channels=1, block_size=512, device=None, fft_size=256)
    )
    capture = FakeCapture()
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: fake_detector,
        capture_factory=lambda: capture,
    )

    await controller.start_session()

    assert controller.status is SessionStatus.ERROR
    assert "48000" in controller.error and "16000" in controller.error
    assert fake_detector.stop_calls == 1
    assert capture.is_open is False
    assert controller.has_resources is False


async def test_start_from_error_rejected_until_stopped(config, transcriber, dialogue, speech):
    detectors = [FakeDetector(start_error=ConfigurationError("missing key")), FakeDetector()]
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=dialogue,
        speech=speech,
        detector_factory=lambda: detectors.pop(0),
        capture_factory=FakeCapture,
    )
    await controller.start_session()
    assert controller.status is SessionStatus.ERROR

    with pytest.raises(InvalidStateError):
        await controller.start_session()

    await controller.stop_session()
    assert controller.error is None
    await controller.start_session()
    assert controller.status is SessionStatus.LISTENING
    await controller.stop_session()


async def test_engine_error_enters_error_state(controller, fake_detector, fake_capture):
    await controller.start_session()

    fake_detector.on_error(EngineError("Wake word engine error: device lost"))
    await wait_until(lambda: controller.status is SessionStatus.ERROR)

    assert controller.error == "Wake word engine error: device lost"
    assert controller.has_resources is False
    assert fake_capture.is_open is False


async def test_service_failure_enters_error_state(controller, fake_detector, fake_capture, transcriber, speech):
    transcriber.transcribe.side_effect = ServiceError("Transcription failed (HTTP 500)")
    await controller.start_session()

    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.ERROR)

    assert controller.error == "Transcription failed (HTTP 500)"
    assert controller.has_resources is False
    assert controller.messages == ()
    speech.speak.assert_not_called()


async def test_playback_failure_enters_error_state(controller, fake_detector, fake_capture, speech):
    speech.speak.side_effect = ServiceError("Speech synthesis failed (HTTP 502)")
    await controller.start_session()

    fake_detector.on_detect("Tornade")
    await wait_until(lambda: controller.status is SessionStatus.ERROR)

    assert controller.error == "Speech synthesis failed (HTTP 502)"
    assert len(controller.messages) == 2


async def test_stop_clears_error(controller, fake_detector):
    await controller.start_session()
    fake_detector.on_error(EngineError("boom"))
    await wait_until(lambda: controller.status is SessionStatus.ERROR)

    await controller.stop_session()

    assert controller.status is SessionStatus.IDLE
    assert controller.error is None


# Message log


async def test_edit_changes_display_only(controller, fake_detector, fake_capture, dialogue):
    await controller.start_session()
    await run_turn(controller, fake_detector, fake_capture)
    original = controller.messages[0]

    assert controller.edit_message(original.id, "start the mail server") is True
    edited = controller.messages[0]
    assert edited.text == "start the mail server"
    assert (edited.id, edited.sender, edited.timestamp) == (original.id, original.sender, original.timestamp)

    await run_turn(controller, fake_detector, fake_capture)
    history = dialogue.respond.await_args_list[1].args[0]
    assert history[0].text == "start the web server"
    assert dialogue.respond.await_count == 2
    await controller.stop_session()


async def test_delete_removes_from_display_only(controller, fake_detector, fake_capture, dialogue):
    await controller.start_session()
    await run_turn(controller, fake_detector, fake_capture)
    await run_turn(controller, fake_detector, fake_capture)
    before = controller.messages

    assert controller.delete_message(before[1].id) is True
    assert controller.messages == (before[0], before[2], before[3])

    await run_turn(controller, fake_detector, fake_capture)
    history = dialogue.respond.await_args_list[2].args[0]
    assert [m.sender for m in history] == ["user", "ai", "user", "ai"]
    await controller.stop_session()


def test_edit_and_delete_unknown_id(controller):
    assert controller.edit_message("user-missing", "x") is False
    assert controller.delete_message("user-missing") is False


def test_listener_failure_is_logged(controller, mock_logger):
    controller.logger = mock_logger
    controller.add_listener(MagicMock(side_effect=RuntimeError("ui gone")))

    controller._notify()

    mock_logger.exception.assert_called_once()


def test_removed_listener_not_called(controller):
    listener = MagicMock()
    controller.add_listener(listener)
    controller.remove_listener(listener)
    controller.remove_listener(listener)

    controller._notify()

    listener.assert_not_called()


def test_chat_message_to_dict():
    message = ChatMessage.create("user", "hello")
    data = message.to_dict()

    assert data["id"].startswith("user-")
    assert data["sender"] == "user"
    assert data["text"] == "hello"
    assert data["timestamp"] == message.timestamp.isoformat()


async def test_end_to_end_tool_turn(config, transcriber, speech, fake_detector, fake_capture, mock_response, statuses):
    chat_client = AsyncMock(spec=httpx.AsyncClient)
    control_client = AsyncMock(spec=httpx.AsyncClient)
    tool_call = json.dumps({"toolName": "controlServer", "arguments": {"command": "start", "server_name": "web"}})
    chat_client.post.side_effect = [
        mock_response(json_data={"message": {"role": "assistant", "content": tool_call}}),
        mock_response(json_data={"message": {"role": "assistant", "content": "Web server is up, sir."}}),
    ]
    control_client.request.return_value = mock_response(json_data={"status": "ok"})
    transcriber.transcribe.return_value = "turn on the web server"
    dispatcher = ToolDispatcher(config.services.control_url, client=control_client)
    controller = SessionController(
        config,
        transcriber=transcriber,
        dialogue=DialogueEngine(config.llm, dispatcher, client=chat_client),
        speech=speech,
        detector_factory=lambda: fake_detector,
        capture_factory=lambda: fake_capture,
    )
    controller.add_listener(lambda snapshot: statuses.append(snapshot.status))
    await controller.start_session()
    statuses.clear()

    await run_turn(controller, fake_detector, fake_capture)

    control_client.request.assert_awaited_once_with(
        "POST", "http://mcpo.local:8080/api/mcpo/servers/web/start", json={}
    )
    assert chat_client.post.await_count == 2
    speech.speak.assert_awaited_once_with("Web server is up, sir.")
    assert [(m.sender, m.text) for m in controller.messages] == [
        ("user", "turn on the web server"),
        ("ai", "Web server is up, sir."),
    ]
    assert distinct(statuses) == [
        SessionStatus.RECORDING,
        SessionStatus.PROCESSING,
        SessionStatus.SPEAKING,
        SessionStatus.LISTENING,
    ]
    await controller.stop_session()
