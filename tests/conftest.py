"""Shared test fixtures and configuration for the Tornade test suite.

This module provides reusable fixtures for common test scenarios including:
- Configuration objects
- httpx client/response mocking
- Fake audio capture, wake detector and speech player
- Async test utilities
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import numpy as np
import pytest
from tornade.assistant.config import (
    DEFAULT_SYSTEM_PROMPT,
    AssistantConfig,
    LLMConfig,
    MicConfig,
    MqttConfig,
    PhraseConfig,
    ServiceConfig,
    WakeConfig,
)
from fakes import FakeCapture, FakeDetector

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger restricted to real logger methods."""
    return Mock(spec=logging.Logger)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def mic_config():
    return MicConfig(rate=16000, channels=1, block_size=512, device=None, fft_size=256)


@pytest.fixture
def phrase_config():
    return PhraseConfig(min_seconds=1.0, max_seconds=5.0, silence_ms=0, rms_floor=120)


@pytest.fixture
def llm_config():
    return LLMConfig(
        chat_url="http://ollama.local:11434/api/chat",
        model="llama3",
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


@pytest.fixture
def mqtt_config():
    return MqttConfig(
        host="localhost",
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="tornade/test-device",
    )


@pytest.fixture
def make_assistant_config(mic_config, phrase_config, llm_config, mqtt_config):
    """Factory fixture for AssistantConfig with optional section overrides.

    Usage:
        config = make_assistant_config(wake=WakeConfig(...))
    """

    def _create(**overrides: Any) -> AssistantConfig:
        defaults: dict[str, Any] = {
            "hostname": "test-device",
            "mic": mic_config,
            "wake": WakeConfig(
                keyword="Tornade",
                keyword_path=Path("porcupine/tornade.ppn"),
                model_path=Path("porcupine/porcupine_params.pv"),
                access_key="test_access_key",
                sensitivity=0.5,
            ),
            "phrase": phrase_config,
            "services": ServiceConfig(
                transcribe_url="http://whisper.local:8000/transcribe",
                tts_url="http://piper.local:5000/tts",
                control_url="http://mcpo.local:8080/api/mcpo",
                timeout=None,
            ),
            "llm": llm_config,
            "mqtt": mqtt_config,
            "audio_player": None,
            "log_transcripts": False,
        }
        defaults.update(overrides)
        return AssistantConfig(**defaults)

    return _create


# ============================================================================
# HTTP Fixtures
# ============================================================================


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx.AsyncClient."""
    return AsyncMock(spec=httpx.AsyncClient)


@pytest.fixture
def mock_response():
    """Create a factory for mock httpx responses.

    Usage:
        response = mock_response(status_code=200, json_data={"text": "hello"})
    """

    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        text: str = "",
        content: bytes = b"",
        json_error: bool = False,
        reason_phrase: str = "",
    ) -> Mock:
        response = Mock(spec=httpx.Response)
        response.status_code = status_code
        if json_error:
            response.json = Mock(side_effect=ValueError("Expecting value"))
        else:
            response.json = Mock(return_value=json_data)
        response.text = text
        response.content = content
        response.reason_phrase = reason_phrase
        response.is_success = 200 <= status_code < 300
        return response

    return _create_response


# ============================================================================
# Audio / Engine Fakes
# ============================================================================


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def fake_detector():
    return FakeDetector()


@pytest.fixture
def silent_frame():
    return np.zeros(512, dtype=np.int16)
