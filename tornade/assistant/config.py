"""Configuration helpers for the Tornade voice assistant."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path

from tornade.utils import (
    parse_bool,
    parse_float,
    parse_int,
    parse_optional_float,
    strip_or_none,
)

DEFAULT_WAKE_KEYWORD = "Tornade"
DEFAULT_KEYWORD_PATH = "porcupine/tornade.ppn"
DEFAULT_MODEL_PATH = "porcupine/porcupine_params.pv"

DEFAULT_TRANSCRIBE_URL = "http://localhost:8000/transcribe"
DEFAULT_CHAT_URL = "http://localhost:11434/api/chat"
DEFAULT_CHAT_MODEL = "llama3"
DEFAULT_TTS_URL = "http://localhost:5000/tts"
DEFAULT_CONTROL_URL = "http://localhost:8080/api/mcpo"

# Hard ceiling on a single utterance; the env var can only shorten it.
MAX_RECORDING_SECONDS = 5.0


@dataclass(frozen=True)
class MicConfig:
    rate: int
    channels: int
    block_size: int
    device: str | None
    fft_size: int


@dataclass(frozen=True)
class WakeConfig:
    keyword: str
    keyword_path: Path
    model_path: Path
    access_key: str | None
    sensitivity: float


@dataclass(frozen=True)
class PhraseConfig:
    min_seconds: float
    max_seconds: float
    silence_ms: int
    rms_floor: int


@dataclass(frozen=True)
class ServiceConfig:
    transcribe_url: str
    tts_url: str
    control_url: str
    timeout: float | None


@dataclass(frozen=True)
class LLMConfig:
    chat_url: str
    model: str
    system_prompt: str


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class AssistantConfig:
    hostname: str
    mic: MicConfig
    wake: WakeConfig
    phrase: PhraseConfig
    services: ServiceConfig
    llm: LLMConfig
    mqtt: MqttConfig
    audio_player: str | None
    log_transcripts: bool

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> AssistantConfig:
        source = env if env is not None else os.environ
        hostname = source.get("TORNADE_HOSTNAME") or socket.gethostname()

        mic = MicConfig(
            rate=parse_int(source.get("TORNADE_MIC_RATE"), 16000),
            channels=max(1, parse_int(source.get("TORNADE_MIC_CHANNELS"), 1)),
            block_size=max(1, parse_int(source.get("TORNADE_MIC_BLOCK_SIZE"), 512)),
            device=strip_or_none(source.get("TORNADE_MIC_DEVICE")),
            fft_size=max(2, parse_int(source.get("TORNADE_MIC_FFT_SIZE"), 256)),
        )

        sensitivity = parse_float(source.get("TORNADE_WAKE_SENSITIVITY"), 0.5)
        wake = WakeConfig(
            keyword=strip_or_none(source.get("TORNADE_WAKE_KEYWORD")) or DEFAULT_WAKE_KEYWORD,
            keyword_path=Path(source.get("TORNADE_WAKE_KEYWORD_PATH") or DEFAULT_KEYWORD_PATH),
            model_path=Path(source.get("TORNADE_WAKE_MODEL_PATH") or DEFAULT_MODEL_PATH),
            access_key=strip_or_none(source.get("PICOVOICE_ACCESS_KEY")),
            sensitivity=max(0.0, min(1.0, sensitivity)),
        )

        max_seconds = parse_float(source.get("TORNADE_MAX_PHRASE_SECONDS"), MAX_RECORDING_SECONDS)
        phrase = PhraseConfig(
            min_seconds=max(0.0, parse_float(source.get("TORNADE_MIN_PHRASE_SECONDS"), 1.0)),
            max_seconds=min(MAX_RECORDING_SECONDS, max(0.1, max_seconds)),
            silence_ms=max(0, parse_int(source.get("TORNADE_SILENCE_MS"), 0)),
            rms_floor=parse_int(source.get("TORNADE_RMS_THRESHOLD"), 120),
        )

        services = ServiceConfig(
            transcribe_url=source.get("TORNADE_TRANSCRIBE_URL") or DEFAULT_TRANSCRIBE_URL,
            tts_url=source.get("TORNADE_TTS_URL") or DEFAULT_TTS_URL,
            control_url=(source.get("TORNADE_CONTROL_URL") or DEFAULT_CONTROL_URL).rstrip("/"),
            timeout=parse_optional_float(source.get("TORNADE_HTTP_TIMEOUT_SECONDS")),
        )

        system_prompt = source.get("TORNADE_SYSTEM_PROMPT", "").strip()
        prompt_file = source.get("TORNADE_SYSTEM_PROMPT_FILE")
        if not system_prompt and prompt_file:
            candidate = Path(prompt_file)
            if candidate.is_file():
                system_prompt = candidate.read_text(encoding="utf-8").strip()
        if not system_prompt:
            system_prompt = DEFAULT_SYSTEM_PROMPT

        llm = LLMConfig(
            chat_url=source.get("TORNADE_CHAT_URL") or DEFAULT_CHAT_URL,
            model=source.get("TORNADE_CHAT_MODEL") or DEFAULT_CHAT_MODEL,
            system_prompt=system_prompt,
        )

        topic_base = source.get("TORNADE_TOPIC_BASE") or f"tornade/{hostname}"
        mqtt = MqttConfig(
            host=strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=strip_or_none(source.get("MQTT_CERT")),
            key=strip_or_none(source.get("MQTT_KEY")),
            ca_cert=strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        return AssistantConfig(
            hostname=hostname,
            mic=mic,
            wake=wake,
            phrase=phrase,
            services=services,
            llm=llm,
            mqtt=mqtt,
            audio_player=strip_or_none(source.get("TORNADE_AUDIO_PLAYER")),
            log_transcripts=parse_bool(source.get("TORNADE_LOG_TRANSCRIPTS"), True),
        )


DEFAULT_SYSTEM_PROMPT = """You are JARVIS, a witty AI assistant from Iron Man. Respond concisely with dry humor.
You have access to a tool to control servers. When a user asks to list, start, or stop a server, you must respond ONLY with a JSON object for the 'controlServer' tool.
Do not add any other text or explanation. The JSON object should have 'toolName' and 'arguments'.

Example user request: "Tornade, start the web server"
Your response: {"toolName": "controlServer", "arguments": {"command": "start", "server_name": "web"}}

Example user request: "list servers"
Your response: {"toolName": "controlServer", "arguments": {"command": "list"}}"""
