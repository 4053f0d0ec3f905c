"""
Voice session pipeline for Tornade

This package provides the wake-word driven voice loop:

- Wake word detection: Porcupine keyword spotting on a worker thread
- Audio capture: PortAudio microphone stream with level metering
- Speech recognition: HTTP upload of the recorded utterance
- Dialogue: Ollama-style chat with a server-control tool
- Speech synthesis: HTTP TTS played through aplay/pw-play/paplay
- Session control: the state machine tying it all together
- MQTT bridge: status/messages out, start/stop/edit/delete in

Key modules:
- config: Configuration management from environment variables
- session: SessionController and the message log
- llm: DialogueEngine and tool-call parsing
- tools: Server-control dispatcher
"""

from __future__ import annotations

__all__ = [
    "audio",
    "config",
    "errors",
    "llm",
    "mqtt",
    "mqtt_bridge",
    "recorder",
    "session",
    "speech",
    "tools",
    "transcription",
    "wake_detector",
]
