#!/usr/bin/env python3
"""Tornade voice assistant daemon."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from tornade.assistant.audio import AplaySink
from tornade.assistant.config import AssistantConfig
from tornade.assistant.llm import DialogueEngine
from tornade.assistant.mqtt import SessionMqttClient
from tornade.assistant.mqtt_bridge import SessionMqttBridge
from tornade.assistant.session import SessionController, SessionSnapshot, SessionStatus
from tornade.assistant.speech import SpeechSynthesisPlayer
from tornade.assistant.tools import ToolDispatcher
from tornade.assistant.transcription import TranscriptionClient

LOGGER = logging.getLogger("tornade-assistant")


def _log_errors(snapshot: SessionSnapshot) -> None:
    if snapshot.status is SessionStatus.ERROR:
        LOGGER.error("Session stopped with error: %s (publish 'stop' then 'start' to restart)", snapshot.error)


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument(
        "--no-autostart",
        action="store_true",
        help="wait for an MQTT 'start' command instead of starting immediately",
    )
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = AssistantConfig.from_env()
    timeout = config.services.timeout
    dispatcher = ToolDispatcher(config.services.control_url, timeout=timeout)
    transcriber = TranscriptionClient(config.services.transcribe_url, timeout=timeout)
    dialogue = DialogueEngine(config.llm, dispatcher, timeout=timeout)
    speech = SpeechSynthesisPlayer(
        config.services.tts_url,
        sink=AplaySink(config.audio_player),
        timeout=timeout,
    )
    controller = SessionController(config, transcriber=transcriber, dialogue=dialogue, speech=speech)
    controller.add_listener(_log_errors)

    loop = asyncio.get_running_loop()
    bridge = SessionMqttBridge(controller, SessionMqttClient(config.mqtt), config.mqtt.topic_base, loop)
    bridge.attach()

    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    if not args.no_autostart:
        await controller.start_session()
    await stop_event.wait()

    await controller.stop_session()
    bridge.detach()
    for client in (transcriber, dialogue, dispatcher, speech):
        with contextlib.suppress(Exception):
            await client.aclose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
