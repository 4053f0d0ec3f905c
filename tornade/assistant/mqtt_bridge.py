"""Mirror session state to MQTT and accept remote session commands.

Topics (relative to ``topic_base``):

- ``session/status``: retained status string
- ``session/error``: retained error text, empty when cleared
- ``session/messages``: retained JSON list of displayed messages
- ``session/command``: ``start`` or ``stop``
- ``session/messages/edit``: JSON ``{"id": ..., "text": ...}``
- ``session/messages/delete``: message id
"""

from __future__ import annotations

import asyncio
import json
import logging
from concurrent.futures import Future
from typing import TYPE_CHECKING

from .errors import AssistantError

if TYPE_CHECKING:
    from .mqtt import SessionMqttClient
    from .session import SessionController, SessionSnapshot

LOGGER = logging.getLogger("tornade-assistant.mqtt_bridge")


class SessionMqttBridge:
    def __init__(
        self,
        controller: SessionController,
        mqtt: SessionMqttClient,
        topic_base: str,
        loop: asyncio.AbstractEventLoop,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller
        self.mqtt = mqtt
        self.loop = loop
        self.logger = logger or LOGGER
        base = topic_base.rstrip("/")
        self.status_topic = f"{base}/session/status"
        self.error_topic = f"{base}/session/error"
        self.messages_topic = f"{base}/session/messages"
        self.command_topic = f"{base}/session/command"
        self.edit_topic = f"{base}/session/messages/edit"
        self.delete_topic = f"{base}/session/messages/delete"
        self._last_status: str | None = None
        self._last_error: str | None = None
        self._last_messages: str | None = None
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        self.mqtt.connect()
        if not self.mqtt.is_connected():
            self.logger.debug("[mqtt] Bridge inactive; MQTT is not connected")
            return
        self.mqtt.subscribe(self.command_topic, self._on_command)
        self.mqtt.subscribe(self.edit_topic, self._on_edit)
        self.mqtt.subscribe(self.delete_topic, self._on_delete)
        self.controller.add_listener(self.publish_snapshot)
        self._attached = True
        self.publish_snapshot(self.controller.snapshot())

    def detach(self) -> None:
        if self._attached:
            self.controller.remove_listener(self.publish_snapshot)
            self._attached = False
        self.mqtt.disconnect()

    def publish_snapshot(self, snapshot: SessionSnapshot) -> None:
        status = snapshot.status.value
        if status != self._last_status:
            self.mqtt.publish(self.status_topic, status, retain=True)
            self._last_status = status
        error = snapshot.error or ""
        if error != self._last_error:
            self.mqtt.publish(self.error_topic, error, retain=True)
            self._last_error = error
        messages = json.dumps([message.to_dict() for message in snapshot.messages])
        if messages != self._last_messages:
            self.mqtt.publish(self.messages_topic, messages, retain=True)
            self._last_messages = messages

    # Callbacks below run on the paho network thread.

    def _on_command(self, payload: str) -> None:
        command = payload.strip().lower()
        if command == "start":
            future = asyncio.run_coroutine_threadsafe(self.controller.start_session(), self.loop)
        elif command == "stop":
            future = asyncio.run_coroutine_threadsafe(self.controller.stop_session(), self.loop)
        else:
            self.logger.warning("[mqtt] Unknown session command: %s", payload)
            return
        future.add_done_callback(self._log_command_result)

    def _on_edit(self, payload: str) -> None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            self.logger.warning("[mqtt] Ignoring malformed edit payload: %s", payload)
            return
        if not isinstance(data, dict):
            self.logger.warning("[mqtt] Ignoring malformed edit payload: %s", payload)
            return
        message_id = data.get("id")
        text = data.get("text")
        if not isinstance(message_id, str) or not isinstance(text, str):
            self.logger.warning("[mqtt] Edit payload needs string 'id' and 'text'")
            return
        self.loop.call_soon_threadsafe(self.controller.edit_message, message_id, text)

    def _on_delete(self, payload: str) -> None:
        message_id = payload.strip()
        if not message_id:
            return
        self.loop.call_soon_threadsafe(self.controller.delete_message, message_id)

    def _log_command_result(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, AssistantError):
            self.logger.warning("[mqtt] Session command rejected: %s", exc)
        elif exc is not None:
            self.logger.error("[mqtt] Session command failed", exc_info=exc)
