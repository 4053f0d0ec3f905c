"""paho-mqtt transport for the session bridge.

Subscriptions are remembered and replayed whenever the broker connection is
re-established, so a broker restart does not silently drop remote commands.
"""

from __future__ import annotations

import logging
import ssl
import threading
from collections.abc import Callable

import paho.mqtt.client as mqtt

from .config import MqttConfig

LOGGER = logging.getLogger("tornade-assistant.mqtt")

PayloadHandler = Callable[[str], None]

KEEPALIVE_SECONDS = 30


class SessionMqttClient:
    """Owns one paho client and routes incoming payloads to per-topic handlers."""

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or LOGGER
        self._client: mqtt.Client | None = None
        self._handlers: dict[str, PayloadHandler] = {}
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Connect and start the network loop; failures are logged, never raised."""
        if not self.config.host:
            self._logger.debug("[mqtt] No broker configured; session bridge disabled")
            return
        with self._lock:
            if self._client is not None:
                return
            client = self._build_client()
            try:
                client.connect(self.config.host, self.config.port, keepalive=KEEPALIVE_SECONDS)
            except (OSError, ValueError) as exc:
                self._logger.warning("[mqtt] Failed to connect to %s:%s: %s", self.config.host, self.config.port, exc)
                return
            client.loop_start()
            self._client = client
        self._logger.info("[mqtt] Connected to %s:%s", self.config.host, self.config.port)

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"tornade-assistant-{self.config.topic_base}",
            clean_session=True,
        )
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password or "")
        if self.config.tls_enabled:
            client.tls_set(tls_version=ssl.PROTOCOL_TLS_CLIENT, **self._tls_files())
        client.on_connect = self._on_connect
        client.on_message = self._on_message
        return client

    def _tls_files(self) -> dict[str, str]:
        files = {
            "ca_certs": self.config.ca_cert,
            "certfile": self.config.cert,
            "keyfile": self.config.key,
        }
        return {name: path for name, path in files.items() if path}

    def disconnect(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        client.loop_stop()
        client.disconnect()

    def is_connected(self) -> bool:
        client = self._client
        if client is None:
            return False
        try:
            return bool(client.is_connected())
        except (OSError, RuntimeError):
            return False

    def publish(self, topic: str, payload: str, retain: bool = False) -> None:
        """Fire-and-forget publish; a missing connection drops the message."""
        client = self._client
        if client is None:
            return
        info = client.publish(topic, payload=payload, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("[mqtt] Dropped message for %s (rc=%s)", topic, info.rc)

    def subscribe(self, topic: str, handler: PayloadHandler) -> None:
        client = self._client
        if client is None:
            raise RuntimeError("MQTT client is not connected")
        self._handlers[topic] = handler
        self._send_subscribe(client, topic)

    def _send_subscribe(self, client: mqtt.Client, topic: str) -> None:
        result, _mid = client.subscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Failed to subscribe to %s (rc=%s)", topic, result)

    def _on_connect(self, client, _userdata, _flags, reason_code, _properties=None) -> None:  # type: ignore[no-untyped-def]
        if reason_code.is_failure:
            self._logger.warning("[mqtt] Broker refused connection: %s", reason_code)
            return
        for topic in list(self._handlers):
            self._send_subscribe(client, topic)

    def _on_message(self, _client, _userdata, message) -> None:  # type: ignore[no-untyped-def]
        handler = self._handlers.get(message.topic)
        if handler is None:
            return
        text = message.payload.decode("utf-8", errors="ignore")
        try:
            handler(text)
        except Exception:
            self._logger.exception("[mqtt] Handler for %s failed", message.topic)
