"""MQTT transport: telemetry publishing and the control channel."""

import json
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, Optional

import paho.mqtt.client as mqtt

from .commands import Command, CommandError, parse_command
from .config import MQTTConfig
from .scheduler import PublishError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


class MQTTClient:
    """MQTT client publishing telemetry and receiving control commands.

    paho's network loop runs in its own thread (``loop_start``); it delivers
    control messages to ``on_command`` and reports an unexpected loss of the
    connection through ``on_connection_lost``.
    """

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        on_command: Optional[Callable[[Command], None]] = None,
        on_connection_lost: Optional[Callable[[], None]] = None,
    ):
        self.mqtt_config = mqtt_config
        self.on_command = on_command
        self.on_connection_lost = on_connection_lost

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._closing = False
        self._dry_run = False

        # Handed to paho, delivery not yet confirmed
        self._pending: Deque[mqtt.MQTTMessageInfo] = deque()

        # Stats
        self._messages_published = 0
        self._messages_dropped = 0
        self._status_published = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def messages_published(self) -> int:
        return self._messages_published

    @property
    def messages_dropped(self) -> int:
        return self._messages_dropped

    @property
    def status_published(self) -> int:
        return self._status_published

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the MQTT broker and subscribe to the control topic."""
        self._dry_run = dry_run
        self._closing = False

        if dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected.set()
            return True

        cfg = self.mqtt_config
        try:
            self._client = mqtt.Client(
                client_id=cfg.client_id,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )

            if cfg.username:
                self._client.username_pw_set(cfg.username, cfg.password)
            if cfg.use_tls:
                self._client.tls_set()
            self._client.max_queued_messages_set(cfg.capacity)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect
            self._client.on_message = self._on_message

            logger.info(f"Connecting to MQTT broker {cfg.host}:{cfg.port}")
            self._client.connect(cfg.host, cfg.port, keepalive=cfg.keepalive)
            self._client.loop_start()

            if not self._connected.wait(timeout=CONNECT_TIMEOUT):
                logger.error(f"Timed out connecting to {cfg.host}:{cfg.port}")
                self._client.loop_stop()
                return False
            return True

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        self._closing = True

        if self._client and not self._dry_run:
            self._client.disconnect()
            self._client.loop_stop()

        self._connected.clear()
        self._pending.clear()
        logger.info(
            f"Disconnected from MQTT broker ({self._messages_published} published, "
            f"{self._messages_dropped} dropped)"
        )

    def publish(self, topic: str, payload: str, retain: bool = False) -> Optional[mqtt.MQTTMessageInfo]:
        """Hand a telemetry message to paho and return its delivery handle.

        When paho's queue is full (``capacity``), this blocks until the oldest
        outstanding message is delivered and then retries.

        Raises:
            PublishError: paho refused the message, or a message blocking the
                queue was not delivered.
        """
        info = self._send(topic, payload, retain)
        if self._dry_run:
            self._messages_published += 1
        return info

    def _send(self, topic: str, payload: str, retain: bool) -> Optional[mqtt.MQTTMessageInfo]:
        if self._dry_run:
            logger.debug(f"[DRY RUN] {topic}: {payload[:100]}")
            return None

        if not self._client:
            raise PublishError("MQTT client is not connected")

        while True:
            info = self._client.publish(topic, payload, qos=self.mqtt_config.qos, retain=retain)
            if info.rc == mqtt.MQTT_ERR_QUEUE_SIZE and self._pending:
                self._wait_for_oldest()
                continue
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                self._messages_dropped += 1
                raise PublishError(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")
            self._pending.append(info)
            return info

    def _wait_for_oldest(self) -> None:
        """Wait until the oldest pending message leaves paho's queue."""
        self._await_delivery(self._pending.popleft(), self.mqtt_config.publish_timeout)

    def _await_delivery(self, info: mqtt.MQTTMessageInfo, timeout: Optional[float]) -> None:
        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as e:
            self._messages_dropped += 1
            raise PublishError(f"Message {info.mid} not delivered: {e}") from e
        if not info.is_published():
            self._messages_dropped += 1
            raise PublishError(f"Message {info.mid} not delivered within {timeout}s")

    def wait_for_publishes(
        self,
        handles: Iterable[Optional[mqtt.MQTTMessageInfo]],
        timeout: Optional[float] = None,
    ) -> None:
        """Block until every handle is resolved.

        Raises:
            PublishError: a message was not delivered (connection lost or timed out).
        """
        for info in handles:
            if info is None:
                continue
            self._await_delivery(info, timeout)
            self._messages_published += 1

        self._pending = deque(info for info in self._pending if not info.is_published())

    def publish_status(self, status: Dict[str, Any]) -> None:
        """Publish a retained JSON status snapshot; failures are only logged.

        Status messages are counted in ``status_published``, not with telemetry.
        """
        status = {
            **status,
            "messages_published": self._messages_published,
            "messages_dropped": self._messages_dropped,
        }
        try:
            self._send(self.mqtt_config.status_topic, json.dumps(status), retain=True)
        except PublishError as e:
            logger.warning(f"Could not publish status: {e}")
            return
        self._status_published += 1

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle connection callback."""
        if rc == 0:
            self._connected.set()
            logger.info("Connected to MQTT broker")
            client.subscribe(self.mqtt_config.control_topic, qos=self.mqtt_config.qos)
            logger.info(f"Subscribed to control topic: {self.mqtt_config.control_topic}")
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        """Handle disconnection callback."""
        self._connected.clear()
        if self._closing:
            return
        logger.warning(f"Unexpected disconnection (rc={rc})")
        if self.on_connection_lost:
            self.on_connection_lost()

    def _on_message(self, client, userdata, msg) -> None:
        """Handle incoming control messages."""
        if msg.topic != self.mqtt_config.control_topic:
            return

        try:
            text = msg.payload.decode("ascii")
        except UnicodeDecodeError:
            logger.warning(f"Ignoring non-ASCII control message on {msg.topic}")
            return

        try:
            command = parse_command(text)
        except CommandError as e:
            logger.warning(f"Ignoring invalid command {text!r}: {type(e).__name__}: {e}")
            return

        logger.info(f"Received command: {command}")
        if self.on_command:
            self.on_command(command)


def send_command(mqtt_config: MQTTConfig, text: str) -> None:
    """Publish a single command to the control topic and wait for delivery."""
    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    if mqtt_config.username:
        client.username_pw_set(mqtt_config.username, mqtt_config.password)
    if mqtt_config.use_tls:
        client.tls_set()

    client.connect(mqtt_config.host, mqtt_config.port)
    client.loop_start()
    try:
        result = client.publish(mqtt_config.control_topic, text, qos=1)
        result.wait_for_publish(timeout=CONNECT_TIMEOUT)
    finally:
        client.disconnect()
        client.loop_stop()
