"""MQTT transport for MQTT Shell.

Thin wrapper over paho-mqtt: connect, subscribe, publish, automatic
reconnect. The agent and controller only see "bytes arrived on a topic"
and "send bytes to a topic".
"""

import logging
import threading
from typing import Callable, Dict, Optional, Tuple

import paho.mqtt.client as mqtt

from .config import ShellConfig
from .errors import BrokerConnectionError, PublishError
from .protocol import QOS

log = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], None]

KEEPALIVE = 60  # seconds
PUBLISH_TIMEOUT = 10.0  # seconds


class MQTTTransport:
    """Connected MQTT session with re-subscription on reconnect."""

    def __init__(self, config: ShellConfig, client: Optional[mqtt.Client] = None):
        """Initialize transport.

        Args:
            config: Validated shell configuration
            client: Pre-built paho client (tests)
        """
        self.config = config
        self.broker = config.broker
        self._subscriptions: Dict[str, Tuple[int, MessageHandler]] = {}
        self._lock = threading.Lock()
        self._connected = threading.Event()
        self._connect_error: Optional[str] = None

        self.on_connection_lost: Optional[Callable[[str], None]] = None

        self.client = client or self._build_client()
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.client_id,
            clean_session=True,
            transport=self.broker.transport,
        )
        if self.broker.transport == "websockets":
            client.ws_set_options(path=self.broker.path)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        if self.config.tls_enabled:
            client.tls_set_context(self.config.tls_context())
        client.reconnect_delay_set(min_delay=1, max_delay=60)
        return client

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def connect(self, timeout: float = 10.0) -> None:
        """Connect and wait for the broker to accept the session.

        Raises:
            BrokerConnectionError: On socket failure, refusal or timeout
        """
        log.info(f"Connecting to MQTT broker {self.broker.host}:{self.broker.port}")
        self._connect_error = None
        try:
            self.client.connect(self.broker.host, self.broker.port, keepalive=KEEPALIVE)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(f"failed to connect: {e}") from e

        self.client.loop_start()

        if not self._connected.wait(timeout):
            self.client.loop_stop()
            reason = self._connect_error or f"no CONNACK within {timeout:g}s"
            raise BrokerConnectionError(f"failed to connect: {reason}")

    def disconnect(self) -> None:
        """Disconnect and stop the network loop."""
        self.client.disconnect()
        self.client.loop_stop()
        self._connected.clear()

    def subscribe(self, topic: str, handler: MessageHandler, qos: int = QOS) -> None:
        """Register handler for topic; re-applied after every reconnect."""
        with self._lock:
            self._subscriptions[topic] = (qos, handler)
        if self.is_connected:
            self._subscribe(topic, qos)

    def _subscribe(self, topic: str, qos: int) -> None:
        result, _ = self.client.subscribe(topic, qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            log.error(f"Failed to subscribe to {topic}: {mqtt.error_string(result)}")
            return
        log.info(f"Subscribed to: {topic}")

    def publish(self, topic: str, payload: bytes, qos: int = QOS) -> None:
        """Publish payload and wait for the transport to complete it.

        Raises:
            PublishError: If the message is rejected or not completed in time
        """
        info = self.client.publish(topic, payload, qos=qos, retain=False)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")
        try:
            info.wait_for_publish(timeout=PUBLISH_TIMEOUT)
        except (RuntimeError, ValueError) as e:
            raise PublishError(f"publish to {topic} failed: {e}") from e
        if not info.is_published():
            raise PublishError(f"publish to {topic} timed out")

    # paho callbacks (network thread)

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self._connect_error = str(reason_code)
            log.error(f"Broker refused connection: {reason_code}")
            return

        log.info("Connected to MQTT broker")
        self._connected.set()
        with self._lock:
            subscriptions = dict(self._subscriptions)
        for topic, (qos, _) in subscriptions.items():
            self._subscribe(topic, qos)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        was_connected = self._connected.is_set()
        self._connected.clear()
        if not was_connected:
            return
        if reason_code.is_failure:
            log.warning(f"Connection lost: {reason_code}")
            log.info("Will attempt to reconnect...")
            if self.on_connection_lost:
                self.on_connection_lost(str(reason_code))
        else:
            log.info("Disconnected from MQTT broker")

    def _on_message(self, client, userdata, message) -> None:
        with self._lock:
            entry = self._subscriptions.get(message.topic)
        if entry is None:
            log.debug(f"Ignoring message on unexpected topic {message.topic}")
            return
        _, handler = entry
        try:
            handler(message.payload)
        except Exception:
            # never let a handler bug kill paho's network thread
            log.exception(f"Handler for {message.topic} failed")
