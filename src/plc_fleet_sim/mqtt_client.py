"""MQTT transport: paho-mqtt client wrapper used by the publisher and consumer."""

import logging
import threading
import time
from typing import Callable, Dict, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .errors import TransportError

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], None]

# Control topics live outside the per-equipment data topics
CONTROL_ROOT = "plc-sim"
STATE_CONTROL_PREFIX = f"{CONTROL_ROOT}/control/state/"
STATE_CONTROL_TOPIC = f"{STATE_CONTROL_PREFIX}+"


def state_control_topic(equipment_id: str) -> str:
    return f"{STATE_CONTROL_PREFIX}{equipment_id}"


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        client_id=client_id,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )


class MqttTransport:
    """Thin blocking-connect wrapper around a paho client.

    Reconnection is not handled here: an unexpected disconnect stops the
    network loop and reports through ``on_connection_lost`` so the owner can
    apply its own backoff.
    """

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        client_id: Optional[str] = None,
        client_factory: Optional[Callable[[str], mqtt.Client]] = None,
    ):
        self.mqtt_config = mqtt_config
        self.client_id = client_id or mqtt_config.client_id
        self.client_factory = client_factory or _default_client_factory
        self.on_connection_lost: Optional[Callable[[str], None]] = None

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._refused_rc = None
        self._closing = False
        self._subscriptions: Dict[str, MessageCallback] = {}

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def endpoint(self) -> str:
        return f"{self.mqtt_config.broker}:{self.mqtt_config.port}"

    def connect(self) -> None:
        """Connect and wait for the broker's acknowledgement.

        Raises:
            TransportError: the broker refused or did not answer within
                ``connect_timeout_s``.
        """
        self._release_client()
        self._closing = False

        client = self.client_factory(self.client_id)
        if self.mqtt_config.username:
            client.username_pw_set(self.mqtt_config.username, self.mqtt_config.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client

        logger.info(f"Connecting to MQTT broker {self.endpoint}")
        try:
            client.connect(
                self.mqtt_config.broker,
                self.mqtt_config.port,
                keepalive=self.mqtt_config.keepalive,
            )
        except (OSError, ValueError) as e:
            self._client = None
            raise TransportError(f"cannot connect to {self.endpoint}: {e}")

        self._refused_rc = None
        client.loop_start()

        # Wait for CONNACK
        timeout = self.mqtt_config.connect_timeout_s
        start = time.time()
        while not self.connected and self._refused_rc is None and (time.time() - start) < timeout:
            time.sleep(0.1)

        refused = self._refused_rc
        if refused is not None:
            self._release_client()
            raise TransportError(f"connection refused by {self.endpoint} (rc={refused})")
        if not self.connected:
            self._release_client()
            raise TransportError(f"no CONNACK from {self.endpoint} within {timeout}s")

    def publish(self, topic: str, payload: str) -> None:
        """Hand one payload to paho; raises TransportError when it is refused."""
        client = self._client
        if client is None or not self.connected:
            raise TransportError(f"not connected to {self.endpoint}")

        try:
            result = client.publish(topic, payload, qos=self.mqtt_config.qos)
        except (OSError, ValueError, RuntimeError) as e:
            raise TransportError(f"error publishing to {topic}: {e}")

        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"failed to publish to {topic}: rc={result.rc}")

    def subscribe(self, topic: str, callback: MessageCallback) -> None:
        """Register ``callback(topic, payload)``; subscriptions survive reconnects."""
        self._subscriptions[topic] = callback
        if self._client is not None and self.connected:
            self._client.subscribe(topic, qos=self.mqtt_config.qos)
            logger.info(f"Subscribed to {topic}")

    def close(self) -> None:
        self._closing = True
        self._release_client()
        logger.info(f"Disconnected from MQTT broker {self.endpoint}")

    def _release_client(self) -> None:
        client = self._client
        self._client = None
        self._connected.clear()
        if client is None:
            return
        client.loop_stop()
        client.disconnect()

    # -------------------------------------------------------------------------
    # paho callbacks
    # -------------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        if rc == 0:
            self._refused_rc = None
            self._connected.set()
            logger.info(f"Connected to MQTT broker {self.endpoint}")
            for topic in self._subscriptions:
                client.subscribe(topic, qos=self.mqtt_config.qos)
        else:
            self._refused_rc = rc
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        was_connected = self.connected
        self._connected.clear()
        if self._closing or client is not self._client:
            return

        logger.warning(f"Unexpected disconnection (rc={rc})")
        # Stop paho's own reconnect attempts; the owner decides when to retry
        client.loop_stop()
        if was_connected and self.on_connection_lost:
            self.on_connection_lost(f"connection lost (rc={rc})")

    def _on_message(self, client, userdata, msg) -> None:
        for pattern, callback in list(self._subscriptions.items()):
            if mqtt.topic_matches_sub(pattern, msg.topic):
                try:
                    callback(msg.topic, msg.payload)
                except Exception as e:
                    logger.error(f"Error handling message on {msg.topic}: {e}")
