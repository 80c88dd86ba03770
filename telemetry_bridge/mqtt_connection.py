"""MQTT connection backed by paho-mqtt.

Speaks MQTT v5 so federation markers travel as user properties. paho's own
automatic reconnect is left unused: the Connection Supervisor owns the
reconnect policy and a fresh client is built on every ``connect``.

Inbound messages use manual acknowledgement. The message callback runs on
paho's network thread and blocks while the inbound channel is full, so the
broker stops receiving acks (and the socket stops being read) until the
pipeline catches up.
"""

import threading
from typing import Any, Callable

import paho.mqtt.client as mqtt
import structlog
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from telemetry_bridge.errors import (
    PermanentMessageError,
    TransientConnectionError,
    TransientProduceError,
)
from telemetry_bridge.guarantees import (
    HEADER_DESTINATION,
    HEADER_HOPS,
    HEADER_ORIGIN,
    level_from_qos,
    mqtt_qos,
)
from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message
from telemetry_bridge.topics import validate_topic

log = structlog.get_logger()

MAX_PAYLOAD_BYTES = 268_435_455


def parse_address(address: str, default_port: int = 1883) -> tuple[str, int]:
    """Split "host:port" (or "mqtt://host:port") into its parts."""
    address = address.removeprefix("mqtt://").removeprefix("tcp://")
    host, _, port = address.rpartition(":")
    if not host:
        return address, default_port
    return host, int(port)


def to_user_properties(message: Message) -> list[tuple[str, str]]:
    props = [(HEADER_HOPS, str(message.hop_count))]
    if message.origin:
        props.append((HEADER_ORIGIN, message.origin))
    return props


def from_properties(properties: Any) -> dict[str, Any]:
    """Read federation markers and correlation data off an inbound publish."""
    result: dict[str, Any] = {}
    if properties is None:
        return result

    for key, value in getattr(properties, "UserProperty", None) or []:
        if key == HEADER_ORIGIN:
            result["origin"] = value
        elif key == HEADER_HOPS:
            try:
                result["hop_count"] = int(value)
            except ValueError:
                log.warning("invalid_hop_count_property", value=value)
        elif key == HEADER_DESTINATION:
            result["destination"] = value

    correlation = getattr(properties, "CorrelationData", None)
    if correlation:
        result["correlation_id"] = correlation.decode("utf-8", errors="replace")
    return result


class MqttConnection:
    """One MQTT client connection, supervised from outside."""

    def __init__(
        self,
        address: str,
        client_id: str,
        credentials: tuple[str, str] | None = None,
        session_persistence: bool = True,
        keepalive: int = 60,
        session_expiry_seconds: int = 3600,
        connect_timeout: float = 10.0,
        publish_timeout: float = 30.0,
    ) -> None:
        self.address = address
        self.host, self.port = parse_address(address)
        self.client_id = client_id
        self.name = f"mqtt:{client_id}@{address}"
        self.credentials = credentials
        self.session_persistence = session_persistence
        self.keepalive = keepalive
        self.session_expiry_seconds = session_expiry_seconds
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout

        self._client: mqtt.Client | None = None
        self._connected = False
        self._closing = False
        self._lock = threading.Lock()
        self._handler: Callable[[InboundDelivery], None] | None = None
        self._lost_handler: Callable[[str], None] | None = None

    def set_message_handler(self, handler: Callable[[InboundDelivery], None]) -> None:
        self._handler = handler

    def set_connection_lost_handler(self, handler: Callable[[str], None]) -> None:
        self._lost_handler = handler

    def connect(self) -> bool:
        self._teardown()

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
            manual_ack=True,
        )
        if self.credentials:
            client.username_pw_set(*self.credentials)

        connected = threading.Event()
        outcome: dict[str, Any] = {}

        def on_connect(client, userdata, flags, reason_code, properties):
            outcome["session_present"] = bool(flags.session_present)
            outcome["reason_code"] = reason_code
            connected.set()

        client.on_connect = on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        properties = Properties(PacketTypes.CONNECT)
        if self.session_persistence:
            properties.SessionExpiryInterval = self.session_expiry_seconds

        try:
            client.connect(
                self.host,
                self.port,
                keepalive=self.keepalive,
                clean_start=not self.session_persistence,
                properties=properties,
            )
        except (OSError, ValueError) as e:
            raise TransientConnectionError(f"{self.address}: {e}") from e

        client.loop_start()
        if not connected.wait(self.connect_timeout):
            client.loop_stop()
            raise TransientConnectionError(f"{self.address}: handshake timed out")

        reason_code = outcome["reason_code"]
        if reason_code.is_failure:
            client.loop_stop()
            raise TransientConnectionError(f"{self.address}: connection refused ({reason_code})")

        with self._lock:
            self._client = client
            self._connected = True
            self._closing = False
        log.info(
            "mqtt_connected",
            address=self.address,
            client_id=self.client_id,
            session_present=outcome["session_present"],
        )
        return outcome["session_present"]

    def disconnect(self) -> None:
        self._teardown()

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected and self._client is not None and self._client.is_connected()

    def subscribe(self, pattern: str, guarantee: GuaranteeLevel) -> None:
        client = self._require_client()
        result, _ = client.subscribe(pattern, qos=mqtt_qos(guarantee))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransientConnectionError(
                f"subscribe {pattern!r} failed: {mqtt.error_string(result)}"
            )

    def unsubscribe(self, pattern: str) -> None:
        client = self._require_client()
        result, _ = client.unsubscribe(pattern)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransientConnectionError(
                f"unsubscribe {pattern!r} failed: {mqtt.error_string(result)}"
            )

    def publish(self, message: Message, topic: str, wait: bool) -> None:
        validate_topic(topic)
        if len(message.payload) > MAX_PAYLOAD_BYTES:
            raise PermanentMessageError(
                f"Payload of {len(message.payload)} bytes exceeds MQTT limit"
            )
        client = self._require_client()

        properties = Properties(PacketTypes.PUBLISH)
        properties.UserProperty = to_user_properties(message)
        if message.correlation_id:
            properties.CorrelationData = message.correlation_id.encode("utf-8")

        try:
            info = client.publish(
                topic,
                message.payload,
                qos=mqtt_qos(message.guarantee),
                retain=message.retained,
                properties=properties,
            )
        except ValueError as e:
            raise PermanentMessageError(f"publish to {topic!r} rejected: {e}") from e

        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            raise TransientConnectionError(f"{self.address}: not connected")
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransientProduceError(f"publish failed: {mqtt.error_string(info.rc)}")

        if not wait:
            return
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except RuntimeError as e:
            raise TransientConnectionError(f"{self.address}: {e}") from e
        if not info.is_published():
            raise TransientProduceError(f"publish to {topic!r} not confirmed in time")

    def _require_client(self) -> mqtt.Client:
        with self._lock:
            if self._client is None or not self._connected:
                raise TransientConnectionError(f"{self.address}: not connected")
            return self._client

    def _teardown(self) -> None:
        with self._lock:
            client, self._client = self._client, None
            self._connected = False
            self._closing = True
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        with self._lock:
            if client is not self._client:
                return
            self._connected = False
            expected = self._closing
        if not expected and self._lost_handler is not None:
            self._lost_handler(f"disconnected ({reason_code})")

    def _on_message(self, client, userdata, msg) -> None:
        if self._handler is None:
            return

        markers = from_properties(getattr(msg, "properties", None))
        message = Message(
            topic=msg.topic,
            payload=bytes(msg.payload),
            guarantee=level_from_qos(msg.qos),
            retained=bool(msg.retain),
            correlation_id=markers.get("correlation_id"),
            destination=markers.get("destination"),
            source_client=self.client_id,
            sequence=msg.mid if msg.qos > 0 else None,
            origin=markers.get("origin"),
            hop_count=markers.get("hop_count", 0),
        )

        ack = None
        if msg.qos > 0:
            mid, qos = msg.mid, msg.qos

            def ack() -> None:
                client.ack(mid, qos)

        self._handler(InboundDelivery(message, ack))
