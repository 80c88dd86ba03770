"""
Transport boundaries for the bridge.

The bridge talks to two black-box brokers:
- a publish/subscribe broker (MQTT in production)
- an append-only partitioned log (Kafka in production)

The Protocol pattern lets the supervisor, adapters and pipelines work with
any backend (paho-mqtt, confluent-kafka, or the in-memory transports used
for local runs and tests) without knowing the implementation details.

Every implementation raises only the bridge's own exception taxonomy:
TransientConnectionError, TransientProduceError and PermanentMessageError.
"""

from dataclasses import dataclass, field
from threading import Event
from typing import Callable, Iterator, Protocol

from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message


@dataclass(frozen=True)
class ProduceAck:
    """Log transport acknowledgement of a durable record."""
    topic: str
    partition: int
    offset: int
    duplicate: bool = False


@dataclass(frozen=True)
class LogRecord:
    """A record read back from the log transport."""
    key: str
    payload: bytes
    topic: str
    partition: int
    offset: int
    headers: dict[str, str] = field(default_factory=dict)


class Connection(Protocol):
    """
    What a Connection Supervisor needs from any connection.

    - connect: handshake; returns True when the broker resumed a session
    - disconnect: deliberate close
    - is_connected: cheap liveness check polled as a heartbeat
    - set_connection_lost_handler: register a callback for transport drops
    """

    name: str

    def connect(self) -> bool:
        """Connect, raising TransientConnectionError on failure."""
        ...

    def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    def set_connection_lost_handler(self, handler: Callable[[str], None]) -> None:
        ...


class PubSubConnection(Connection, Protocol):
    """Connection to the publish/subscribe broker."""

    client_id: str

    def subscribe(self, pattern: str, guarantee: GuaranteeLevel) -> None:
        ...

    def unsubscribe(self, pattern: str) -> None:
        ...

    def publish(self, message: Message, topic: str, wait: bool) -> None:
        """Publish ``message`` to ``topic``.

        With ``wait`` the call returns only once the broker completed the
        QoS handshake for the message.
        """
        ...

    def set_message_handler(self, handler: Callable[[InboundDelivery], None]) -> None:
        ...


class LogTransport(Connection, Protocol):
    """Connection to the log transport."""

    def produce(
        self,
        key: str,
        payload: bytes,
        headers: dict[str, str],
        idempotency_key: str | None = None,
        wait: bool = True,
    ) -> ProduceAck | None:
        """Append a record; returns the ack when ``wait`` is set."""
        ...

    def consume(self, group: str, pattern: str, stop: Event) -> Iterator[LogRecord]:
        """Yield records whose key matches ``pattern`` until ``stop`` is set.

        Restartable: a new call resumes from the group's committed offsets.
        """
        ...

    def acknowledge(self, record: LogRecord) -> None:
        """Commit consumer progress past ``record``."""
        ...
