"""
In-memory transports.

Used for local runs without brokers and as the fault-injectable doubles in
the test suite. Both follow the same contracts as the paho-mqtt and
confluent-kafka implementations:

- MemoryBroker / MemoryPubSubConnection: topic fan-out with QoS downgrade,
  persistent sessions, redelivery of unacknowledged messages on resume
- MemoryLog / MemoryLogTransport: partitioned append-only log with durable
  idempotency keys and consumer-group offsets
"""

import itertools
import threading
import zlib
from dataclasses import dataclass, field
from threading import Event
from typing import Callable, Iterator

import structlog

from telemetry_bridge.errors import (
    PermanentMessageError,
    TransientConnectionError,
    TransientProduceError,
)
from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message
from telemetry_bridge.topics import matches, validate_pattern, validate_topic
from telemetry_bridge.transports import LogRecord, ProduceAck

log = structlog.get_logger()


@dataclass
class _Session:
    subscriptions: dict[str, GuaranteeLevel] = field(default_factory=dict)
    unacked: dict[int, Message] = field(default_factory=dict)


class MemoryBroker:
    """A pub/sub broker living in the current process."""

    def __init__(self, name: str = "memory-broker", max_payload: int = 268_435_455) -> None:
        self.name = name
        self.max_payload = max_payload
        self.available = True
        self.publish_failures = 0
        self.published: list[Message] = []
        self.acked: list[Message] = []
        self.retained: dict[str, Message] = {}
        self._sessions: dict[str, _Session] = {}
        self._clients: dict[str, "MemoryPubSubConnection"] = {}
        self._packet_ids = itertools.count(1)
        self._lock = threading.RLock()

    def fail(self, reason: str = "broker unavailable") -> None:
        """Take the broker down and drop every connected client."""
        log.warning("memory_broker_failed", broker=self.name, reason=reason)
        with self._lock:
            self.available = False
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client._dropped(reason)

    def recover(self) -> None:
        with self._lock:
            self.available = True

    def publish(
        self,
        topic: str,
        payload: bytes,
        guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE,
        *,
        retained: bool = False,
        publisher: str = "device",
        origin: str | None = None,
        hop_count: int = 0,
        correlation_id: str | None = None,
        destination: str | None = None,
    ) -> int:
        """Publish as a device would; returns the number of subscribers reached."""
        message = Message(
            topic=topic,
            payload=payload,
            guarantee=GuaranteeLevel(guarantee),
            retained=retained,
            correlation_id=correlation_id,
            destination=destination,
            source_client=publisher,
            origin=origin,
            hop_count=hop_count,
        )
        return self._route(message)

    def _route(self, message: Message) -> int:
        validate_topic(message.topic)
        if len(message.payload) > self.max_payload:
            raise PermanentMessageError(
                f"Payload of {len(message.payload)} bytes exceeds {self.max_payload}"
            )
        with self._lock:
            if not self.available:
                raise TransientConnectionError(f"{self.name} is unavailable")
            if self.publish_failures > 0:
                self.publish_failures -= 1
                raise TransientProduceError(f"{self.name} rejected publish")
            self.published.append(message)
            if message.retained:
                self.retained[message.topic] = message

            targets = []
            for client_id, session in self._sessions.items():
                granted = [
                    level for pattern, level in session.subscriptions.items()
                    if matches(pattern, message.topic)
                ]
                if not granted:
                    continue
                level = min(GuaranteeLevel(max(granted)), message.guarantee)
                packet_id = next(self._packet_ids)
                copy = Message(
                    topic=message.topic,
                    payload=message.payload,
                    guarantee=level,
                    retained=message.retained,
                    received_at=message.received_at,
                    correlation_id=message.correlation_id,
                    destination=message.destination,
                    source_client=message.source_client,
                    sequence=packet_id,
                    origin=message.origin,
                    hop_count=message.hop_count,
                )
                if level > GuaranteeLevel.AT_MOST_ONCE:
                    session.unacked[packet_id] = copy
                client = self._clients.get(client_id)
                if client is not None:
                    targets.append((client, copy))

        for client, copy in targets:
            client._deliver(copy)
        return len(targets)

    def _ack(self, client_id: str, packet_id: int) -> None:
        with self._lock:
            session = self._sessions.get(client_id)
            if session is None:
                return
            message = session.unacked.pop(packet_id, None)
            if message is not None:
                self.acked.append(message)

    def unacked(self, client_id: str) -> list[Message]:
        with self._lock:
            session = self._sessions.get(client_id)
            return list(session.unacked.values()) if session else []


class MemoryPubSubConnection:
    """Client connection to a MemoryBroker."""

    def __init__(
        self,
        broker: MemoryBroker,
        client_id: str,
        session_persistence: bool = True,
    ) -> None:
        self.broker = broker
        self.client_id = client_id
        self.name = f"pubsub:{client_id}"
        self.session_persistence = session_persistence
        self.connect_failures = 0
        self._connected = False
        self._handler: Callable[[InboundDelivery], None] | None = None
        self._lost_handler: Callable[[str], None] | None = None

    def set_message_handler(self, handler: Callable[[InboundDelivery], None]) -> None:
        self._handler = handler

    def set_connection_lost_handler(self, handler: Callable[[str], None]) -> None:
        self._lost_handler = handler

    def connect(self) -> bool:
        broker = self.broker
        with broker._lock:
            if not broker.available:
                raise TransientConnectionError(f"{broker.name} is unavailable")
            if self.connect_failures > 0:
                self.connect_failures -= 1
                raise TransientConnectionError("handshake timed out")

            session_present = (
                self.session_persistence and self.client_id in broker._sessions
            )
            if not session_present:
                broker._sessions[self.client_id] = _Session()
            broker._clients[self.client_id] = self
            self._connected = True
            redeliver = list(broker._sessions[self.client_id].unacked.values())

        if session_present:
            for message in redeliver:
                self._deliver(message)
        return session_present

    def disconnect(self) -> None:
        with self.broker._lock:
            if self.broker._clients.get(self.client_id) is self:
                del self.broker._clients[self.client_id]
            if not self.session_persistence:
                self.broker._sessions.pop(self.client_id, None)
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def subscribe(self, pattern: str, guarantee: GuaranteeLevel) -> None:
        validate_pattern(pattern)
        self._require_connection()
        with self.broker._lock:
            self.broker._sessions[self.client_id].subscriptions[pattern] = guarantee

    def unsubscribe(self, pattern: str) -> None:
        self._require_connection()
        with self.broker._lock:
            self.broker._sessions[self.client_id].subscriptions.pop(pattern, None)

    def publish(self, message: Message, topic: str, wait: bool) -> None:
        self._require_connection()
        self.broker._route(Message(
            topic=topic,
            payload=message.payload,
            guarantee=message.guarantee,
            retained=message.retained,
            received_at=message.received_at,
            correlation_id=message.correlation_id,
            source_client=self.client_id,
            origin=message.origin,
            hop_count=message.hop_count,
        ))

    def _require_connection(self) -> None:
        if not self._connected:
            raise TransientConnectionError(f"{self.name} is not connected")

    def _deliver(self, message: Message) -> None:
        if self._handler is None:
            return
        packet_id = message.sequence

        def ack() -> None:
            if packet_id is not None:
                self.broker._ack(self.client_id, packet_id)

        self._handler(InboundDelivery(message, ack))

    def _dropped(self, reason: str) -> None:
        self._connected = False
        if self._lost_handler is not None:
            self._lost_handler(reason)


@dataclass
class _StoredRecord:
    key: str
    payload: bytes
    headers: dict[str, str]


class MemoryLog:
    """A partitioned append-only log living in the current process."""

    def __init__(self, topic: str = "telemetry", partitions: int = 3, max_payload: int = 1_048_576) -> None:
        self.topic = topic
        self.max_payload = max_payload
        self.available = True
        self.produce_failures = 0
        self.produce_attempts = 0
        self._partitions: list[list[_StoredRecord]] = [[] for _ in range(partitions)]
        self._idempotency: dict[str, ProduceAck] = {}
        self._committed: dict[tuple[str, int], int] = {}
        self._transports: list["MemoryLogTransport"] = []
        self._condition = threading.Condition()

    def fail(self, reason: str = "log unavailable") -> None:
        log.warning("memory_log_failed", topic=self.topic, reason=reason)
        with self._condition:
            self.available = False
            transports = list(self._transports)
            self._condition.notify_all()
        for transport in transports:
            transport._dropped(reason)

    def recover(self) -> None:
        with self._condition:
            self.available = True
            self._condition.notify_all()

    def partition_for(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._partitions)

    def append(
        self,
        key: str,
        payload: bytes,
        headers: dict[str, str],
        idempotency_key: str | None = None,
    ) -> ProduceAck:
        with self._condition:
            self.produce_attempts += 1
            if not self.available:
                raise TransientConnectionError("log unavailable")
            if len(payload) > self.max_payload:
                raise PermanentMessageError(
                    f"Payload of {len(payload)} bytes exceeds {self.max_payload}"
                )
            if self.produce_failures > 0:
                self.produce_failures -= 1
                raise TransientProduceError("leader election in progress")
            if idempotency_key and idempotency_key in self._idempotency:
                previous = self._idempotency[idempotency_key]
                return ProduceAck(previous.topic, previous.partition, previous.offset, duplicate=True)

            partition = self.partition_for(key)
            records = self._partitions[partition]
            records.append(_StoredRecord(key, payload, dict(headers)))
            ack = ProduceAck(self.topic, partition, len(records) - 1)
            if idempotency_key:
                self._idempotency[idempotency_key] = ack
            self._condition.notify_all()
            return ack

    def records(self, key: str | None = None) -> list[LogRecord]:
        """Every stored record, optionally filtered by key, partition order."""
        with self._condition:
            return [
                LogRecord(r.key, r.payload, self.topic, p, offset, dict(r.headers))
                for p, records in enumerate(self._partitions)
                for offset, r in enumerate(records)
                if key is None or r.key == key
            ]

    def committed(self, group: str, partition: int) -> int:
        with self._condition:
            return self._committed.get((group, partition), 0)

    def commit(self, group: str, partition: int, offset: int) -> None:
        with self._condition:
            current = self._committed.get((group, partition), 0)
            self._committed[(group, partition)] = max(current, offset)


class MemoryLogTransport:
    """Producer/consumer connection to a MemoryLog."""

    def __init__(self, log_store: MemoryLog, name: str = "log") -> None:
        self.log = log_store
        self.name = name
        self._connected = False
        self._group: str | None = None
        self._lost_handler: Callable[[str], None] | None = None

    def set_connection_lost_handler(self, handler: Callable[[str], None]) -> None:
        self._lost_handler = handler

    def connect(self) -> bool:
        with self.log._condition:
            if not self.log.available:
                raise TransientConnectionError("log unavailable")
            if self not in self.log._transports:
                self.log._transports.append(self)
        self._connected = True
        return False

    def disconnect(self) -> None:
        with self.log._condition:
            if self in self.log._transports:
                self.log._transports.remove(self)
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected and self.log.available

    def produce(
        self,
        key: str,
        payload: bytes,
        headers: dict[str, str],
        idempotency_key: str | None = None,
        wait: bool = True,
    ) -> ProduceAck | None:
        if not self._connected:
            raise TransientConnectionError(f"{self.name} is not connected")
        ack = self.log.append(key, payload, headers, idempotency_key)
        return ack if wait else None

    def consume(self, group: str, pattern: str, stop: Event) -> Iterator[LogRecord]:
        validate_pattern(pattern)
        self._group = group
        store = self.log
        positions = {
            p: store.committed(group, p) for p in range(len(store._partitions))
        }

        while not stop.is_set():
            if not self._connected or not store.available:
                raise TransientConnectionError(f"{self.name} is not connected")

            batch: list[LogRecord] = []
            with store._condition:
                for partition, records in enumerate(store._partitions):
                    position = positions[partition]
                    for offset in range(position, len(records)):
                        r = records[offset]
                        batch.append(LogRecord(
                            r.key, r.payload, store.topic, partition, offset, dict(r.headers),
                        ))
                if not batch:
                    store._condition.wait(timeout=0.05)
                    continue

            for record in batch:
                if stop.is_set():
                    return
                positions[record.partition] = record.offset + 1
                if matches(pattern, record.key):
                    yield record
                else:
                    store.commit(group, record.partition, record.offset + 1)

    def acknowledge(self, record: LogRecord) -> None:
        if self._group is None:
            raise RuntimeError("acknowledge called before consume")
        self.log.commit(self._group, record.partition, record.offset + 1)

    def _dropped(self, reason: str) -> None:
        self._connected = False
        if self._lost_handler is not None:
            self._lost_handler(reason)
