"""Kafka log transport backed by confluent-kafka.

Produces with an idempotent producer (``enable.idempotence``, ``acks=all``)
and consumes with manual offset commits, so an offset is only committed
once the egress side has published the record. Destination keys become
record keys on a single configured topic; partitioning by key keeps every
destination's records in order.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Event
from typing import Any, Callable, Iterator

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, Producer, TopicPartition

from telemetry_bridge.errors import (
    BridgeError,
    PermanentMessageError,
    TransientConnectionError,
    TransientProduceError,
)
from telemetry_bridge.topics import matches, validate_pattern
from telemetry_bridge.transports import LogRecord, ProduceAck

log = structlog.get_logger()

PERMANENT_CODES = {
    KafkaError.MSG_SIZE_TOO_LARGE,
    KafkaError.INVALID_MSG_SIZE,
    KafkaError._INVALID_ARG,
}
CONNECTION_CODES = {
    KafkaError._ALL_BROKERS_DOWN,
    KafkaError._TRANSPORT,
    KafkaError._AUTHENTICATION,
}


def translate_error(err: KafkaError) -> BridgeError:
    """Map a librdkafka error onto the bridge's exception taxonomy."""
    code = err.code()
    if code in PERMANENT_CODES:
        return PermanentMessageError(err.str())
    if code in CONNECTION_CODES or err.fatal():
        return TransientConnectionError(err.str())
    return TransientProduceError(err.str())


@dataclass
class _PendingDelivery:
    """Outcome of one record handed to the producer."""
    delivered: threading.Event = field(default_factory=threading.Event)
    err: KafkaError | None = None
    msg: Any = None


class KafkaLogTransport:
    """Producer and consumer for one Kafka topic."""

    def __init__(
        self,
        brokers: str,
        topic: str,
        client_id: str,
        credentials: tuple[str, str] | None = None,
        connect_timeout: float = 10.0,
        produce_timeout: float = 30.0,
        dedupe_window: int = 1024,
        extra_config: dict[str, Any] | None = None,
    ) -> None:
        self.brokers = brokers
        self.topic = topic
        self.client_id = client_id
        self.name = f"kafka:{topic}@{brokers}"
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.produce_timeout = produce_timeout
        self.dedupe_window = dedupe_window
        self.extra_config = dict(extra_config or {})

        self._producer: Producer | None = None
        self._consumer: Consumer | None = None
        self._connected = False
        self._lock = threading.Lock()
        self._lost_handler: Callable[[str], None] | None = None

        # Idempotency keys already acknowledged, most recent last
        self._acked_keys: OrderedDict[str, ProduceAck] = OrderedDict()
        # Idempotency keys handed to the producer and not yet reported on
        self._pending: dict[str, _PendingDelivery] = {}

    def set_connection_lost_handler(self, handler: Callable[[str], None]) -> None:
        self._lost_handler = handler

    def _base_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "bootstrap.servers": self.brokers,
            "client.id": self.client_id,
            "error_cb": self._on_error,
        }
        if self.credentials:
            username, password = self.credentials
            config.update({
                "security.protocol": "SASL_PLAINTEXT",
                "sasl.mechanisms": "PLAIN",
                "sasl.username": username,
                "sasl.password": password,
            })
        config.update(self.extra_config)
        return config

    def connect(self) -> bool:
        self.disconnect()

        producer = Producer({
            **self._base_config(),
            "enable.idempotence": True,
            "acks": "all",
            "linger.ms": 5,
        })
        try:
            # Metadata round trip proves the cluster is reachable
            producer.list_topics(topic=self.topic, timeout=self.connect_timeout)
        except KafkaException as e:
            raise TransientConnectionError(f"{self.brokers}: {e}") from e

        with self._lock:
            self._producer = producer
            self._connected = True
        log.info("kafka_connected", brokers=self.brokers, topic=self.topic)
        return False

    def disconnect(self) -> None:
        with self._lock:
            producer, self._producer = self._producer, None
            self._connected = False
        if producer is not None:
            remaining = producer.flush(self.connect_timeout)
            if remaining:
                log.warning("kafka_unflushed_on_disconnect", count=remaining)
        with self._lock:
            # Reports for these will never arrive from a replaced producer
            self._pending.clear()

    def is_connected(self) -> bool:
        return self._connected

    def produce(
        self,
        key: str,
        payload: bytes,
        headers: dict[str, str],
        idempotency_key: str | None = None,
        wait: bool = True,
    ) -> ProduceAck | None:
        with self._lock:
            producer = self._producer
            if producer is None or not self._connected:
                raise TransientConnectionError(f"{self.name} is not connected")
            if idempotency_key and idempotency_key in self._acked_keys:
                previous = self._acked_keys[idempotency_key]
                return ProduceAck(previous.topic, previous.partition, previous.offset, duplicate=True)
            pending = self._pending.get(idempotency_key) if idempotency_key else None
            repeat = pending is not None
            if pending is None:
                pending = _PendingDelivery()
                if idempotency_key:
                    self._pending[idempotency_key] = pending

        if not repeat:
            try:
                producer.produce(
                    self.topic,
                    key=key.encode("utf-8"),
                    value=payload,
                    headers=[(k, v.encode("utf-8")) for k, v in headers.items()],
                    on_delivery=lambda err, msg: self._on_delivery(idempotency_key, pending, err, msg),
                )
            except BufferError as e:
                self._forget(idempotency_key, pending)
                producer.poll(0)
                raise TransientProduceError(f"producer queue full: {e}") from e
            except KafkaException as e:
                self._forget(idempotency_key, pending)
                raise translate_error(e.args[0]) from e

        if not wait:
            producer.poll(0)
            return None

        deadline = time.monotonic() + self.produce_timeout
        while not pending.delivered.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # Still in flight; a repeat with the same key waits on this record
                raise TransientProduceError(f"no delivery report within {self.produce_timeout}s")
            producer.poll(min(remaining, 0.1))

        if pending.err is not None:
            raise translate_error(pending.err)

        msg = pending.msg
        return ProduceAck(msg.topic(), msg.partition(), msg.offset(), duplicate=repeat)

    def _on_delivery(self, idempotency_key: str | None, pending: _PendingDelivery, err, msg) -> None:
        pending.err = err
        pending.msg = msg
        if idempotency_key:
            with self._lock:
                if self._pending.get(idempotency_key) is pending:
                    del self._pending[idempotency_key]
                if err is None:
                    self._acked_keys[idempotency_key] = ProduceAck(msg.topic(), msg.partition(), msg.offset())
                    while len(self._acked_keys) > self.dedupe_window:
                        self._acked_keys.popitem(last=False)
        pending.delivered.set()

    def _forget(self, idempotency_key: str | None, pending: _PendingDelivery) -> None:
        if idempotency_key:
            with self._lock:
                if self._pending.get(idempotency_key) is pending:
                    del self._pending[idempotency_key]

    def consume(self, group: str, pattern: str, stop: Event) -> Iterator[LogRecord]:
        validate_pattern(pattern)
        consumer = Consumer({
            **self._base_config(),
            "group.id": group,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,  # Manual commit after publish
            "max.poll.interval.ms": 300000,
        })
        consumer.subscribe([self.topic])
        self._consumer = consumer
        log.info("kafka_consumer_started", group=group, topic=self.topic, pattern=pattern)

        try:
            while not stop.is_set():
                if not self._connected:
                    raise TransientConnectionError(f"{self.name} is not connected")

                msg = consumer.poll(timeout=0.5)
                if msg is None:
                    continue

                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    error = translate_error(msg.error())
                    if isinstance(error, TransientConnectionError):
                        raise error
                    log.error("kafka_error", error=str(msg.error()))
                    continue

                raw_key = msg.key()
                record = LogRecord(
                    key=raw_key.decode("utf-8") if raw_key else "",
                    payload=msg.value() or b"",
                    topic=msg.topic(),
                    partition=msg.partition(),
                    offset=msg.offset(),
                    headers={
                        k: v.decode("utf-8") if v is not None else ""
                        for k, v in (msg.headers() or [])
                    },
                )
                if matches(pattern, record.key):
                    yield record
                else:
                    self.acknowledge(record)
        finally:
            self._consumer = None
            consumer.close()

    def acknowledge(self, record: LogRecord) -> None:
        consumer = self._consumer
        if consumer is None:
            raise TransientConnectionError("no active consumer to commit on")
        try:
            consumer.commit(
                offsets=[TopicPartition(record.topic, record.partition, record.offset + 1)],
                asynchronous=False,
            )
        except KafkaException as e:
            # Uncommitted offsets are re-read after a rebalance or restart.
            log.error("kafka_commit_error", error=str(e), offset=record.offset)

    def _on_error(self, err: KafkaError) -> None:
        if err.code() in CONNECTION_CODES or err.fatal():
            self._connected = False
            log.error("kafka_connection_error", error=err.str())
            if self._lost_handler is not None:
                self._lost_handler(err.str())
        else:
            log.warning("kafka_client_error", error=err.str())
