"""Ingestion and egress pipelines.

Each pipeline is one worker thread that takes a message, applies the
delivery policy for its guarantee level and attempts the outbound call.

A message that fails transiently is retried (with backoff from its retry
ledger entry) before any later message is taken, so per-subscription order
is preserved at the cost of head-of-line blocking. AT_MOST_ONCE messages
are never retried and are dropped silently on transient failure.
"""

import itertools
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from telemetry_bridge.adapters import InboundAdapter, OutboundAdapter
from telemetry_bridge.errors import (
    PermanentMessageError,
    TransientConnectionError,
    TransientProduceError,
)
from telemetry_bridge.failures import (
    DEADLINE_EXCEEDED,
    PERMANENT_ERROR,
    FailureRecord,
    FailureReporter,
)
from telemetry_bridge.guarantees import (
    DeliveryPolicy,
    from_record,
    idempotency_key,
    policy_for,
    to_headers,
)
from telemetry_bridge.message import GuaranteeLevel, Message
from telemetry_bridge.metrics import MetricsClient
from telemetry_bridge.retry import BackoffPolicy, RetryEntry, RetryLedger
from telemetry_bridge.supervisor import ConnectionSupervisor
from telemetry_bridge.topics import TopicMapping, matches, validate_pattern
from telemetry_bridge.transports import LogRecord, LogTransport

log = structlog.get_logger()

POLL_INTERVAL = 0.1


class DeliveryWorker:
    """Base worker: one thread, one retry ledger, head-of-line delivery.

    Subclasses implement ``_run`` (where messages come from) and
    ``_attempt`` (the outbound call). ``supervisor`` is the supervisor of the
    destination connection.
    """

    direction = "delivery"

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        reporter: FailureReporter,
        metrics: MetricsClient,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.supervisor = supervisor
        self.reporter = reporter
        self.metrics = metrics
        self.name = name or self.direction
        self.clock = clock
        self.ledger = RetryLedger(retry_backoff, retry_deadline, clock=clock)

        self._stopping = threading.Event()
        self._abort = threading.Event()
        self._thread: threading.Thread | None = None
        self._keys = itertools.count(1)
        self.stats: dict[str, int] = {
            "delivered": 0,
            "duplicates": 0,
            "retries": 0,
            "dropped": 0,
            "failed": 0,
            "abandoned": 0,
        }

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run_safely, name=self.name, daemon=True)
        self._thread.start()
        log.info("pipeline_started", pipeline=self.name)

    def stop(self, grace: float = 30.0) -> None:
        """Stop taking new work, drain for up to ``grace`` seconds, then abort."""
        self._stopping.set()
        if self._thread is None:
            return
        self._thread.join(timeout=grace)
        if self._thread.is_alive():
            log.warning("pipeline_drain_timeout", pipeline=self.name, grace_seconds=grace)
            self._abort.set()
            self._thread.join(timeout=5.0)
        self._thread = None
        log.info("pipeline_stopped", pipeline=self.name, **self.stats)

    def snapshot(self) -> dict[str, Any]:
        return {
            "pipeline": self.name,
            "running": self.running,
            "in_retry": len(self.ledger),
            **self.stats,
        }

    def _run_safely(self) -> None:
        try:
            self._run()
        except Exception as e:
            log.exception("pipeline_crashed", pipeline=self.name, error=str(e))
            raise

    def _run(self) -> None:
        raise NotImplementedError

    def _attempt(self, message: Message, policy: DeliveryPolicy) -> Any:
        raise NotImplementedError

    def deliver(self, message: Message) -> bool:
        """Deliver one message under its guarantee level.

        Returns True once the message is finished with (delivered, dropped
        or reported as failed), False only if the worker was aborted first.
        """
        key = f"{self.name}:{next(self._keys)}"
        policy = policy_for(message.guarantee)

        while True:
            entry = self.ledger.get(key)
            if entry is None and not self.supervisor.is_available():
                unavailable = f"{self.supervisor.name} unavailable"
                if not policy.retry:
                    self._drop(message, unavailable)
                    return True
                # The deadline runs from the first time the message is held back
                entry = self.ledger.record_unavailable(key, unavailable)
            if not self._await_destination(entry):
                if self._abort.is_set():
                    return False
                self._give_up(message, key, DEADLINE_EXCEEDED)
                return True
            # A retry scheduled at the deadline itself is never attempted
            if entry is not None and entry.expired(self.clock()):
                self._give_up(message, key, DEADLINE_EXCEEDED)
                return True

            try:
                result = self._attempt(message, policy)
            except TransientConnectionError as e:
                self.supervisor.report_failure(e)
                if not policy.retry:
                    self._drop(message, str(e))
                    return True
                entry = self.ledger.record_unavailable(key, str(e))
                if entry.expired(self.clock()):
                    self._give_up(message, key, DEADLINE_EXCEEDED)
                    return True
                continue
            except TransientProduceError as e:
                if not policy.retry:
                    self._drop(message, str(e))
                    return True
                entry = self.ledger.record_failure(key, str(e))
                self.stats["retries"] += 1
                if entry.expired(self.clock()):
                    self._give_up(message, key, DEADLINE_EXCEEDED)
                    return True
                log.warning(
                    "delivery_retry_scheduled",
                    pipeline=self.name,
                    topic=message.topic,
                    attempt=entry.attempts,
                    retry_in_seconds=round(max(0.0, entry.next_attempt_at - self.clock()), 3),
                    error=str(e),
                )
                if not self._sleep_until(entry.next_attempt_at):
                    return False
                continue
            except PermanentMessageError as e:
                self._give_up(message, key, PERMANENT_ERROR, error=str(e))
                return True

            self.ledger.clear(key)
            if getattr(result, "duplicate", False):
                self.stats["duplicates"] += 1
            self.stats["delivered"] += 1
            self.metrics.increment(f"bridge.{self.direction}.delivered")
            return True

    def _await_destination(self, entry: RetryEntry | None) -> bool:
        """Wait until the destination is available.

        Returns False if aborted or if ``entry``'s deadline passes first.
        """
        while not self.supervisor.is_available():
            if self._abort.is_set():
                return False
            if entry is not None and entry.expired(self.clock()):
                return False
            self.supervisor.wait_until_available(timeout=POLL_INTERVAL)
        return not self._abort.is_set()

    def _sleep_until(self, when: float) -> bool:
        remaining = when - self.clock()
        if remaining > 0:
            self._abort.wait(remaining)
        return not self._abort.is_set()

    def _drop(self, message: Message, error: str) -> None:
        """AT_MOST_ONCE transient failure: dropped by contract."""
        self.stats["dropped"] += 1
        self.metrics.increment(f"bridge.{self.direction}.dropped")
        log.debug("message_dropped", pipeline=self.name, topic=message.topic, error=error)

    def _give_up(self, message: Message, key: str, reason: str, error: str | None = None) -> None:
        entry = self.ledger.clear(key)
        attempts = entry.attempts if entry else 0
        if reason == PERMANENT_ERROR:
            attempts += 1
        self.stats["failed"] += 1
        self.reporter.report(FailureRecord.for_message(
            message,
            reason=reason,
            attempts=attempts,
            direction=self.direction,
            error=error or (entry.last_error if entry else None),
        ))


class IngestionPipeline(DeliveryWorker):
    """Inbound channel -> log transport."""

    direction = "ingest"

    def __init__(
        self,
        inbound: InboundAdapter,
        log_supervisor: ConnectionSupervisor,
        mapping: TopicMapping,
        reporter: FailureReporter,
        metrics: MetricsClient,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            log_supervisor, reporter, metrics, retry_backoff, retry_deadline,
            name=kwargs.pop("name", "ingestion"), **kwargs,
        )
        self.inbound = inbound
        self.transport: LogTransport = log_supervisor.connection
        self.mapping = mapping

    def _run(self) -> None:
        channel = self.inbound.channel
        while not self._abort.is_set():
            try:
                delivery = channel.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue

            if self.deliver(delivery.message):
                delivery.acknowledge()
            else:
                self.stats["abandoned"] += 1

        self.stats["abandoned"] += channel.qsize()

    def _attempt(self, message: Message, policy: DeliveryPolicy) -> Any:
        destination = self.mapping.resolve(message)
        key = idempotency_key(message)
        return self.transport.produce(
            destination,
            message.payload,
            to_headers(message, key),
            idempotency_key=key,
            wait=policy.await_ack,
        )


@dataclass(frozen=True)
class EgressRoute:
    """Default guarantee for log records whose key matches ``pattern``."""
    pattern: str
    guarantee: GuaranteeLevel

    def __post_init__(self) -> None:
        validate_pattern(self.pattern)


class EgressPipeline(DeliveryWorker):
    """Log transport -> outbound adapter.

    Offsets are committed only after the message was published (or given
    up on), in consumption order.
    """

    direction = "egress"

    def __init__(
        self,
        log_supervisor: ConnectionSupervisor,
        outbound: OutboundAdapter,
        reporter: FailureReporter,
        metrics: MetricsClient,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        group: str,
        pattern: str = "#",
        mapping: TopicMapping | None = None,
        routes: list[EgressRoute] | None = None,
        default_guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            outbound.supervisor, reporter, metrics, retry_backoff, retry_deadline,
            name=kwargs.pop("name", "egress"), **kwargs,
        )
        self.log_supervisor = log_supervisor
        self.transport: LogTransport = log_supervisor.connection
        self.outbound = outbound
        self.group = group
        self.pattern = pattern
        self.mapping = mapping or TopicMapping()
        self.routes = list(routes or [])
        self.default_guarantee = default_guarantee

    def default_level_for(self, key: str) -> GuaranteeLevel:
        for route in self.routes:
            if matches(route.pattern, key):
                return route.guarantee
        return self.default_guarantee

    def to_message(self, record: LogRecord) -> Message:
        """Rebuild the outbound Message; explicit destination wins over mapping."""
        try:
            message = from_record(record, self.default_level_for(record.key))
        except (KeyError, ValueError) as e:
            raise PermanentMessageError(f"unreadable record headers: {e}") from e
        if not message.destination:
            message = message.with_destination(self.mapping.resolve_topic(message.topic))
        return message

    def _run(self) -> None:
        while not (self._stopping.is_set() or self._abort.is_set()):
            if not self.log_supervisor.wait_until_available(timeout=0.5):
                continue
            try:
                self._consume()
            except TransientConnectionError as e:
                self.log_supervisor.report_failure(e)

    def _consume(self) -> None:
        for record in self.transport.consume(self.group, self.pattern, self._stopping):
            try:
                message = self.to_message(record)
            except PermanentMessageError as e:
                self.stats["failed"] += 1
                self.reporter.report(FailureRecord(
                    topic=record.key,
                    guarantee=self.default_level_for(record.key),
                    reason=PERMANENT_ERROR,
                    attempts=0,
                    direction=self.direction,
                    error=str(e),
                ))
                self.transport.acknowledge(record)
                continue

            if not self.deliver(message):
                self.stats["abandoned"] += 1
                return
            self.transport.acknowledge(record)

    def _attempt(self, message: Message, policy: DeliveryPolicy) -> Any:
        return self.outbound.publish(message)


class SubmissionPipeline(DeliveryWorker):
    """Drains messages submitted to the outbound adapter by the front door."""

    direction = "submit"

    def __init__(
        self,
        outbound: OutboundAdapter,
        reporter: FailureReporter,
        metrics: MetricsClient,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            outbound.supervisor, reporter, metrics, retry_backoff, retry_deadline,
            name=kwargs.pop("name", "submission"), **kwargs,
        )
        self.outbound = outbound

    def _run(self) -> None:
        submitted = self.outbound.submitted
        while not self._abort.is_set():
            try:
                message = submitted.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            if not self.deliver(message):
                self.stats["abandoned"] += 1

        self.stats["abandoned"] += submitted.qsize()

    def _attempt(self, message: Message, policy: DeliveryPolicy) -> Any:
        return self.outbound.publish(message)
