"""Observability sink for permanent delivery failures."""

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from telemetry_bridge.message import GuaranteeLevel, Message
from telemetry_bridge.metrics import MetricsClient

log = structlog.get_logger()

# Reasons
DEADLINE_EXCEEDED = "deadline_exceeded"
PERMANENT_ERROR = "permanent_error"


@dataclass(frozen=True)
class FailureRecord:
    """Structured record of a message the bridge gave up on."""
    topic: str
    guarantee: GuaranteeLevel
    reason: str
    attempts: int
    direction: str
    error: str | None = None
    correlation_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_message(
        cls,
        message: Message,
        *,
        reason: str,
        attempts: int,
        direction: str,
        error: str | None = None,
    ) -> "FailureRecord":
        return cls(
            topic=message.topic,
            guarantee=message.guarantee,
            reason=reason,
            attempts=attempts,
            direction=direction,
            error=error,
            correlation_id=message.correlation_id,
        )

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["guarantee"] = self.guarantee.name
        row["occurred_at"] = self.occurred_at.isoformat()
        return row


class FailureReporter:
    """Logs every failure record, counts it, and keeps the most recent ones."""

    def __init__(self, metrics: MetricsClient, keep: int = 100) -> None:
        self.metrics = metrics
        self._recent: deque[FailureRecord] = deque(maxlen=keep)
        self._lock = threading.Lock()
        self.total = 0

    def report(self, record: FailureRecord) -> None:
        log.error(
            "delivery_failed",
            topic=record.topic,
            guarantee=record.guarantee.name,
            reason=record.reason,
            attempts=record.attempts,
            direction=record.direction,
            error=record.error,
            correlation_id=record.correlation_id,
        )
        with self._lock:
            self._recent.append(record)
            self.total += 1
        self.metrics.increment(
            f"bridge.{record.direction}.failed",
            dimensions={"reason": record.reason},
        )

    def recent(self) -> list[FailureRecord]:
        with self._lock:
            return list(self._recent)
