"""Message model shared by every stage of the bridge."""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Callable

from telemetry_bridge.topics import validate_pattern


class GuaranteeLevel(IntEnum):
    """Per-message delivery contract. Values equal the MQTT QoS level."""
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE_INTENT = 2

    @classmethod
    def parse(cls, value: "str | int | GuaranteeLevel") -> "GuaranteeLevel":
        """Accept a level, a QoS integer or a name such as "at_least_once"."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        return cls[text.upper().replace("-", "_")]


@dataclass(frozen=True)
class Message:
    """Immutable telemetry event.

    ``destination`` is an explicit per-message override of the destination
    key/topic; when unset the configured mapping applies. ``origin`` and
    ``hop_count`` are the federation loop markers.
    """
    topic: str
    payload: bytes
    guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE
    retained: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None
    destination: str | None = None
    source_client: str | None = None
    sequence: int | None = None
    origin: str | None = None
    hop_count: int = 0

    def with_origin(self, instance_id: str) -> "Message":
        """Stamp the ingesting instance, unless already stamped."""
        if self.origin is not None:
            return self
        return replace(self, origin=instance_id)

    def forwarded(self) -> "Message":
        """Copy for the next federation hop."""
        return replace(self, hop_count=self.hop_count + 1)

    def with_destination(self, destination: str | None) -> "Message":
        return replace(self, destination=destination)

    def with_guarantee(self, guarantee: GuaranteeLevel) -> "Message":
        return replace(self, guarantee=guarantee)


@dataclass(frozen=True)
class Subscription:
    """Topic pattern plus the guarantee level requested for it."""
    pattern: str
    guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE

    def __post_init__(self) -> None:
        validate_pattern(self.pattern)


class _AckCountdown:
    """Fires the upstream ack once every share of a delivery acked."""

    def __init__(self, ack: Callable[[], None] | None, shares: int) -> None:
        self._ack = ack
        self._remaining = shares
        self._lock = threading.Lock()

    def release(self) -> None:
        with self._lock:
            if self._remaining <= 0:
                return
            self._remaining -= 1
            fire = self._remaining == 0
        if fire and self._ack is not None:
            self._ack()


class InboundDelivery:
    """A received Message plus the callback acknowledging it upstream."""

    def __init__(
        self,
        message: Message,
        ack: Callable[[], None] | None = None,
        _countdown: _AckCountdown | None = None,
    ) -> None:
        self.message = message
        self._countdown = _countdown or _AckCountdown(ack, 1)
        self._acked = False
        self._lock = threading.Lock()

    @property
    def acknowledged(self) -> bool:
        return self._acked

    def acknowledge(self) -> None:
        """Acknowledge this share. Repeated calls are no-ops."""
        with self._lock:
            if self._acked:
                return
            self._acked = True
        self._countdown.release()

    def split(self, shares: int) -> list["InboundDelivery"]:
        """Return ``shares`` deliveries whose acks jointly release this one."""
        if shares < 1:
            raise ValueError("shares must be >= 1")
        with self._lock:
            if self._acked:
                raise RuntimeError("delivery already acknowledged")
            self._acked = True
        countdown = _AckCountdown(self._countdown.release, shares)
        return [
            InboundDelivery(self.message, _countdown=countdown)
            for _ in range(shares)
        ]

    def replace_message(self, message: Message) -> "InboundDelivery":
        """Same upstream ack, different message."""
        with self._lock:
            if self._acked:
                raise RuntimeError("delivery already acknowledged")
            self._acked = True
        countdown = _AckCountdown(self._countdown.release, 1)
        return InboundDelivery(message, _countdown=countdown)
