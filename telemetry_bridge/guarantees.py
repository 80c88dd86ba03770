"""Delivery guarantee translation between the pub/sub and log transports.

The pub/sub side speaks three discrete QoS levels; the log side speaks
offset acknowledgement plus idempotent producers. This module decides, per
message, whether to await the destination ack, whether to retry, and which
idempotency key collapses duplicate produce attempts. No I/O.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone

from telemetry_bridge.message import GuaranteeLevel, Message
from telemetry_bridge.transports import LogRecord

# Record header names on the log transport
HEADER_TOPIC = "bridge-topic"
HEADER_GUARANTEE = "bridge-guarantee"
HEADER_ORIGIN = "bridge-origin"
HEADER_HOPS = "bridge-hops"
HEADER_CORRELATION_ID = "bridge-correlation-id"
HEADER_DESTINATION = "bridge-destination"
HEADER_RETAINED = "bridge-retained"
HEADER_IDEMPOTENCY_KEY = "bridge-idempotency-key"
HEADER_RECEIVED_AT = "bridge-received-at"


@dataclass(frozen=True)
class DeliveryPolicy:
    """How a message of a given level must be delivered."""
    level: GuaranteeLevel
    await_ack: bool
    retry: bool
    idempotent: bool


_POLICIES = {
    GuaranteeLevel.AT_MOST_ONCE: DeliveryPolicy(
        GuaranteeLevel.AT_MOST_ONCE, await_ack=False, retry=False, idempotent=False,
    ),
    GuaranteeLevel.AT_LEAST_ONCE: DeliveryPolicy(
        GuaranteeLevel.AT_LEAST_ONCE, await_ack=True, retry=True, idempotent=False,
    ),
    GuaranteeLevel.EXACTLY_ONCE_INTENT: DeliveryPolicy(
        GuaranteeLevel.EXACTLY_ONCE_INTENT, await_ack=True, retry=True, idempotent=True,
    ),
}


def policy_for(level: GuaranteeLevel) -> DeliveryPolicy:
    return _POLICIES[GuaranteeLevel(level)]


def mqtt_qos(level: GuaranteeLevel) -> int:
    return int(level)


def level_from_qos(qos: int) -> GuaranteeLevel:
    return GuaranteeLevel(min(max(int(qos), 0), 2))


def idempotency_key(message: Message) -> str | None:
    """Stable key for EXACTLY_ONCE_INTENT messages, None otherwise.

    Derived from (source client, inbound sequence, topic). When the
    transport supplied no sequence number the correlation id stands in, and
    failing that a digest of the payload.
    """
    if not policy_for(message.guarantee).idempotent:
        return None

    if message.sequence is not None:
        discriminator = f"seq:{message.sequence}"
    elif message.correlation_id:
        discriminator = f"cid:{message.correlation_id}"
    else:
        discriminator = "sha:" + hashlib.sha256(message.payload).hexdigest()

    material = "\x1f".join([
        message.origin or "",
        message.source_client or "",
        discriminator,
        message.topic,
    ])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def to_headers(message: Message, key: str | None = None) -> dict[str, str]:
    """Headers carried on the log record for ``message``."""
    headers = {
        HEADER_TOPIC: message.topic,
        HEADER_GUARANTEE: message.guarantee.name,
        HEADER_HOPS: str(message.hop_count),
        HEADER_RECEIVED_AT: message.received_at.isoformat(),
    }
    if message.origin:
        headers[HEADER_ORIGIN] = message.origin
    if message.correlation_id:
        headers[HEADER_CORRELATION_ID] = message.correlation_id
    if message.destination:
        headers[HEADER_DESTINATION] = message.destination
    if message.retained:
        headers[HEADER_RETAINED] = "1"
    if key:
        headers[HEADER_IDEMPOTENCY_KEY] = key
    return headers


def from_record(
    record: LogRecord,
    default_level: GuaranteeLevel,
    fallback_topic: str | None = None,
) -> Message:
    """Rebuild a Message from a log record for the egress direction.

    The explicit destination header becomes ``Message.destination``; the
    topic header becomes the topic, failing that ``fallback_topic`` and
    then the record key.
    """
    headers = record.headers

    level = default_level
    if HEADER_GUARANTEE in headers:
        level = GuaranteeLevel.parse(headers[HEADER_GUARANTEE])

    received_at = datetime.now(timezone.utc)
    if HEADER_RECEIVED_AT in headers:
        try:
            received_at = datetime.fromisoformat(headers[HEADER_RECEIVED_AT])
        except ValueError:
            pass  # keep the local receipt time

    return Message(
        topic=headers.get(HEADER_TOPIC) or fallback_topic or record.key,
        payload=record.payload,
        guarantee=level,
        retained=headers.get(HEADER_RETAINED) == "1",
        received_at=received_at,
        correlation_id=headers.get(HEADER_CORRELATION_ID),
        destination=headers.get(HEADER_DESTINATION),
        origin=headers.get(HEADER_ORIGIN),
        hop_count=int(headers.get(HEADER_HOPS, "0")),
        sequence=record.offset,
    )
