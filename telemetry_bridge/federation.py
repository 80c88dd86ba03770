"""Federation: forwarding whole topic subtrees to peer bridge instances.

Each FederationRoute maps a topic pattern to a peer's pub/sub broker. Peers
receive the same Message (topic, payload, guarantee, correlation id) plus
two markers carried as MQTT v5 user properties:

    bridge-origin  instance id of the bridge that first ingested the message
    bridge-hops    number of federation hops taken so far

A message that comes back to the instance that originated it is never
forwarded again, which is what keeps bidirectionally federated peers from
looping.
"""

import queue
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from telemetry_bridge.adapters import InboundAdapter
from telemetry_bridge.failures import FailureReporter
from telemetry_bridge.guarantees import DeliveryPolicy
from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message, Subscription
from telemetry_bridge.metrics import MetricsClient
from telemetry_bridge.pipelines import POLL_INTERVAL, DeliveryWorker
from telemetry_bridge.retry import BackoffPolicy
from telemetry_bridge.supervisor import ConnectionSupervisor
from telemetry_bridge.topics import validate_pattern
from telemetry_bridge.transports import PubSubConnection

log = structlog.get_logger()

DEFAULT_MAX_HOPS = 8


@dataclass(frozen=True)
class FederationRoute:
    """Forward topics matching ``pattern`` to the bridge behind ``peer``."""
    pattern: str
    peer: str
    peer_id: str | None = None
    guarantee: GuaranteeLevel | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        validate_pattern(self.pattern)

    @property
    def label(self) -> str:
        return self.name or f"{self.pattern}->{self.peer}"


def should_forward(
    message: Message,
    local_id: str,
    peer_id: str | None = None,
    max_hops: int = DEFAULT_MAX_HOPS,
) -> tuple[bool, str | None]:
    """Decide whether ``message`` may be forwarded; returns (ok, reason)."""
    if message.hop_count > 0 and message.origin == local_id:
        return False, "loop"
    if peer_id is not None and message.origin == peer_id:
        return False, "origin_is_peer"
    if message.hop_count >= max_hops:
        return False, "hop_limit"
    return True, None


class FederationForwarder(DeliveryWorker):
    """Worker forwarding one route's messages to its peer.

    Uses the same delivery semantics as ingestion: the upstream ack waits
    for the peer broker's ack, transient failures are retried in order, and
    expired or permanent failures are reported with direction "federation".
    """

    direction = "federation"

    def __init__(
        self,
        route: FederationRoute,
        peer_supervisor: ConnectionSupervisor,
        local_id: str,
        reporter: FailureReporter,
        metrics: MetricsClient,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        max_hops: int = DEFAULT_MAX_HOPS,
        capacity: int = 1000,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            peer_supervisor, reporter, metrics, retry_backoff, retry_deadline,
            name=kwargs.pop("name", f"federation:{route.label}"), **kwargs,
        )
        self.route = route
        self.peer: PubSubConnection = peer_supervisor.connection
        self.local_id = local_id
        self.max_hops = max_hops
        self.queue: queue.Queue[InboundDelivery] = queue.Queue(maxsize=capacity)
        self.stats["skipped"] = 0
        self._accepting = True

    def offer(self, delivery: InboundDelivery) -> bool:
        """Accept a delivery from the inbound router, blocking while full."""
        message = delivery.message
        ok, reason = should_forward(message, self.local_id, self.route.peer_id, self.max_hops)
        if not ok:
            self.stats["skipped"] += 1
            log.debug(
                "federation_skipped",
                route=self.route.label,
                topic=message.topic,
                origin=message.origin,
                hop_count=message.hop_count,
                reason=reason,
            )
            delivery.acknowledge()
            return False

        if self.route.guarantee is not None:
            delivery = delivery.replace_message(message.with_guarantee(self.route.guarantee))

        while True:
            try:
                self.queue.put(delivery, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                if not self._accepting:
                    return False

    def stop(self, grace: float = 30.0) -> None:
        self._accepting = False
        super().stop(grace)

    def _run(self) -> None:
        while not self._abort.is_set():
            try:
                delivery = self.queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue

            if self.deliver(delivery.message.forwarded()):
                delivery.acknowledge()
            else:
                self.stats["abandoned"] += 1

    def _attempt(self, message: Message, policy: DeliveryPolicy) -> Any:
        return self.peer.publish(message, message.topic, wait=policy.await_ack)


class FederationLayer:
    """One forwarder (and supervised peer connection) per federation route."""

    def __init__(
        self,
        local_id: str,
        inbound: InboundAdapter,
        reporter: FailureReporter,
        metrics: MetricsClient,
        connection_factory: Callable[[FederationRoute], PubSubConnection],
        reconnect_backoff: BackoffPolicy,
        retry_backoff: BackoffPolicy,
        retry_deadline: float,
        max_hops: int = DEFAULT_MAX_HOPS,
    ) -> None:
        self.local_id = local_id
        self.inbound = inbound
        self.reporter = reporter
        self.metrics = metrics
        self.connection_factory = connection_factory
        self.reconnect_backoff = reconnect_backoff
        self.retry_backoff = retry_backoff
        self.retry_deadline = retry_deadline
        self.max_hops = max_hops
        self.forwarders: list[FederationForwarder] = []

    def add_route(self, route: FederationRoute) -> FederationForwarder:
        supervisor = ConnectionSupervisor(
            self.connection_factory(route),
            self.reconnect_backoff,
            session_persistence=False,
            name=f"peer:{route.label}",
        )
        forwarder = FederationForwarder(
            route,
            supervisor,
            self.local_id,
            self.reporter,
            self.metrics,
            self.retry_backoff,
            self.retry_deadline,
            max_hops=self.max_hops,
        )
        self.forwarders.append(forwarder)
        self.inbound.add_route(
            Subscription(route.pattern, route.guarantee or GuaranteeLevel.AT_LEAST_ONCE),
            forwarder.offer,
        )
        log.info("federation_route_added", route=route.label, pattern=route.pattern, peer=route.peer)
        return forwarder

    def start(self) -> None:
        for forwarder in self.forwarders:
            forwarder.supervisor.start()
            forwarder.start()

    def stop(self, grace: float = 30.0) -> None:
        for forwarder in self.forwarders:
            forwarder.stop(grace)
            forwarder.supervisor.stop()

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {**forwarder.snapshot(), "peer": forwarder.supervisor.snapshot()}
            for forwarder in self.forwarders
        ]
