"""Inbound and outbound adapters around the pub/sub connection."""

import queue
import threading

import structlog

from telemetry_bridge.errors import TransientConnectionError
from telemetry_bridge.guarantees import policy_for
from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message, Subscription
from telemetry_bridge.metrics import MetricsClient
from telemetry_bridge.supervisor import ConnectionSupervisor
from telemetry_bridge.topics import TopicRouter
from telemetry_bridge.transports import PubSubConnection

log = structlog.get_logger()


class InboundAdapter:
    """Receives from the subscribing connection and routes onto channels.

    Every delivery is stamped with the local instance as origin (unless it
    already carries one) and handed to each unique handler whose pattern
    matches its topic. The upstream ack fires once all handlers acked.
    """

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        instance_id: str,
        metrics: MetricsClient,
        capacity: int = 10000,
    ) -> None:
        self.supervisor = supervisor
        self.connection: PubSubConnection = supervisor.connection
        self.instance_id = instance_id
        self.metrics = metrics
        self.channel: queue.Queue[InboundDelivery] = queue.Queue(maxsize=capacity)
        self.router = TopicRouter()
        self.received = 0
        self.unrouted = 0
        self.refused = 0
        self._accepting = threading.Event()
        self._accepting.set()
        self._blocked = False

        self.connection.set_message_handler(self.on_delivery)

    @property
    def accepting(self) -> bool:
        return self._accepting.is_set()

    def subscribe(self, subscription: Subscription) -> None:
        """Forward topics matching ``subscription`` to the ingestion channel."""
        self.router.add(subscription.pattern, self.enqueue)
        self.supervisor.add_subscription(subscription)

    def unsubscribe(self, pattern: str) -> None:
        self.router.remove(pattern)
        self.supervisor.remove_subscription(pattern)

    def add_route(self, subscription: Subscription, handler) -> None:
        """Send topics matching ``subscription`` to ``handler`` as well."""
        self.router.add(subscription.pattern, handler)
        self.supervisor.add_subscription(subscription)

    def stop_accepting(self) -> None:
        self._accepting.clear()

    def on_delivery(self, delivery: InboundDelivery) -> None:
        if not self.accepting:
            # Left unacknowledged so the broker redelivers after restart
            self.refused += 1
            return

        self.received += 1
        message = delivery.message.with_origin(self.instance_id)
        handlers = self.router.handlers_for(message.topic)
        if not handlers:
            self.unrouted += 1
            log.debug("delivery_unrouted", topic=message.topic)
            delivery.acknowledge()
            return

        shares = delivery.replace_message(message).split(len(handlers))
        for handler, share in zip(handlers, shares):
            handler(share)

    def enqueue(self, delivery: InboundDelivery) -> bool:
        """Put ``delivery`` on the channel, blocking while it is full.

        Blocking here holds the transport's network thread, which is the flow
        control the upstream broker sees. Returns False if shutdown began
        while waiting.
        """
        while True:
            try:
                self.channel.put(delivery, timeout=0.1)
                if self._blocked:
                    self._blocked = False
                    log.info("inbound_resumed", depth=self.channel.qsize())
                return True
            except queue.Full:
                if not self._blocked:
                    self._blocked = True
                    self.metrics.increment("bridge.inbound.blocked")
                    log.warning(
                        "inbound_blocked",
                        depth=self.channel.qsize(),
                        reason="backpressure",
                    )
                if not self.accepting:
                    self.refused += 1
                    return False


class OutboundAdapter:
    """Publishes through the outbound connection to per-message topics."""

    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        capacity: int = 1000,
        default_guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE,
    ) -> None:
        self.supervisor = supervisor
        self.connection: PubSubConnection = supervisor.connection
        self.default_guarantee = default_guarantee
        self.submitted: queue.Queue[Message] = queue.Queue(maxsize=capacity)
        self._accepting = True

    def publish(self, message: Message) -> None:
        """Publish to ``message.destination`` or, without one, its topic.

        Raises TransientConnectionError while the connection is unavailable;
        the supervisor is told about failures seen here.
        """
        if not self.supervisor.is_available():
            raise TransientConnectionError(f"{self.supervisor.name} is unavailable")

        topic = message.destination or message.topic
        policy = policy_for(message.guarantee)
        try:
            self.connection.publish(message, topic, wait=policy.await_ack)
        except TransientConnectionError as e:
            self.supervisor.report_failure(e)
            raise

    def submit(self, message: Message) -> bool:
        """Queue a message for asynchronous publishing; never blocks."""
        if not self._accepting:
            return False
        try:
            self.submitted.put_nowait(message)
            return True
        except queue.Full:
            log.warning("outbound_queue_full", topic=message.topic)
            return False

    def stop_accepting(self) -> None:
        self._accepting = False
