"""MQTT <-> Kafka telemetry bridge.

Wires the supervised connections, adapters, pipelines and federation layer
into one long-lived process.

Ingestion:  device -> pub/sub broker -> InboundAdapter -> channel
            -> IngestionPipeline -> log transport
Egress:     log transport -> EgressPipeline -> OutboundAdapter -> device topic
Federation: InboundAdapter -> FederationForwarder -> peer pub/sub broker

Shutdown order on SIGTERM/SIGINT:
1. Stop accepting new inbound deliveries and front-door submissions
2. Drain every pipeline for up to SHUTDOWN_GRACE_SECONDS
3. Disconnect all supervised connections
4. Flush metrics

Messages still in flight when the grace period runs out are left
unacknowledged upstream so the broker (or the consumer group) redelivers
them on the next start.
"""

import itertools
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from telemetry_bridge.adapters import InboundAdapter, OutboundAdapter
from telemetry_bridge.config import BridgeConfig
from telemetry_bridge.errors import ConfigurationError
from telemetry_bridge.failures import FailureReporter
from telemetry_bridge.federation import FederationLayer, FederationRoute
from telemetry_bridge.message import Message
from telemetry_bridge.metrics import MetricsClient
from telemetry_bridge.pipelines import EgressPipeline, IngestionPipeline, SubmissionPipeline
from telemetry_bridge.supervisor import ConnectionSupervisor
from telemetry_bridge.topics import TopicMapping
from telemetry_bridge.transports import LogTransport, PubSubConnection

log = structlog.get_logger()

PeerFactory = Callable[[FederationRoute], PubSubConnection]


class TelemetryBridge:
    """One bridge instance: supervised inbound, outbound and log connections
    and the pipelines between them.

    Inbound and outbound each own their pub/sub connection. Backpressure
    holds the inbound client's network thread, which must never stall
    publish acknowledgements on the outbound side.
    """

    def __init__(
        self,
        config: BridgeConfig,
        inbound_pubsub: PubSubConnection,
        outbound_pubsub: PubSubConnection,
        log_transport: LogTransport,
        peer_factory: PeerFactory | None = None,
        metrics: MetricsClient | None = None,
        heartbeat_interval: float = 1.0,
    ) -> None:
        self.config = config
        self.metrics = metrics or MetricsClient(
            config.instance_id,
            endpoint=config.dynatrace_endpoint,
            token_path=config.dynatrace_token_path,
        )
        self.reporter = FailureReporter(self.metrics)
        self._shutdown = threading.Event()
        self._stopped = False
        self.started_at: datetime | None = None

        routes = config.routes
        retry = (config.retry_backoff, config.retry_deadline_seconds)

        self.inbound_supervisor = ConnectionSupervisor(
            inbound_pubsub,
            config.backoff,
            session_persistence=config.session_persistence,
            heartbeat_interval=heartbeat_interval,
            name="inbound",
        )
        self.outbound_supervisor = ConnectionSupervisor(
            outbound_pubsub,
            config.backoff,
            session_persistence=config.session_persistence,
            heartbeat_interval=heartbeat_interval,
            name="outbound",
        )
        self.log_supervisor = ConnectionSupervisor(
            log_transport,
            config.backoff,
            heartbeat_interval=heartbeat_interval,
            name="log",
        )

        self.inbound = InboundAdapter(
            self.inbound_supervisor,
            config.instance_id,
            self.metrics,
            capacity=config.channel_capacity,
        )
        self.outbound = OutboundAdapter(
            self.outbound_supervisor,
            capacity=config.outbound_capacity,
            default_guarantee=config.default_guarantee,
        )

        self.ingestion = IngestionPipeline(
            self.inbound,
            self.log_supervisor,
            TopicMapping(routes.mappings),
            self.reporter,
            self.metrics,
            *retry,
        )
        self.egress = EgressPipeline(
            self.log_supervisor,
            self.outbound,
            self.reporter,
            self.metrics,
            *retry,
            group=config.egress_group_id,
            pattern=routes.egress_pattern,
            mapping=TopicMapping(routes.egress_mappings),
            routes=routes.egress_routes,
            default_guarantee=routes.egress_guarantee,
        )
        self.submission = SubmissionPipeline(
            self.outbound, self.reporter, self.metrics, *retry,
        )

        self.federation = FederationLayer(
            config.instance_id,
            self.inbound,
            self.reporter,
            self.metrics,
            peer_factory or _no_peers,
            config.backoff,
            *retry,
            max_hops=config.federation_max_hops,
        )
        for route in routes.federation:
            self.federation.add_route(route)

        for subscription in routes.subscriptions:
            self.inbound.subscribe(subscription)

        log.info(
            "bridge_initialised",
            instance_id=config.instance_id,
            subscriptions=len(routes.subscriptions),
            federation_routes=len(routes.federation),
            channel_capacity=config.channel_capacity,
        )

    def start(self) -> None:
        """Start supervisors and workers; returns immediately."""
        self.started_at = datetime.now(timezone.utc)
        self.log_supervisor.start()
        self.outbound_supervisor.start()
        self.inbound_supervisor.start()
        self.federation.start()
        self.ingestion.start()
        self.egress.start()
        self.submission.start()
        log.info("bridge_started", instance_id=self.config.instance_id)

    def run(self) -> None:
        """Run until a shutdown signal, flushing metrics periodically."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.start()
        try:
            while not self._shutdown.wait(self.config.metrics_flush_seconds):
                self._record_gauges()
                self.metrics.flush()
        except KeyboardInterrupt:
            log.info("bridge_interrupted")
        finally:
            self.stop()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def submit(self, message: Message) -> bool:
        """Front door: queue a message for publishing to its device topic."""
        accepted = self.outbound.submit(message)
        if accepted:
            self.metrics.increment("bridge.submit.accepted")
        else:
            self.metrics.increment("bridge.submit.rejected")
        return accepted

    def stop(self, grace: float | None = None) -> None:
        """Graceful shutdown: stop intake, drain, disconnect, flush."""
        if self._stopped:
            return
        self._stopped = True
        self._shutdown.set()
        grace = self.config.shutdown_grace_seconds if grace is None else grace
        log.info("graceful_shutdown_starting", grace_seconds=grace)

        self.inbound.stop_accepting()
        self.outbound.stop_accepting()

        deadline = time.monotonic() + grace
        for pipeline in (self.ingestion, self.egress, self.submission):
            pipeline.stop(max(0.0, deadline - time.monotonic()))
        self.federation.stop(max(0.0, deadline - time.monotonic()))

        remaining = self.inbound.channel.qsize() + self.outbound.submitted.qsize()
        if remaining:
            log.warning("shutdown_with_remaining_messages", count=remaining)

        self.inbound_supervisor.stop()
        self.outbound_supervisor.stop()
        self.log_supervisor.stop()

        self._record_gauges()
        self.metrics.flush()

        log.info(
            "bridge_shutdown_complete",
            received=self.inbound.received,
            ingested=self.ingestion.stats["delivered"],
            egressed=self.egress.stats["delivered"],
            failed=self.reporter.total,
        )

    def _handle_shutdown(self, signum: int, frame: Any) -> None:
        """Signal handler for graceful shutdown."""
        log.info("shutdown_signal_received", signal=signum)
        self.request_shutdown()

    def _record_gauges(self) -> None:
        self.metrics.gauge("bridge.inbound.depth", self.inbound.channel.qsize())
        self.metrics.gauge("bridge.outbound.depth", self.outbound.submitted.qsize())
        for supervisor in self._supervisors():
            self.metrics.gauge(
                "bridge.connection.available",
                1 if supervisor.is_available() else 0,
                dimensions={"connection": supervisor.name},
            )

    def _supervisors(self) -> tuple[ConnectionSupervisor, ...]:
        return (self.inbound_supervisor, self.outbound_supervisor, self.log_supervisor)

    def get_health(self) -> dict[str, Any]:
        """Return health check data."""
        connections = [s.snapshot() for s in self._supervisors()]
        depth = self.inbound.channel.qsize()
        capacity = self.config.channel_capacity

        healthy = (
            not self._stopped
            and all(c["available"] for c in connections)
            and depth < capacity * 0.9
        )

        return {
            "status": "healthy" if healthy else "degraded",
            "instance_id": self.config.instance_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "connections": connections,
            "inbound": {
                "accepting": self.inbound.accepting,
                "depth": depth,
                "capacity": capacity,
                "received": self.inbound.received,
                "unrouted": self.inbound.unrouted,
                "refused": self.inbound.refused,
            },
            "outbound": {"queued": self.outbound.submitted.qsize()},
            "pipelines": [p.snapshot() for p in (self.ingestion, self.egress, self.submission)],
            "federation": self.federation.snapshot(),
            "failures": {
                "total": self.reporter.total,
                "recent": [r.to_dict() for r in self.reporter.recent()],
            },
        }


def _no_peers(route: FederationRoute) -> PubSubConnection:
    raise ConfigurationError(f"No peer connection factory for route {route.label!r}")


def build_bridge(config: BridgeConfig) -> TelemetryBridge:
    """Build a bridge connected to real MQTT and Kafka brokers."""
    from telemetry_bridge.kafka_transport import KafkaLogTransport
    from telemetry_bridge.mqtt_connection import MqttConnection

    client_id = f"{config.mqtt_client_id}-{config.instance_id}"
    inbound, outbound = (
        MqttConnection(
            config.mqtt_broker,
            f"{client_id}-{role}",
            credentials=config.mqtt_credentials,
            session_persistence=config.session_persistence,
            keepalive=config.mqtt_keepalive,
        )
        for role in ("in", "out")
    )
    log_transport = KafkaLogTransport(
        config.kafka_brokers,
        config.kafka_topic,
        client_id=client_id,
        credentials=config.kafka_credentials,
    )

    peer_ids = itertools.count(1)

    def peer_factory(route: FederationRoute) -> PubSubConnection:
        return MqttConnection(
            route.peer,
            f"{client_id}-fed-{next(peer_ids)}",
            credentials=config.mqtt_credentials,
            session_persistence=False,
            keepalive=config.mqtt_keepalive,
        )

    return TelemetryBridge(config, inbound, outbound, log_transport, peer_factory=peer_factory)


def main() -> None:
    """Entry point for the telemetry bridge."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
    )

    try:
        config = BridgeConfig.from_env()
        bridge = build_bridge(config)
    except ConfigurationError as e:
        log.error("configuration_invalid", error=str(e))
        sys.exit(1)

    from telemetry_bridge.server import create_app

    app = create_app(bridge)
    server_thread = threading.Thread(
        target=app.run,
        kwargs={"host": "0.0.0.0", "port": config.port, "use_reloader": False},
        name="http",
        daemon=True,
    )
    server_thread.start()

    bridge.run()


if __name__ == "__main__":
    main()
