"""Shared fixtures: in-memory brokers, fast backoff and supervised connections."""

import time
from typing import Callable

import pytest

from telemetry_bridge.config import BridgeConfig, RoutesConfig
from telemetry_bridge.failures import FailureReporter
from telemetry_bridge.memory import MemoryBroker, MemoryLog, MemoryLogTransport, MemoryPubSubConnection
from telemetry_bridge.metrics import MetricsClient
from telemetry_bridge.retry import BackoffPolicy
from telemetry_bridge.supervisor import ConnectionSupervisor

FAST_BACKOFF = BackoffPolicy(initial=0.01, multiplier=2.0, cap=0.05, jitter=0.0)


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    return FAST_BACKOFF


@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker()


@pytest.fixture
def log_store() -> MemoryLog:
    return MemoryLog()


@pytest.fixture
def metrics() -> MetricsClient:
    return MetricsClient("test-instance")


@pytest.fixture
def reporter(metrics) -> FailureReporter:
    return FailureReporter(metrics)


@pytest.fixture
def supervisors():
    """Collects supervisors created in a test and stops them afterwards."""
    created: list[ConnectionSupervisor] = []
    yield created
    for supervisor in created:
        supervisor.stop(timeout=1.0)


@pytest.fixture
def pubsub_supervisor(broker, supervisors) -> ConnectionSupervisor:
    supervisor = ConnectionSupervisor(
        MemoryPubSubConnection(broker, "bridge-a"),
        FAST_BACKOFF,
        heartbeat_interval=0.02,
        name="pubsub",
    )
    supervisors.append(supervisor)
    return supervisor


@pytest.fixture
def log_supervisor(log_store, supervisors) -> ConnectionSupervisor:
    supervisor = ConnectionSupervisor(
        MemoryLogTransport(log_store),
        FAST_BACKOFF,
        heartbeat_interval=0.02,
        name="log",
    )
    supervisors.append(supervisor)
    return supervisor


@pytest.fixture
def make_config():
    def _make(routes: RoutesConfig | None = None, **overrides) -> BridgeConfig:
        values = dict(
            instance_id="bridge-a",
            mqtt_broker="localhost:1883",
            mqtt_client_id="telemetry-bridge",
            mqtt_credentials=None,
            mqtt_keepalive=60,
            session_persistence=True,
            kafka_brokers="localhost:9092",
            kafka_topic="telemetry",
            kafka_credentials=None,
            egress_group_id="egress",
            backoff=FAST_BACKOFF,
            retry_backoff=FAST_BACKOFF,
            retry_deadline_seconds=2.0,
            shutdown_grace_seconds=2.0,
            routes=routes or RoutesConfig(),
        )
        values.update(overrides)
        return BridgeConfig(**values)

    return _make
