import time

import pytest

from telemetry_bridge.adapters import InboundAdapter
from telemetry_bridge.errors import InvalidPatternError
from telemetry_bridge.federation import FederationLayer, FederationRoute, should_forward
from telemetry_bridge.memory import MemoryBroker, MemoryPubSubConnection
from telemetry_bridge.message import GuaranteeLevel, Message
from telemetry_bridge.supervisor import ConnectionSupervisor


def test_should_forward():
    fresh = Message("vehicle/99/alert", b"", origin="A")
    assert should_forward(fresh, "A") == (True, None)

    looped = Message("vehicle/99/alert", b"", origin="A", hop_count=1)
    assert should_forward(looped, "A") == (False, "loop")

    from_peer = Message("vehicle/99/alert", b"", origin="B", hop_count=1)
    assert should_forward(from_peer, "A", peer_id="B") == (False, "origin_is_peer")
    assert should_forward(from_peer, "A", peer_id="C") == (True, None)

    far = Message("vehicle/99/alert", b"", origin="B", hop_count=3)
    assert should_forward(far, "A", max_hops=3) == (False, "hop_limit")


def test_route_pattern_is_validated():
    with pytest.raises(InvalidPatternError):
        FederationRoute("vehicle/#/alert", "peer:1883")


class Instance:
    """Inbound adapter plus federation layer for one bridge id."""

    def __init__(self, local_id, local_broker, routes, metrics, reporter, backoff):
        self.supervisor = ConnectionSupervisor(
            MemoryPubSubConnection(local_broker, local_id),
            backoff,
            heartbeat_interval=0.02,
            name=f"{local_id}-pubsub",
        )
        self.inbound = InboundAdapter(self.supervisor, local_id, metrics)
        self.layer = FederationLayer(
            local_id,
            self.inbound,
            reporter,
            metrics,
            lambda route: MemoryPubSubConnection(
                routes[route], f"{local_id}-fed", session_persistence=False,
            ),
            backoff,
            backoff,
            2.0,
        )
        self.forwarders = [self.layer.add_route(route) for route in routes]

    def start(self):
        self.supervisor.start()
        self.layer.start()
        assert self.supervisor.wait_until_available(timeout=2.0)
        for forwarder in self.forwarders:
            assert forwarder.supervisor.wait_until_available(timeout=2.0)

    def stop(self):
        self.layer.stop(grace=1.0)
        self.supervisor.stop()


@pytest.fixture
def instances():
    created: list[Instance] = []
    yield created
    for instance in created:
        instance.stop()


def _listener(broker, client_id="observer"):
    received: list[Message] = []
    connection = MemoryPubSubConnection(broker, client_id)
    connection.set_message_handler(lambda d: (received.append(d.message), d.acknowledge()))
    connection.connect()
    connection.subscribe("vehicle/#", GuaranteeLevel.AT_LEAST_ONCE)
    return received


def test_forwards_subtree_and_suppresses_loop(metrics, reporter, fast_backoff, instances, wait_for):
    broker_a = MemoryBroker("broker-a")
    broker_b = MemoryBroker("broker-b")
    route = FederationRoute("vehicle/#", "broker-b:1883", name="to-b")
    a = Instance("A", broker_a, {route: broker_b}, metrics, reporter, fast_backoff)
    instances.append(a)
    a.start()
    at_b = _listener(broker_b)

    broker_a.publish("vehicle/99/alert", b"overheat", GuaranteeLevel.AT_LEAST_ONCE)

    assert wait_for(lambda: len(at_b) == 1)
    forwarded = at_b[0]
    assert forwarded.topic == "vehicle/99/alert"
    assert forwarded.payload == b"overheat"
    assert forwarded.origin == "A"
    assert forwarded.hop_count == 1
    assert wait_for(lambda: len(broker_a.acked) == 1)

    # The same message coming back to A, already marked as originating here
    broker_a.publish(
        "vehicle/99/alert", b"overheat", GuaranteeLevel.AT_LEAST_ONCE, origin="A", hop_count=1,
    )
    assert wait_for(lambda: a.forwarders[0].stats["skipped"] == 1)
    time.sleep(0.1)
    assert len(at_b) == 1
    # Skipped deliveries are still released upstream
    assert wait_for(lambda: len(broker_a.acked) == 2)


def test_bidirectional_peers_do_not_loop(metrics, reporter, fast_backoff, instances, wait_for):
    broker_a = MemoryBroker("broker-a")
    broker_b = MemoryBroker("broker-b")
    to_b = FederationRoute("vehicle/#", "broker-b:1883")
    to_a = FederationRoute("vehicle/#", "broker-a:1883")
    a = Instance("A", broker_a, {to_b: broker_b}, metrics, reporter, fast_backoff)
    b = Instance("B", broker_b, {to_a: broker_a}, metrics, reporter, fast_backoff)
    instances.extend([a, b])
    a.start()
    b.start()

    broker_a.publish("vehicle/7/location", b"lat=1,lon=2")

    assert wait_for(lambda: b.forwarders[0].stats["delivered"] == 1)
    assert wait_for(lambda: a.forwarders[0].stats["skipped"] == 1)
    time.sleep(0.2)
    assert a.forwarders[0].stats["delivered"] == 1
    assert b.forwarders[0].stats["delivered"] == 1
    assert len(broker_a.published) == 2
    assert len(broker_b.published) == 1


def test_route_guarantee_overrides_message_level(metrics, reporter, fast_backoff, instances, wait_for):
    broker_a = MemoryBroker("broker-a")
    broker_b = MemoryBroker("broker-b")
    route = FederationRoute("vehicle/#", "broker-b:1883", guarantee=GuaranteeLevel.AT_MOST_ONCE)
    a = Instance("A", broker_a, {route: broker_b}, metrics, reporter, fast_backoff)
    instances.append(a)
    a.start()
    at_b = _listener(broker_b)

    broker_a.publish("vehicle/1/location", b"x", GuaranteeLevel.AT_LEAST_ONCE)

    assert wait_for(lambda: len(at_b) == 1)
    assert at_b[0].guarantee is GuaranteeLevel.AT_MOST_ONCE


def test_snapshot_includes_peer_state(metrics, reporter, fast_backoff, instances):
    broker_a = MemoryBroker("broker-a")
    broker_b = MemoryBroker("broker-b")
    route = FederationRoute("vehicle/#", "broker-b:1883", name="to-b")
    a = Instance("A", broker_a, {route: broker_b}, metrics, reporter, fast_backoff)
    instances.append(a)
    a.start()

    (snapshot,) = a.layer.snapshot()
    assert snapshot["pipeline"] == "federation:to-b"
    assert snapshot["peer"]["state"] == "connected"
