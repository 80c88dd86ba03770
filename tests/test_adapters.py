import threading

import pytest
from structlog.testing import capture_logs

from telemetry_bridge.adapters import InboundAdapter, OutboundAdapter
from telemetry_bridge.errors import TransientConnectionError
from telemetry_bridge.memory import MemoryPubSubConnection
from telemetry_bridge.message import GuaranteeLevel, InboundDelivery, Message, Subscription


@pytest.fixture
def started(pubsub_supervisor):
    def _start():
        pubsub_supervisor.start()
        assert pubsub_supervisor.wait_until_available(timeout=2.0)

    return _start


def test_origin_is_stamped_on_receipt(broker, pubsub_supervisor, metrics, started):
    inbound = InboundAdapter(pubsub_supervisor, "bridge-a", metrics)
    inbound.subscribe(Subscription("vehicle/#"))
    started()

    broker.publish("vehicle/1/location", b"a")
    broker.publish("vehicle/1/location", b"b", origin="bridge-b", hop_count=1)

    first = inbound.channel.get(timeout=1.0).message
    second = inbound.channel.get(timeout=1.0).message
    assert first.origin == "bridge-a"
    assert second.origin == "bridge-b"
    assert second.hop_count == 1


def test_unsubscribe_stops_delivery(broker, pubsub_supervisor, metrics, started):
    inbound = InboundAdapter(pubsub_supervisor, "bridge-a", metrics)
    inbound.subscribe(Subscription("vehicle/+/location"))
    started()

    inbound.unsubscribe("vehicle/+/location")
    assert broker.publish("vehicle/1/location", b"a") == 0
    assert inbound.channel.empty()
    assert pubsub_supervisor.subscriptions == []


def test_unrouted_delivery_is_acked(pubsub_supervisor, metrics):
    inbound = InboundAdapter(pubsub_supervisor, "bridge-a", metrics)
    acks = []

    inbound.on_delivery(InboundDelivery(Message("depot/1/door", b""), ack=lambda: acks.append(1)))

    assert acks == [1]
    assert inbound.unrouted == 1


def test_full_channel_blocks_until_drained(pubsub_supervisor, metrics):
    inbound = InboundAdapter(pubsub_supervisor, "bridge-a", metrics, capacity=1)
    inbound.router.add("vehicle/#", inbound.enqueue)
    inbound.on_delivery(InboundDelivery(Message("vehicle/1/location", b"1")))

    done = threading.Event()

    def deliver_second():
        inbound.on_delivery(InboundDelivery(Message("vehicle/1/location", b"2")))
        done.set()

    with capture_logs() as logs:
        worker = threading.Thread(target=deliver_second)
        worker.start()
        assert not done.wait(0.3)

        assert inbound.channel.get(timeout=1.0).message.payload == b"1"
        assert done.wait(2.0)
        worker.join()

    events = [entry["event"] for entry in logs]
    assert "inbound_blocked" in events
    assert "inbound_resumed" in events
    assert inbound.channel.get(timeout=1.0).message.payload == b"2"
    assert metrics.count("bridge.inbound.blocked") == 1


def test_refuses_without_ack_once_stopped(pubsub_supervisor, metrics):
    inbound = InboundAdapter(pubsub_supervisor, "bridge-a", metrics)
    inbound.router.add("vehicle/#", inbound.enqueue)
    inbound.stop_accepting()
    acks = []

    inbound.on_delivery(InboundDelivery(Message("vehicle/1/location", b""), ack=lambda: acks.append(1)))

    assert acks == []
    assert inbound.refused == 1
    assert inbound.channel.empty()


def test_outbound_uses_destination_override(broker, pubsub_supervisor, started):
    received = []
    device = MemoryPubSubConnection(broker, "truck-42")
    device.set_message_handler(lambda d: received.append(d.message))
    device.connect()
    device.subscribe("vehicle/#", GuaranteeLevel.AT_MOST_ONCE)

    outbound = OutboundAdapter(pubsub_supervisor)
    started()
    outbound.publish(Message("command/42", b"go", destination="vehicle/42/display"))

    assert [m.topic for m in received] == ["vehicle/42/display"]


def test_outbound_unavailable_raises(pubsub_supervisor):
    outbound = OutboundAdapter(pubsub_supervisor)
    with pytest.raises(TransientConnectionError):
        outbound.publish(Message("vehicle/1/display", b""))


def test_submit_never_blocks(pubsub_supervisor):
    outbound = OutboundAdapter(pubsub_supervisor, capacity=1)
    assert outbound.submit(Message("vehicle/1/display", b"a"))
    assert not outbound.submit(Message("vehicle/1/display", b"b"))
    outbound.stop_accepting()
    assert outbound.submitted.qsize() == 1
    assert not outbound.submit(Message("vehicle/1/display", b"c"))
