import time

from structlog.testing import capture_logs

from telemetry_bridge.memory import MemoryPubSubConnection
from telemetry_bridge.message import GuaranteeLevel, Subscription
from telemetry_bridge.retry import BackoffPolicy
from telemetry_bridge.supervisor import ConnectionState, ConnectionSupervisor


def _record_transitions(supervisor):
    seen = []
    supervisor.add_listener(lambda old, new: seen.append((new, time.monotonic())))
    return seen


def test_connects_and_issues_subscriptions(broker, pubsub_supervisor, wait_for):
    received = []
    pubsub_supervisor.connection.set_message_handler(received.append)
    pubsub_supervisor.add_subscription(Subscription("vehicle/+/location"))

    pubsub_supervisor.start()
    assert pubsub_supervisor.wait_until_available(timeout=2.0)
    assert pubsub_supervisor.state is ConnectionState.CONNECTED

    broker.publish("vehicle/42/location", b"{}")
    assert wait_for(lambda: len(received) == 1)


def test_reconnects_within_backoff_bound(broker, pubsub_supervisor, fast_backoff, wait_for):
    seen = _record_transitions(pubsub_supervisor)
    pubsub_supervisor.start()
    assert pubsub_supervisor.wait_until_available(timeout=2.0)

    broker.fail("network partition")
    assert wait_for(lambda: pubsub_supervisor.state is ConnectionState.SUSPENDED)
    assert not pubsub_supervisor.is_available()

    broker.recover()
    assert wait_for(pubsub_supervisor.is_available)
    assert wait_for(lambda: seen[-1][0] is ConnectionState.CONNECTED)

    states = [state for state, _ in seen]
    suspended_at = next(t for state, t in seen if state is ConnectionState.SUSPENDED)
    reconnected_at = [t for state, t in seen if state is ConnectionState.CONNECTED][-1]
    assert states[-2:] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    # Broker recovered immediately, so one backoff delay plus scheduling slack
    assert reconnected_at - suspended_at < fast_backoff.upper_bound(1) + 1.0


def test_failed_handshake_goes_to_suspended_then_recovers(broker, supervisors, fast_backoff, wait_for):
    connection = MemoryPubSubConnection(broker, "flaky")
    connection.connect_failures = 2
    supervisor = ConnectionSupervisor(connection, fast_backoff, heartbeat_interval=0.02)
    supervisors.append(supervisor)
    seen = _record_transitions(supervisor)

    supervisor.start()
    assert supervisor.wait_until_available(timeout=2.0)

    states = [state for state, _ in seen]
    assert states[:4] == [
        ConnectionState.CONNECTING,
        ConnectionState.SUSPENDED,
        ConnectionState.CONNECTING,
        ConnectionState.SUSPENDED,
    ]
    assert supervisor.snapshot()["consecutive_failures"] == 0
    assert supervisor.connects == 1


def test_persistent_session_is_resumed_without_resubscribing(broker, pubsub_supervisor, wait_for):
    pubsub_supervisor.add_subscription(Subscription("vehicle/#", GuaranteeLevel.AT_LEAST_ONCE))
    pubsub_supervisor.start()
    assert pubsub_supervisor.wait_until_available(timeout=2.0)

    with capture_logs() as logs:
        broker.fail()
        assert wait_for(lambda: pubsub_supervisor.state is ConnectionState.SUSPENDED)
        broker.recover()
        assert wait_for(pubsub_supervisor.is_available)

    events = [entry["event"] for entry in logs]
    assert "session_resumed" in events
    assert "subscription_issued" not in events


def test_clean_session_resubscribes_after_reconnect(broker, supervisors, fast_backoff, wait_for):
    connection = MemoryPubSubConnection(broker, "clean", session_persistence=False)
    supervisor = ConnectionSupervisor(
        connection, fast_backoff, session_persistence=False, heartbeat_interval=0.02,
    )
    supervisors.append(supervisor)
    received = []
    connection.set_message_handler(received.append)
    supervisor.add_subscription(Subscription("vehicle/#"))
    supervisor.start()
    assert supervisor.wait_until_available(timeout=2.0)

    broker.fail()
    assert wait_for(lambda: supervisor.state is ConnectionState.SUSPENDED)
    broker.recover()
    assert wait_for(supervisor.is_available)

    broker.publish("vehicle/1/location", b"{}")
    assert wait_for(lambda: len(received) == 1)


def test_stop_forces_disconnected_and_ignores_later_failures(pubsub_supervisor):
    pubsub_supervisor.start()
    assert pubsub_supervisor.wait_until_available(timeout=2.0)

    pubsub_supervisor.stop()
    assert pubsub_supervisor.state is ConnectionState.DISCONNECTED
    assert not pubsub_supervisor.connection.is_connected()

    pubsub_supervisor.report_failure("late")
    assert pubsub_supervisor.state is ConnectionState.DISCONNECTED


def test_snapshot_reports_suspension(broker, supervisors, wait_for):
    slow = BackoffPolicy(initial=5.0, multiplier=2.0, cap=5.0, jitter=0.0)
    supervisor = ConnectionSupervisor(
        MemoryPubSubConnection(broker, "slow"), slow, heartbeat_interval=0.02,
    )
    supervisors.append(supervisor)
    supervisor.start()
    assert supervisor.wait_until_available(timeout=2.0)

    broker.fail("maintenance")
    assert wait_for(lambda: supervisor.state is ConnectionState.SUSPENDED)

    snapshot = supervisor.snapshot()
    assert snapshot["state"] == "suspended"
    assert snapshot["available"] is False
    assert snapshot["consecutive_failures"] == 1
    assert snapshot["last_error"] == "maintenance"
    assert 0 < snapshot["next_attempt_in_seconds"] <= 5.0
