"""Connection Supervisor: reconnect/backoff state machine for one connection.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING   -> SUSPENDED  (handshake failed)
    CONNECTED    -> SUSPENDED  (heartbeat failed or transport dropped)
    SUSPENDED    -> CONNECTING (backoff timer fired)
    any          -> DISCONNECTED (deliberate shutdown only)

The supervisor is the only writer of its state. Pipelines read it through
``is_available`` / ``wait_until_available`` and never see raw connection
failures; they report them with ``report_failure`` instead.
"""

import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import structlog

from telemetry_bridge.errors import TransientConnectionError
from telemetry_bridge.message import Subscription
from telemetry_bridge.retry import BackoffPolicy
from telemetry_bridge.transports import Connection

log = structlog.get_logger()


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUSPENDED = "suspended"


StateListener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionSupervisor:
    """Owns one connection and keeps it connected for the process lifetime."""

    def __init__(
        self,
        connection: Connection,
        backoff: BackoffPolicy,
        *,
        session_persistence: bool = True,
        heartbeat_interval: float = 1.0,
        name: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.connection = connection
        self.backoff = backoff
        self.session_persistence = session_persistence
        self.heartbeat_interval = heartbeat_interval
        self.name = name or connection.name
        self.clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._condition = threading.Condition()
        self._lost = threading.Event()
        self._lost_reason: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._listeners: list[StateListener] = []

        # Subscriptions survive reconnects; pending ones were never issued
        self._subscriptions: dict[str, Subscription] = {}
        self._pending: set[str] = set()
        self._subscription_lock = threading.Lock()

        # Health
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._connected_since: datetime | None = None
        self._next_attempt_at: float | None = None
        self.transitions = 0
        self.connects = 0

        connection.set_connection_lost_handler(self.report_failure)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> list[Subscription]:
        with self._subscription_lock:
            return list(self._subscriptions.values())

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def is_available(self) -> bool:
        return self._state is ConnectionState.CONNECTED and not self._lost.is_set()

    def wait_until_available(self, timeout: float | None = None) -> bool:
        """Block until CONNECTED or ``timeout``; returns availability."""
        with self._condition:
            self._condition.wait_for(self.is_available, timeout=timeout)
        return self.is_available()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"supervisor-{self.name}", daemon=True,
        )
        self._thread.start()
        log.info("supervisor_started", connection=self.name)

    def stop(self, timeout: float = 5.0) -> None:
        """Deliberate shutdown: stop reconnecting and force DISCONNECTED."""
        self._stop.set()
        self._lost.set()
        with self._condition:
            self._condition.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        try:
            self.connection.disconnect()
        except Exception as e:
            log.warning("disconnect_failed", connection=self.name, error=str(e))
        self._set_state(ConnectionState.DISCONNECTED)
        log.info("supervisor_stopped", connection=self.name)

    def report_failure(self, reason: str | BaseException) -> None:
        """Record a connection-level failure seen by the transport or a caller."""
        if self._stop.is_set():
            return
        self._lost_reason = str(reason)
        if not self._lost.is_set():
            log.warning("connection_lost", connection=self.name, reason=str(reason))
        self._lost.set()

    def add_subscription(self, subscription: Subscription) -> None:
        with self._subscription_lock:
            self._subscriptions[subscription.pattern] = subscription
            self._pending.add(subscription.pattern)
        if self.is_available():
            try:
                self._issue_pending()
            except TransientConnectionError as e:
                # Stays pending; issued again on the next successful connect.
                log.warning(
                    "subscription_deferred",
                    connection=self.name,
                    pattern=subscription.pattern,
                    error=str(e),
                )

    def remove_subscription(self, pattern: str) -> None:
        with self._subscription_lock:
            removed = self._subscriptions.pop(pattern, None)
            self._pending.discard(pattern)
        if removed is not None and self.is_available():
            try:
                self.connection.unsubscribe(pattern)
            except TransientConnectionError as e:
                self.report_failure(e)

    def snapshot(self) -> dict[str, Any]:
        """Health data for this connection."""
        next_attempt_in = None
        if self._state is ConnectionState.SUSPENDED and self._next_attempt_at is not None:
            next_attempt_in = max(0.0, self._next_attempt_at - self.clock())
        return {
            "connection": self.name,
            "state": self._state.value,
            "available": self.is_available(),
            "connected_since": (
                self._connected_since.isoformat() if self._connected_since else None
            ),
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "next_attempt_in_seconds": next_attempt_in,
            "connects": self.connects,
            "transitions": self.transitions,
            "subscriptions": [s.pattern for s in self.subscriptions],
        }

    def _run(self) -> None:
        while not self._stop.is_set():
            if self._state in (ConnectionState.DISCONNECTED, ConnectionState.SUSPENDED):
                self._attempt_connect()
            else:
                self._watch()

    def _attempt_connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        self._lost.clear()
        self._lost_reason = None
        try:
            session_present = self.connection.connect()
            self._restore_subscriptions(session_present)
        except Exception as e:
            # Connection failures are never fatal; anything raised here is retried.
            self._suspend(str(e))
            return

        if self._stop.is_set():
            return
        self._consecutive_failures = 0
        self._last_error = None
        self._connected_since = datetime.now(timezone.utc)
        self.connects += 1
        self._set_state(ConnectionState.CONNECTED)

    def _watch(self) -> None:
        self._lost.wait(self.heartbeat_interval)
        if self._stop.is_set():
            return
        if self._lost.is_set():
            self._suspend(self._lost_reason or "connection_lost")
        elif not self.connection.is_connected():
            self._suspend("heartbeat_failed")

    def _suspend(self, reason: str) -> None:
        was_connected = self._state is ConnectionState.CONNECTED
        self._consecutive_failures += 1
        self._last_error = reason
        self._connected_since = None
        delay = self.backoff.delay(self._consecutive_failures)
        self._next_attempt_at = self.clock() + delay
        self._set_state(ConnectionState.SUSPENDED)
        log.warning(
            "connection_suspended",
            connection=self.name,
            reason=reason,
            attempt=self._consecutive_failures,
            retry_in_seconds=round(delay, 3),
        )

        if was_connected:
            try:
                self.connection.disconnect()
            except Exception as e:
                log.debug("disconnect_after_failure_failed", connection=self.name, error=str(e))

        self._stop.wait(delay)

    def _restore_subscriptions(self, session_present: bool) -> None:
        """Re-issue subscriptions unless the broker resumed our session."""
        with self._subscription_lock:
            if not self._subscriptions:
                return
            if not (self.session_persistence and session_present):
                self._pending = set(self._subscriptions)
            resumed = len(self._subscriptions) - len(self._pending)
        if resumed:
            log.info("session_resumed", connection=self.name, subscriptions=resumed)
        self._issue_pending()

    def _issue_pending(self) -> None:
        with self._subscription_lock:
            pending = [self._subscriptions[p] for p in sorted(self._pending)]
        for subscription in pending:
            try:
                self.connection.subscribe(subscription.pattern, subscription.guarantee)
            except TransientConnectionError as e:
                self.report_failure(e)
                raise
            with self._subscription_lock:
                self._pending.discard(subscription.pattern)
            log.info(
                "subscription_issued",
                connection=self.name,
                pattern=subscription.pattern,
                guarantee=subscription.guarantee.name,
            )

    def _set_state(self, new: ConnectionState) -> None:
        with self._condition:
            old = self._state
            if old is new:
                return
            self._state = new
            self.transitions += 1
            self._condition.notify_all()

        log.info(
            "connection_state_changed",
            connection=self.name,
            old_state=old.value,
            new_state=new.value,
        )
        for listener in self._listeners:
            try:
                listener(old, new)
            except Exception as e:
                log.error("state_listener_failed", connection=self.name, error=str(e))
