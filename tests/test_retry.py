import pytest

from telemetry_bridge.retry import BackoffPolicy, RetryLedger


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_backoff_grows_and_caps():
    policy = BackoffPolicy(initial=0.5, multiplier=2.0, cap=3.0, jitter=0.0)
    assert [policy.delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert policy.delay(10_000) == 3.0


def test_jittered_delay_stays_within_upper_bound():
    policy = BackoffPolicy(initial=1.0, multiplier=2.0, cap=30.0, jitter=0.2)
    for attempt in range(1, 8):
        for _ in range(50):
            delay = policy.delay(attempt)
            assert delay <= policy.upper_bound(attempt)
            assert delay >= policy.base_delay(attempt) * 0.8 - 1e-9


@pytest.mark.parametrize(
    "kwargs",
    [
        {"initial": -1},
        {"initial": 5, "cap": 1},
        {"multiplier": 0.5},
        {"jitter": 1.0},
    ],
)
def test_invalid_backoff(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)


def test_failures_schedule_next_attempt_before_deadline():
    clock = FakeClock()
    ledger = RetryLedger(BackoffPolicy(initial=1.0, cap=8.0, jitter=0.0), 5.0, clock=clock)

    entry = ledger.record_failure("m1", "timeout")
    assert entry.attempts == 1
    assert entry.next_attempt_at == 101.0
    assert entry.deadline == 105.0

    clock.advance(1.0)
    entry = ledger.record_failure("m1", "timeout")
    assert entry.next_attempt_at == 103.0

    clock.advance(2.0)
    entry = ledger.record_failure("m1", "timeout")
    assert entry.next_attempt_at == 105.0
    assert not entry.expired(clock())

    clock.advance(2.0)
    assert entry.expired(clock())


def test_unavailable_keeps_deadline_without_counting_attempts():
    clock = FakeClock()
    ledger = RetryLedger(BackoffPolicy(jitter=0.0), 10.0, clock=clock)

    entry = ledger.record_unavailable("m1", "disconnected")
    clock.advance(4.0)
    entry = ledger.record_unavailable("m1", "disconnected")

    assert entry.attempts == 0
    assert entry.deadline == 110.0
    assert entry.last_error == "disconnected"


def test_clear_removes_entry():
    ledger = RetryLedger(BackoffPolicy(), 10.0)
    ledger.record_failure("m1", "x")
    assert len(ledger) == 1
    assert ledger.clear("m1").attempts == 1
    assert ledger.get("m1") is None
    assert ledger.clear("m1") is None
