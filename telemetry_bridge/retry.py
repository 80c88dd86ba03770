"""Backoff and the per-message retry ledger.

Retry policy is kept apart from the transport call so it can be exercised
without any network I/O: the pipelines ask the ledger what to do and when.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential, capped backoff with proportional jitter.

    Delay for 1-based attempt n is initial * multiplier**(n-1), scaled by a
    random factor in [1 - jitter, 1 + jitter], and never above ``cap``.
    """
    initial: float = 0.5
    multiplier: float = 2.0
    cap: float = 30.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.initial < 0 or self.cap < 0:
            raise ValueError("initial and cap must be >= 0")
        if self.initial > self.cap:
            raise ValueError("initial must be <= cap")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def base_delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        # Clamp the exponent so large attempt counts cannot overflow.
        exponent = min(attempt - 1, 64)
        return min(self.initial * (self.multiplier ** exponent), self.cap)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        if self.jitter:
            base *= 1 + random.uniform(-self.jitter, self.jitter)  # noqa: S311
        return max(0.0, min(base, self.cap))

    def upper_bound(self, attempt: int) -> float:
        """Largest delay ``delay(attempt)`` can return."""
        return min(self.base_delay(attempt) * (1 + self.jitter), self.cap)


@dataclass
class RetryEntry:
    """Retry state for one in-flight message."""
    key: str
    deadline: float
    first_failure_at: float
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: str | None = None

    def expired(self, now: float) -> bool:
        return now >= self.deadline


@dataclass
class RetryLedger:
    """Retry entries owned by a single pipeline worker.

    Not thread-safe; only the worker that created an entry touches it.
    """
    backoff: BackoffPolicy
    deadline_seconds: float
    clock: Callable[[], float] = time.monotonic
    entries: dict[str, RetryEntry] = field(default_factory=dict)

    def open(self, key: str) -> RetryEntry:
        """Return the entry for ``key``, creating it with a fresh deadline."""
        entry = self.entries.get(key)
        if entry is None:
            now = self.clock()
            entry = RetryEntry(
                key=key,
                deadline=now + self.deadline_seconds,
                first_failure_at=now,
                next_attempt_at=now,
            )
            self.entries[key] = entry
        return entry

    def record_failure(self, key: str, error: str) -> RetryEntry:
        """Count a failed attempt and schedule the next one."""
        entry = self.open(key)
        entry.attempts += 1
        entry.last_error = error
        now = self.clock()
        entry.next_attempt_at = min(now + self.backoff.delay(entry.attempts), entry.deadline)
        return entry

    def record_unavailable(self, key: str, error: str) -> RetryEntry:
        """Track a connection-level failure: deadline applies, attempts do not."""
        entry = self.open(key)
        entry.last_error = error
        return entry

    def get(self, key: str) -> RetryEntry | None:
        return self.entries.get(key)

    def clear(self, key: str) -> RetryEntry | None:
        return self.entries.pop(key, None)

    def __len__(self) -> int:
        return len(self.entries)
