"""Attempt-counting rate limiter over pluggable throttle storage.

Notes:
- Atomic storage (``AtomicThrottleStorage``): every ``hit``/``attempt`` is a
  single increment round trip, so counts hold under concurrent requests.
- Other storage: read, mutate and write are separate calls. Two concurrent
  requests for the same key can both read the same count and undercount by
  one. No lock is taken here; pick an atomic backend when that matters.
"""

from __future__ import annotations

import time
from typing import Callable

from gatekeeper.adapters.rate_limit.base import AbstractRateLimiter, AttemptResult
from gatekeeper.adapters.throttle_storage.base import (
    AtomicThrottleStorage,
    ThrottleRecord,
    ThrottleStorage,
)


class RateLimiter(AbstractRateLimiter):
    """Fixed-window attempt counter.

    A key moves from fresh (no record or expired) to active, then exceeded
    once ``attempts >= max_attempts``, and back to fresh when its window
    expires or it is cleared.
    """

    def __init__(
        self,
        storage: ThrottleStorage,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            storage: Backend holding one record per key.
            clock: Time source function returning UNIX time in seconds.
        """
        self._storage = storage
        self._clock = clock

    @property
    def storage(self) -> ThrottleStorage:
        return self._storage

    def now(self) -> int:
        return int(self._clock())

    def _atomic(self) -> AtomicThrottleStorage | None:
        storage = self._storage
        return storage if isinstance(storage, AtomicThrottleStorage) else None

    def too_many_attempts(self, key: str, max_attempts: int) -> bool:
        record = self._storage.get(key)
        if record is None:
            return False

        if record.is_expired(self.now()):
            self.clear(key)
            return False

        return record.attempts >= max_attempts

    def hit(self, key: str, decay_seconds: int) -> int:
        atomic = self._atomic()
        if atomic is not None:
            return atomic.increment(key, decay_seconds, self.now()).attempts

        now = self.now()
        record = self._storage.get(key)
        if record is None or record.is_expired(now):
            record = ThrottleRecord(attempts=0, expires_at=now + decay_seconds)

        record = ThrottleRecord(attempts=record.attempts + 1, expires_at=record.expires_at)
        self._storage.put(key, record)
        return record.attempts

    def attempt(self, key: str, max_attempts: int, decay_seconds: int) -> AttemptResult:
        """Count an attempt for ``key`` and decide whether it is limited.

        With atomic storage the attempt is always recorded, including the one
        that crosses the limit, and ``limited`` is ``attempts > max_attempts``.
        Without it the limit is checked first and an already-limited key is
        not incremented again, so its window does not keep growing.

        Args:
            key: Throttle key.
            max_attempts: Attempts allowed per window.
            decay_seconds: Window length for a fresh record.

        Returns:
            AttemptResult describing the decision.
        """
        atomic = self._atomic()
        if atomic is not None:
            now = self.now()
            record = atomic.increment(key, decay_seconds, now)
            return AttemptResult(
                attempts=record.attempts,
                remaining=max(0, max_attempts - record.attempts),
                limited=record.attempts > max_attempts,
                retry_after=max(0, record.expires_at - now),
            )

        if self.too_many_attempts(key, max_attempts):
            return AttemptResult(
                attempts=max_attempts,
                remaining=0,
                limited=True,
                retry_after=self.available_in(key),
            )

        attempts = self.hit(key, decay_seconds)
        return AttemptResult(
            attempts=attempts,
            remaining=max(0, max_attempts - attempts),
            limited=False,
            retry_after=0,
        )

    def available_in(self, key: str) -> int:
        record = self._storage.get(key)
        if record is None:
            return 0
        return max(0, record.expires_at - self.now())

    def clear(self, key: str) -> None:
        self._storage.forget(key)
