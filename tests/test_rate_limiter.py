"""Unit tests for the attempt-counting rate limiter."""

from __future__ import annotations

import pytest

from gatekeeper.adapters.rate_limit.limiter import RateLimiter
from gatekeeper.adapters.throttle_storage.base import (
    AtomicThrottleStorage,
    ThrottleRecord,
    ThrottleStorage,
)
from gatekeeper.adapters.throttle_storage.session import SessionThrottleStorage


class DictAtomicStorage(ThrottleStorage):
    """In-memory storage exposing the atomic increment capability."""

    def __init__(self) -> None:
        self.data: dict[str, ThrottleRecord] = {}
        self.increments = 0

    def get(self, key: str) -> ThrottleRecord | None:
        return self.data.get(key)

    def put(self, key: str, record: ThrottleRecord) -> None:
        self.data[key] = record

    def forget(self, key: str) -> None:
        self.data.pop(key, None)

    def increment(self, key: str, decay_seconds: int, now: int) -> ThrottleRecord:
        self.increments += 1
        record = self.data.get(key)
        if record is None or record.expires_at <= now:
            record = ThrottleRecord(attempts=0, expires_at=now + decay_seconds)
        record = ThrottleRecord(attempts=record.attempts + 1, expires_at=record.expires_at)
        self.data[key] = record
        return record


@pytest.fixture
def session_limiter(fake_time) -> RateLimiter:
    return RateLimiter(SessionThrottleStorage({}), clock=fake_time.time)


def test_capability_check_distinguishes_backends() -> None:
    assert isinstance(DictAtomicStorage(), AtomicThrottleStorage)
    assert not isinstance(SessionThrottleStorage({}), AtomicThrottleStorage)


def test_unknown_key_is_not_limited(session_limiter: RateLimiter) -> None:
    assert session_limiter.too_many_attempts("never-hit", 1) is False
    assert session_limiter.available_in("never-hit") == 0


def test_tracks_attempts_and_expiry(session_limiter: RateLimiter, fake_time) -> None:
    key = "login:abc"

    assert session_limiter.too_many_attempts(key, 2) is False
    assert session_limiter.hit(key, 10) == 1
    assert session_limiter.too_many_attempts(key, 2) is False
    assert session_limiter.hit(key, 10) == 2
    assert session_limiter.too_many_attempts(key, 2) is True
    assert session_limiter.available_in(key) == 10

    fake_time.advance(11)

    assert session_limiter.too_many_attempts(key, 2) is False
    assert session_limiter.available_in(key) == 0
    assert session_limiter.hit(key, 10) == 1


def test_expired_record_is_removed_on_check(fake_time) -> None:
    store: dict = {}
    limiter = RateLimiter(SessionThrottleStorage(store), clock=fake_time.time)

    limiter.hit("k", 5)
    fake_time.advance(5)

    assert limiter.too_many_attempts("k", 1) is False
    assert store == {}


def test_record_without_expiry_never_clears(fake_time) -> None:
    storage = SessionThrottleStorage({})
    storage.put("k", ThrottleRecord(attempts=3, expires_at=0))
    limiter = RateLimiter(storage, clock=fake_time.time)

    fake_time.advance(10_000)

    assert limiter.too_many_attempts("k", 3) is True
    assert limiter.available_in("k") == 0


def test_clear_resets_key(session_limiter: RateLimiter) -> None:
    session_limiter.hit("k", 60)
    session_limiter.hit("k", 60)

    session_limiter.clear("k")

    assert session_limiter.too_many_attempts("k", 1) is False
    assert session_limiter.hit("k", 60) == 1


def test_non_atomic_attempt_does_not_count_rejected_calls(session_limiter: RateLimiter) -> None:
    first = session_limiter.attempt("k", 2, 30)
    second = session_limiter.attempt("k", 2, 30)
    third = session_limiter.attempt("k", 2, 30)
    fourth = session_limiter.attempt("k", 2, 30)

    assert (first.attempts, first.remaining, first.limited) == (1, 1, False)
    assert (second.attempts, second.remaining, second.limited) == (2, 0, False)
    assert third.limited is True
    assert third.attempts == 2
    assert third.remaining == 0
    assert third.retry_after == 30
    assert fourth.limited is True
    assert session_limiter.storage.get("k").attempts == 2


def test_atomic_attempt_counts_every_call(fake_time) -> None:
    storage = DictAtomicStorage()
    limiter = RateLimiter(storage, clock=fake_time.time)

    results = [limiter.attempt("login", 2, 10) for _ in range(3)]

    assert [r.attempts for r in results] == [1, 2, 3]
    assert [r.limited for r in results] == [False, False, True]
    assert [r.remaining for r in results] == [1, 0, 0]
    assert results[-1].retry_after == 10
    assert storage.increments == 3


def test_atomic_hit_delegates_to_increment(fake_time) -> None:
    storage = DictAtomicStorage()
    limiter = RateLimiter(storage, clock=fake_time.time)

    assert limiter.hit("k", 10) == 1
    assert limiter.hit("k", 10) == 2
    assert storage.increments == 2

    fake_time.advance(10)
    assert limiter.hit("k", 10) == 1


@pytest.mark.parametrize("max_attempts", [1, 3, 7])
def test_atomic_attempt_limits_on_call_after_max(fake_time, max_attempts: int) -> None:
    limiter = RateLimiter(DictAtomicStorage(), clock=fake_time.time)

    results = [limiter.attempt("k", max_attempts, 60) for _ in range(max_attempts + 1)]

    assert all(not r.limited for r in results[:-1])
    assert results[-1].limited is True
    assert [r.attempts for r in results] == list(range(1, max_attempts + 2))


def test_storage_errors_propagate(fake_time) -> None:
    class BrokenStorage(SessionThrottleStorage):
        def get(self, key):
            raise ConnectionError("backend down")

    limiter = RateLimiter(BrokenStorage({}), clock=fake_time.time)

    with pytest.raises(ConnectionError):
        limiter.attempt("k", 1, 60)
