"""Tests for the Redis throttle storage.

The client is mocked; a live round trip runs only when REDIS_URL is set.
"""

from __future__ import annotations

import os
import uuid
from unittest.mock import MagicMock

import pytest
from redis.exceptions import RedisError

from gatekeeper.adapters.throttle_storage.base import AtomicThrottleStorage, ThrottleRecord
from gatekeeper.adapters.throttle_storage.redis_cache import (
    INCREMENT_SCRIPT,
    RedisThrottleStorage,
)


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.register_script.return_value = MagicMock(name="increment_script")
    return client


@pytest.fixture
def storage(client: MagicMock, fake_time) -> RedisThrottleStorage:
    return RedisThrottleStorage(client, prefix="t:", clock=fake_time.time)


def test_registers_increment_script_once(client: MagicMock, storage: RedisThrottleStorage) -> None:
    client.register_script.assert_called_once_with(INCREMENT_SCRIPT)
    assert isinstance(storage, AtomicThrottleStorage)


def test_increment_runs_script_with_prefixed_key(client: MagicMock, storage: RedisThrottleStorage) -> None:
    script = client.register_script.return_value
    script.return_value = [3, 1_042]

    record = storage.increment("login", 60, 1_000)

    script.assert_called_once_with(keys=["t:login"], args=[60, 1_000])
    assert record == ThrottleRecord(attempts=3, expires_at=1_042)


def test_increment_malformed_reply_raises(client: MagicMock, storage: RedisThrottleStorage) -> None:
    client.register_script.return_value.return_value = None

    with pytest.raises(RedisError):
        storage.increment("login", 60, 1_000)


def test_get_derives_expiry_from_ttl(client: MagicMock, storage: RedisThrottleStorage) -> None:
    client.get.return_value = b"4"
    client.ttl.return_value = 25

    assert storage.get("k") == ThrottleRecord(attempts=4, expires_at=1_025)
    client.get.assert_called_once_with("t:k")
    client.ttl.assert_called_once_with("t:k")


def test_get_without_ttl_has_no_expiry(client: MagicMock, storage: RedisThrottleStorage) -> None:
    client.get.return_value = "2"
    client.ttl.return_value = -1

    assert storage.get("k") == ThrottleRecord(attempts=2, expires_at=0)


def test_get_missing_key(client: MagicMock, storage: RedisThrottleStorage) -> None:
    client.get.return_value = None

    assert storage.get("k") is None
    client.ttl.assert_not_called()


def test_put_uses_remaining_ttl(client: MagicMock, storage: RedisThrottleStorage) -> None:
    storage.put("k", ThrottleRecord(attempts=2, expires_at=1_030))

    client.setex.assert_called_once_with("t:k", 30, 2)


def test_put_without_expiry_sets_plain_value(client: MagicMock, storage: RedisThrottleStorage) -> None:
    storage.put("k", ThrottleRecord(attempts=2, expires_at=0))

    client.set.assert_called_once_with("t:k", 2)
    client.setex.assert_not_called()


def test_put_expired_record_deletes_key(client: MagicMock, storage: RedisThrottleStorage) -> None:
    storage.put("k", ThrottleRecord(attempts=2, expires_at=1_000))

    client.delete.assert_called_once_with("t:k")
    client.setex.assert_not_called()


def test_forget_deletes_prefixed_key(client: MagicMock, storage: RedisThrottleStorage) -> None:
    storage.forget("k")

    client.delete.assert_called_once_with("t:k")


@pytest.mark.skipif(not os.getenv("REDIS_URL"), reason="REDIS_URL is not configured")
def test_live_increment_is_atomic_per_key() -> None:
    from redis import Redis

    client = Redis.from_url(os.environ["REDIS_URL"])
    prefix = f"throttle_test:{uuid.uuid4().hex[:8]}:"
    storage = RedisThrottleStorage(client, prefix=prefix)
    try:
        first = storage.increment("login", 5, 1_000)
        second = storage.increment("login", 5, 1_001)

        assert first.attempts == 1
        assert first.expires_at == 1_005
        assert second.attempts == 2
        assert second.expires_at >= 1_001
    finally:
        client.delete(prefix + "login")
