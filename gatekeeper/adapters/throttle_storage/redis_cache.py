"""Redis throttle storage (redis-py).

The counter for a key is a plain integer under ``prefix + key`` whose TTL is
the window. ``increment()`` runs a Lua script so the check, expiry and
increment happen in a single server-side step regardless of how many workers
hit the same key.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError

from gatekeeper.adapters.throttle_storage.base import ThrottleRecord, ThrottleStorage

INCREMENT_SCRIPT = """
local key = KEYS[1]
local decay = tonumber(ARGV[1])
local now = tonumber(ARGV[2])
local ttl = redis.call('ttl', key)

if ttl == -2 then
    redis.call('set', key, 1, 'ex', decay)
    return {1, now + decay}
end

if ttl == -1 then
    redis.call('expire', key, decay)
    ttl = decay
end

local attempts = redis.call('incr', key)
return {attempts, now + ttl}
"""


class RedisThrottleStorage(ThrottleStorage):
    """Throttle storage backed by a shared Redis instance.

    Args:
        client: Connected ``redis.Redis`` client. Both ``decode_responses``
            modes are supported.
        prefix: Namespace prepended to every key.
        clock: Time source used to turn TTLs into absolute expiries.
    """

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "throttle:",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._increment = client.register_script(INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        return self._prefix + key

    def get(self, key: str) -> ThrottleRecord | None:
        redis_key = self._key(key)
        value = self._client.get(redis_key)
        if value is None:
            return None

        try:
            attempts = int(value)
        except (TypeError, ValueError):
            return None

        ttl = self._client.ttl(redis_key)
        expires_at = int(self._clock()) + ttl if ttl and ttl > 0 else 0
        return ThrottleRecord(attempts=attempts, expires_at=expires_at)

    def put(self, key: str, record: ThrottleRecord) -> None:
        redis_key = self._key(key)

        if record.expires_at == 0:
            self._client.set(redis_key, record.attempts)
            return

        ttl = record.expires_at - int(self._clock())
        if ttl <= 0:
            # Already outside its window: an expired record is an absent one.
            self._client.delete(redis_key)
            return

        self._client.setex(redis_key, ttl, record.attempts)

    def forget(self, key: str) -> None:
        self._client.delete(self._key(key))

    def increment(self, key: str, decay_seconds: int, now: int) -> ThrottleRecord:
        result: Any = self._increment(keys=[self._key(key)], args=[decay_seconds, now])

        if not isinstance(result, (list, tuple)) or len(result) < 2:
            raise RedisError(f"unexpected throttle increment reply: {type(result).__name__}")

        return ThrottleRecord(attempts=int(result[0]), expires_at=int(result[1]))
