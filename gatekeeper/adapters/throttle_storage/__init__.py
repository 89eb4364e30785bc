"""Throttle storage adapters.

Each backend maps an opaque key to a ``ThrottleRecord``. Backends that can
increment in a single round trip also satisfy ``AtomicThrottleStorage``; the
rate limiter checks for that capability and prefers it when present.
"""

from gatekeeper.adapters.throttle_storage.base import (
    AtomicThrottleStorage,
    ThrottleRecord,
    ThrottleStorage,
)
from gatekeeper.adapters.throttle_storage.database import DatabaseThrottleStorage
from gatekeeper.adapters.throttle_storage.redis_cache import RedisThrottleStorage
from gatekeeper.adapters.throttle_storage.session import SessionThrottleStorage

__all__ = [
    "AtomicThrottleStorage",
    "DatabaseThrottleStorage",
    "RedisThrottleStorage",
    "SessionThrottleStorage",
    "ThrottleRecord",
    "ThrottleStorage",
]
