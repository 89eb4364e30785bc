"""Throttle storage interfaces.

The rate limiter depends on this abstraction (not a concrete backend) so the
same counting logic runs over session, relational, or Redis storage.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ThrottleRecord:
    """Attempt counter for one throttle key.

    Attributes:
        attempts: Number of attempts recorded in the current window.
        expires_at: UNIX epoch seconds when the window closes. ``0`` means no
            expiry is tracked and the record never clears by time.
    """

    attempts: int
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return self.expires_at != 0 and now >= self.expires_at

    def to_dict(self) -> dict[str, int]:
        return {"attempts": self.attempts, "expires_at": self.expires_at}

    @classmethod
    def from_value(cls, value: Any) -> ThrottleRecord | None:
        """Coerce a stored mapping into a record, or ``None`` if unusable."""
        if isinstance(value, ThrottleRecord):
            return value
        if not isinstance(value, dict):
            return None
        try:
            return cls(
                attempts=int(value.get("attempts") or 0),
                expires_at=int(value.get("expires_at") or 0),
            )
        except (TypeError, ValueError):
            return None


class ThrottleStorage(ABC):
    """Key-value store for throttle records."""

    @abstractmethod
    def get(self, key: str) -> ThrottleRecord | None:
        """Return the record stored under ``key``, or ``None`` when absent."""
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, record: ThrottleRecord) -> None:
        """Insert or replace the record stored under ``key``."""
        raise NotImplementedError

    @abstractmethod
    def forget(self, key: str) -> None:
        """Delete the record under ``key``. Deleting a missing key is a no-op."""
        raise NotImplementedError


@runtime_checkable
class AtomicThrottleStorage(Protocol):
    """Capability implemented by backends with a single-round-trip increment."""

    def increment(self, key: str, decay_seconds: int, now: int) -> ThrottleRecord:
        """Record one attempt and return the resulting record.

        A missing or expired record is replaced with ``attempts=1`` and a fresh
        expiry of ``now + decay_seconds``; otherwise ``attempts`` grows by one
        and the expiry is kept. A record without an expiry keeps its count and is
        given one.
        """
        ...
