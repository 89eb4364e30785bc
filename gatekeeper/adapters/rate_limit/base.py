"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not the concrete implementation)
so tests and alternative limiters can be plugged into the throttle policy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class AttemptResult:
    """Result of a combined count-and-decide operation.

    Attributes:
        attempts: Attempts recorded for the key after this call.
        remaining: Attempts left in the current window (never negative).
        limited: Whether the caller must be rejected.
        retry_after: Seconds until the window resets, ``0`` when unknown or
            not limited on non-atomic storage.
    """

    attempts: int
    remaining: int
    limited: bool
    retry_after: int


class AbstractRateLimiter(ABC):
    """Interface for attempt-counting rate limiters."""

    @abstractmethod
    def now(self) -> int:
        """Current time from the limiter's clock, in whole UNIX seconds."""
        raise NotImplementedError

    @abstractmethod
    def too_many_attempts(self, key: str, max_attempts: int) -> bool:
        """Return whether ``key`` has used up its attempts in the current window."""
        raise NotImplementedError

    @abstractmethod
    def hit(self, key: str, decay_seconds: int) -> int:
        """Record one attempt for ``key`` and return the attempt count."""
        raise NotImplementedError

    @abstractmethod
    def attempt(self, key: str, max_attempts: int, decay_seconds: int) -> AttemptResult:
        """Count an attempt and decide whether it is over the limit."""
        raise NotImplementedError

    @abstractmethod
    def available_in(self, key: str) -> int:
        """Seconds until the window for ``key`` resets (``0`` when untracked)."""
        raise NotImplementedError

    @abstractmethod
    def clear(self, key: str) -> None:
        """Drop every attempt recorded for ``key``."""
        raise NotImplementedError
