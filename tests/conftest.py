"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets TESTING so no .env file is loaded, and resets the cached throttle
policy so every test starts with empty counters.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.setdefault("THROTTLE_STORAGE", "session")

from typing import Any, Callable

import pytest
from starlette.requests import Request

from gatekeeper.core import rate_limit


class FakeTime:
    """Deterministic clock used to test window expiry."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def time(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture(autouse=True)
def _fresh_throttle():
    rate_limit.reset_throttle()
    yield
    rate_limit.reset_throttle()


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Build bare Starlette requests without running an app."""

    def _make(
        method: str = "POST",
        path: str = "/login",
        *,
        headers: dict[str, str] | None = None,
        client: tuple[str, int] | None = ("10.0.0.2", 50000),
        query: str = "",
        body: bytes = b"",
    ) -> Request:
        raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or {}).items()
        ]
        scope: dict[str, Any] = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query.encode(),
            "headers": raw_headers,
            "client": client,
        }
        sent = False

        async def receive() -> dict[str, Any]:
            nonlocal sent
            if sent:
                return {"type": "http.disconnect"}
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make
