"""Session-backed throttle storage.

Notes:
- Records live in the client's session (Starlette ``request.session``), so
  nothing is shared between clients or processes.
- No atomic increment: the read-then-write sequence in the rate limiter can
  race when the same session is served by several workers at once. This is
  accepted for single-process deployments; use the database or Redis backend
  when counts must hold under concurrency.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from gatekeeper.adapters.throttle_storage.base import ThrottleRecord, ThrottleStorage

_session_var: ContextVar[MutableMapping[str, Any] | None] = ContextVar(
    "throttle_session", default=None
)


@contextmanager
def bind_session(session: MutableMapping[str, Any]) -> Iterator[None]:
    """Expose ``session`` to session storages for the duration of a request."""

    token = _session_var.set(session)
    try:
        yield
    finally:
        _session_var.reset(token)


class SessionThrottleStorage(ThrottleStorage):
    """Throttle storage over per-client session state.

    The session is resolved per call: an explicitly injected mapping wins,
    then the mapping bound with ``bind_session()`` for the current request.
    Without either, records go to a process-local dict that behaves like an
    in-memory session shared by all callers of this instance.
    """

    def __init__(
        self,
        session: MutableMapping[str, Any] | None = None,
        *,
        prefix: str = "throttle:",
    ) -> None:
        self._session = session
        self._prefix = prefix
        self._fallback: dict[str, Any] = {}

    def _store(self) -> MutableMapping[str, Any]:
        if self._session is not None:
            return self._session
        bound = _session_var.get()
        if bound is not None:
            return bound
        return self._fallback

    def get(self, key: str) -> ThrottleRecord | None:
        return ThrottleRecord.from_value(self._store().get(self._prefix + key))

    def put(self, key: str, record: ThrottleRecord) -> None:
        # Plain dicts keep cookie-backed sessions JSON-serialisable.
        self._store()[self._prefix + key] = record.to_dict()

    def forget(self, key: str) -> None:
        self._store().pop(self._prefix + key, None)
