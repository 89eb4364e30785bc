"""Throttling wiring for FastAPI.

This module connects the throttle policy to the HTTP layer.

Design goals:
- Minimal coupling: routes opt in through a route class, the app through a
  plain HTTP middleware function.
- Swap-friendly: the storage backend is picked from settings
  (session, database or redis) behind the ThrottleStorage interface.
- Safe defaults: session storage and 60 attempts per 60 seconds.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute
from redis import Redis

from gatekeeper.adapters.rate_limit.limiter import RateLimiter
from gatekeeper.adapters.throttle_storage.base import ThrottleStorage
from gatekeeper.adapters.throttle_storage.database import (
    DatabaseThrottleStorage,
    create_throttle_table,
)
from gatekeeper.adapters.throttle_storage.redis_cache import RedisThrottleStorage
from gatekeeper.adapters.throttle_storage.session import SessionThrottleStorage, bind_session
from gatekeeper.core.config import SettingsConfigSource, ThrottleSettings, settings
from gatekeeper.core.database import build_engine
from gatekeeper.core.errors import ConfigurationAppError
from gatekeeper.core.throttle import CallNext, Role, ThrottleRequests

logger = logging.getLogger(__name__)


_throttle: ThrottleRequests | None = None
_throttle_config: str | None = None


def build_storage(throttle_settings: ThrottleSettings) -> ThrottleStorage:
    """Create the storage backend selected by ``throttle_settings.storage``.

    Raises:
        ConfigurationAppError: If the selected backend has no connection URL.
    """

    backend = throttle_settings.storage

    if backend == "database":
        if not throttle_settings.database_url:
            raise ConfigurationAppError(
                code="throttle_database_url_missing",
                message="Database throttle storage requires a database URL",
                details={"setting": "THROTTLE_DATABASE_URL"},
            )
        engine = build_engine(throttle_settings.database_url)
        create_throttle_table(engine, throttle_settings.table)
        return DatabaseThrottleStorage(engine, throttle_settings.table)

    if backend == "redis":
        if not throttle_settings.redis_url:
            raise ConfigurationAppError(
                code="throttle_redis_url_missing",
                message="Redis throttle storage requires a Redis URL",
                details={"setting": "THROTTLE_REDIS_URL"},
            )
        client = Redis.from_url(throttle_settings.redis_url)
        return RedisThrottleStorage(client, prefix=throttle_settings.prefix)

    return SessionThrottleStorage(prefix=throttle_settings.prefix)


def get_throttle() -> ThrottleRequests:
    """Return the process-wide throttle policy.

    The instance is cached in-module so counters survive across requests.
    If throttle settings change (primarily in tests), it is rebuilt.
    """

    global _throttle, _throttle_config

    config = settings.throttle.model_dump_json()

    if _throttle is None or _throttle_config != config:
        cfg = settings.throttle
        _throttle = ThrottleRequests(
            RateLimiter(build_storage(cfg)),
            max_attempts=cfg.max_attempts,
            decay_seconds=cfg.decay_seconds,
            except_paths=cfg.except_paths,
            trusted_proxies=cfg.trusted_proxies,
            config=SettingsConfigSource.from_settings(settings),
        )
        _throttle_config = config
        logger.info(
            "throttle.configured",
            extra={
                "storage": cfg.storage,
                "max_attempts": cfg.max_attempts,
                "decay_seconds": cfg.decay_seconds,
                "presets": sorted(cfg.presets),
            },
        )

    return _throttle


def reset_throttle() -> None:
    """Drop the cached policy so the next request rebuilds it."""

    global _throttle, _throttle_config
    _throttle = None
    _throttle_config = None


async def throttle_request(request: Request, call_next: CallNext, role: Role = None) -> Response:
    """Run ``call_next`` behind the throttle policy for ``role``."""

    if not settings.throttle.enabled:
        return await call_next(request)

    throttle = get_throttle()

    if "session" in request.scope:
        with bind_session(request.session):
            return await throttle.handle(request, call_next, role)

    return await throttle.handle(request, call_next, role)


async def throttle_middleware(request: Request, call_next) -> Response:
    """HTTP middleware applying the default limits to every request.

    Usage:
        app.middleware("http")(throttle_middleware)
    """

    return await throttle_request(request, call_next)


def throttled_route(role: Role = None) -> type[APIRoute]:
    """Build an ``APIRoute`` class whose endpoints are throttled with ``role``.

    Usage:
        router = APIRouter(route_class=throttled_route("login"))
    """

    class ThrottledRoute(APIRoute):
        def get_route_handler(self) -> Callable:
            endpoint_handler = super().get_route_handler()

            async def throttled_handler(request: Request) -> Response:
                return await throttle_request(request, endpoint_handler, role)

            return throttled_handler

    return ThrottledRoute
