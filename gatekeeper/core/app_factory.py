"""Application factory for FastAPI app.

Centralizes app construction so tests can build a fresh app per
configuration.
"""

from __future__ import annotations

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from gatekeeper.api.routes import auth_router, health_router
from gatekeeper.core.config import settings
from gatekeeper.core.exception_handlers import setup_exception_handlers
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.middleware import request_id_middleware
from gatekeeper.core.rate_limit import get_throttle, throttle_middleware


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Gatekeeper",
        description=(
            "Request throttling for sensitive endpoints: per-IP and per-account "
            "attempt limits with session, database or Redis counters."
        ),
        version="0.1.0",
        debug=settings.app.debug,
    )

    throttle_cfg = settings.throttle
    if throttle_cfg.enabled:
        # Fail at startup, not on the first request, when storage is misconfigured.
        get_throttle()

    # Middleware: the last one added runs first.
    if throttle_cfg.enabled and throttle_cfg.add_global_middleware:
        app.middleware("http")(throttle_middleware)
    if throttle_cfg.storage == "session":
        app.add_middleware(SessionMiddleware, secret_key=throttle_cfg.session_secret)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(health_router)

    return app
