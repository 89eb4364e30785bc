from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness probe. Served by a plain router, so it is never throttled
    unless the global throttle middleware is enabled."""

    return {"status": "ok"}
