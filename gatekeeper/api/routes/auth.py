from __future__ import annotations

from fastapi import APIRouter

from gatekeeper.core.rate_limit import throttled_route
from gatekeeper.schemas.auth import LoginRequest, LoginResponse

router = APIRouter(prefix="/auth", tags=["Auth"], route_class=throttled_route("login"))


@router.post("/login", response_model=LoginResponse)
async def login(payload: LoginRequest) -> LoginResponse:
    """Login endpoint guarded by the ``login`` throttle preset.

    The preset throttles per client IP and per submitted email. Credential
    verification belongs to the host application; this endpoint only
    acknowledges attempts that pass both throttle tiers.
    """

    return LoginResponse(status="accepted")
