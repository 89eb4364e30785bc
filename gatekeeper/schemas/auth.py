from __future__ import annotations

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Credentials submitted to the login endpoint."""

    email: str = Field(..., description="Account identifier; also keys the account throttle tier")
    password: str = Field(..., description="Account password")


class LoginResponse(BaseModel):
    """Acknowledgement returned when a login attempt is let through."""

    status: str = Field("accepted", description="Outcome of the throttle check")
