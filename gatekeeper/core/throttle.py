"""Request throttling policy.

``ThrottleRequests.handle(request, call_next, role)`` is the single entry
point. ``role`` selects the limits and key for the request:

- ``None``: configured default limits, IP-tier key.
- ``"N,M"``: N attempts per M seconds, IP-tier key.
- a preset name: limits from ``security.throttle.presets``; presets with an
  ``account`` section add a second tier keyed on a submitted field.
- a callable ``request -> str``: its non-empty return value is the key,
  with default limits.

Successful responses carry ``X-RateLimit-*`` and ``RateLimit-*`` headers;
throttled requests get a 429 with ``Retry-After``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from gatekeeper.adapters.rate_limit.base import AbstractRateLimiter, AttemptResult
from gatekeeper.core.config import ConfigSource
from gatekeeper.core.identity import ClientIdentityResolver
from gatekeeper.core.logging import hash_for_log

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 60
DEFAULT_DECAY_SECONDS = 60
DEFAULT_ACCOUNT_FIELD = "email"
PRESETS_CONFIG_KEY = "security.throttle.presets"
TOO_MANY_REQUESTS = "Too Many Requests"

_INLINE_LIMITS = re.compile(r"^\s*(\d+)\s*,\s*(\d+)\s*$")
_JSON_CONTENT_TYPES = ("application/json", "+json")
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

KeyResolver = Callable[[Request], Any]
Role = Union[str, KeyResolver, None]
CallNext = Callable[[Request], Awaitable[Response]]


@dataclass(frozen=True)
class ThrottleLimits:
    max_attempts: int
    decay_seconds: int


def limits_from_config(config: Mapping[str, Any]) -> ThrottleLimits | None:
    """Read ``max_attempts``/``decay_seconds`` (or ``max``/``decay``) from a preset.

    Returns ``None`` when either value is missing, non-numeric or not positive.
    """

    try:
        max_attempts = int(config.get("max_attempts", config.get("max")) or 0)
        decay_seconds = int(config.get("decay_seconds", config.get("decay")) or 0)
    except (TypeError, ValueError):
        return None

    if max_attempts <= 0 or decay_seconds <= 0:
        return None
    return ThrottleLimits(max_attempts, decay_seconds)


def _compile_except_paths(patterns: Iterable[str]) -> list[tuple[str, re.Pattern[str] | None]]:
    compiled = []
    for pattern in patterns:
        pattern = str(pattern).lstrip("/")
        if not pattern:
            continue
        glob = None
        if "*" in pattern:
            glob = re.compile(re.escape(pattern).replace(r"\*", ".*"), re.IGNORECASE)
        compiled.append((pattern, glob))
    return compiled


def wants_json(request: Request) -> bool:
    """Whether the client asked for a JSON response."""

    if request.headers.get("X-Requested-With", "").lower() == "xmlhttprequest":
        return True

    accept = request.headers.get("Accept", "")
    first = accept.split(",")[0].split(";")[0].strip().lower()
    return "/json" in first or "+json" in first


async def request_input(request: Request, field: str) -> Any:
    """Look ``field`` up in a JSON or form body, or else the query string.

    A JSON or form body is authoritative: the query string is consulted only
    when the request carries neither, so ``?field=`` cannot steer the key for
    a submitted body. Unreadable bodies count as missing input.
    """

    content_type = request.headers.get("Content-Type", "").lower()

    if any(t in content_type for t in _JSON_CONTENT_TYPES):
        try:
            payload = await request.json()
        except ValueError:
            return None
        return payload.get(field) if isinstance(payload, dict) else None

    if any(t in content_type for t in _FORM_CONTENT_TYPES):
        try:
            form = await request.form()
        except (ValueError, MultiPartException, HTTPException):
            return None
        return form.get(field)

    return request.query_params.get(field)


class ThrottleRequests:
    """Per-request throttle policy over a rate limiter.

    Args:
        limiter: Counting backend.
        max_attempts: Default attempts per window.
        decay_seconds: Default window length.
        except_paths: Paths that bypass throttling entirely.
        trusted_proxies: Proxy IPs/CIDRs allowed to forward client IPs.
        config: Source for named presets. ``None`` disables presets.
    """

    def __init__(
        self,
        limiter: AbstractRateLimiter,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        decay_seconds: int = DEFAULT_DECAY_SECONDS,
        except_paths: Iterable[str] = (),
        trusted_proxies: Iterable[str] = (),
        config: ConfigSource | None = None,
    ) -> None:
        self._limiter = limiter
        self._defaults = ThrottleLimits(max_attempts, decay_seconds)
        self._except_paths = _compile_except_paths(except_paths)
        self._identity = ClientIdentityResolver(trusted_proxies)
        self._config = config

    @property
    def limiter(self) -> AbstractRateLimiter:
        return self._limiter

    @property
    def identity(self) -> ClientIdentityResolver:
        return self._identity

    async def handle(self, request: Request, call_next: CallNext, role: Role = None) -> Response:
        if self.in_except_paths(request):
            return await call_next(request)

        preset = self.resolve_preset(role) if isinstance(role, str) else None
        if preset is not None and isinstance(preset.get("account"), Mapping):
            return await self._handle_two_tier(request, call_next, preset)

        limits = self.resolve_limits(role)
        key = self.resolve_key(request, role)

        result = self._attempt(key, limits, tier="ip")
        if result.limited:
            return self._throttle_response(request, key, limits.max_attempts)

        response = await call_next(request)
        self._add_limit_headers(response, key, limits.max_attempts, result.remaining)
        return response

    async def _handle_two_tier(
        self, request: Request, call_next: CallNext, preset: Mapping[str, Any]
    ) -> Response:
        ip_config = preset.get("ip")
        ip_limits = limits_from_config(ip_config if isinstance(ip_config, Mapping) else preset)
        ip_limits = ip_limits or self._defaults

        ip_key = self._identity.ip_key(request)
        ip_result = self._attempt(ip_key, ip_limits, tier="ip")
        if ip_result.limited:
            return self._throttle_response(request, ip_key, ip_limits.max_attempts)

        account = preset["account"]
        account_limits = limits_from_config(account)
        if account_limits is not None:
            field = str(account.get("field") or DEFAULT_ACCOUNT_FIELD)
            account_key = self._identity.account_key(request, await request_input(request, field))

            if account_key is not None:
                account_result = self._attempt(account_key, account_limits, tier="account")
                if account_result.limited:
                    return self._throttle_response(request, account_key, account_limits.max_attempts)

        response = await call_next(request)
        self._add_limit_headers(response, ip_key, ip_limits.max_attempts, ip_result.remaining)
        return response

    def resolve_preset(self, name: str) -> Mapping[str, Any] | None:
        """Look up a named preset; lookup failures degrade to ``None``."""

        if self._config is None:
            return None

        try:
            presets = self._config.get(PRESETS_CONFIG_KEY, {})
        except Exception:
            logger.warning("throttle.preset_lookup_failed", extra={"preset": name}, exc_info=True)
            return None

        if not isinstance(presets, Mapping):
            return None
        preset = presets.get(name)
        return preset if isinstance(preset, Mapping) else None

    def resolve_limits(self, role: Role) -> ThrottleLimits:
        if isinstance(role, str):
            match = _INLINE_LIMITS.match(role)
            if match:
                return ThrottleLimits(int(match.group(1)), int(match.group(2)))

            preset = self.resolve_preset(role)
            if preset is not None:
                limits = limits_from_config(preset)
                if limits is not None:
                    return limits

        return self._defaults

    def resolve_key(self, request: Request, role: Role) -> str:
        if callable(role):
            key = role(request)
            if isinstance(key, str) and key:
                return key

        return self._identity.ip_key(request)

    def in_except_paths(self, request: Request) -> bool:
        path = request.url.path.lstrip("/")
        for pattern, glob in self._except_paths:
            if pattern == path:
                return True
            if glob is not None and glob.fullmatch(path):
                return True
        return False

    def _attempt(self, key: str, limits: ThrottleLimits, *, tier: str) -> AttemptResult:
        result = self._limiter.attempt(key, limits.max_attempts, limits.decay_seconds)

        log_extra = {
            "tier": tier,
            "key_hash": hash_for_log(key),
            "limit": limits.max_attempts,
            "window_s": limits.decay_seconds,
            "attempts": result.attempts,
            "remaining": result.remaining,
        }
        if result.limited:
            logger.warning("throttle.limited", extra={**log_extra, "retry_after_s": result.retry_after})
        else:
            logger.debug("throttle.allowed", extra=log_extra)

        return result

    def _add_limit_headers(self, response: Any, key: str, max_attempts: int, remaining: int) -> None:
        if not isinstance(response, Response):
            return

        reset_at = self._limiter.now() + self._limiter.available_in(key)
        response.headers["X-RateLimit-Limit"] = str(max_attempts)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["RateLimit-Limit"] = str(max_attempts)
        response.headers["RateLimit-Remaining"] = str(remaining)
        response.headers["RateLimit-Reset"] = str(reset_at)

    def _throttle_response(self, request: Request, key: str, max_attempts: int) -> Response:
        retry_after = self._limiter.available_in(key)
        headers = {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(max_attempts),
            "X-RateLimit-Remaining": "0",
            "RateLimit-Limit": str(max_attempts),
            "RateLimit-Remaining": "0",
            "RateLimit-Reset": str(self._limiter.now() + retry_after),
        }

        if wants_json(request):
            return JSONResponse({"message": TOO_MANY_REQUESTS}, status_code=429, headers=headers)

        return PlainTextResponse(TOO_MANY_REQUESTS, status_code=429, headers=headers)
