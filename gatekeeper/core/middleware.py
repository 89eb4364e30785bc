"""HTTP middleware for request correlation.

Every response carries the request id (taken from the incoming correlation
header or generated), so a 429 seen by a client can be matched to the
``throttle.limited`` log line that produced it.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import uuid

from fastapi import Request, Response

from gatekeeper.core.config import settings
from gatekeeper.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id to the logging context for the whole request.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with the request id header set.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or uuid.uuid4().hex
    set_request_id(request_id)
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    return response
