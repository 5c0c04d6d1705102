"""
Request ID Middleware
=====================

Tags each request with an ID that error bodies, audit events and log lines
carry, so a client report can be matched to server-side records.
"""

import re
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request ID.

    A well-formed inbound ``X-Request-ID`` is reused; anything else is
    replaced with a fresh UUID. The ID is echoed in the response headers.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID")
        if not request_id or not _ACCEPTED_ID.match(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
