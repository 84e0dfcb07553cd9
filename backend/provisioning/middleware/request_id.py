"""
Customer Provisioning — Request ID Middleware
==============================================

What:  Tags each request with a correlation id, exposes it to loggers through
       a ContextVar and echoes it in the X-Request-ID response header.
Why:   A signup that hits POST /customers twice (page reload, client retry)
       shows up as two request ids sharing one account key in the logs,
       which is exactly what is needed to tell duplicates from races.

A client-supplied X-Request-ID (e.g. from the front end) is reused so the
id follows the signup from browser to Stripe call.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

MAX_CLIENT_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns request ids; see module docstring."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID", "")[:MAX_CLIENT_ID_LENGTH]
        if not rid:
            rid = str(uuid.uuid4())[:8]

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)

        response.headers["X-Request-ID"] = rid
        return response
