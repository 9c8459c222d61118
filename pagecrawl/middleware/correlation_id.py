"""Correlation ID middleware: one id per request, reused as the crawl run id."""

import re
import uuid
from typing import Callable

import logfire
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Accepted client-supplied ids; anything else is replaced with a UUID.
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation ID to each request and echo it in the response.

    The id comes from the request header when it is well formed, otherwise a
    new UUID is generated. Handlers read it from ``request.state``.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Correlation-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(self.header_name.lower(), "")
        correlation_id = incoming if _VALID_ID.match(incoming) else str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        with logfire.span(
            "request",
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)
        response.headers[self.header_name] = correlation_id
        return response
