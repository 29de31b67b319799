"""Request ID middleware for request correlation.

Assigns a UUID4 to each request, or accepts a client-provided
X-Request-ID, and makes it visible to every log line emitted while the
request is handled (see logging_config.RequestIDFilter).

Logging Strategy:
    DEBUG - Request start (→) with method and path
    INFO  - Successful API responses (← 2xx/3xx) with duration
    WARN  - Client errors (4xx) with duration
    ERROR - Server errors (5xx), unhandled exceptions
"""
from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Awaitable, Callable, Final

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..logging_config import request_id_var

logger = logging.getLogger(__name__)

CLIENT_REQUEST_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r'^[A-Za-z0-9._-]{1,128}$')
"""Accepted shape for client-provided request IDs (kept out of logs otherwise)."""

QUIET_PATH_PREFIXES: Final[tuple[str, ...]] = ("/streams/", "/health", "/metrics")
"""High-frequency paths whose successful responses are logged at DEBUG."""


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to each request, its logs and its response.

    Args:
        app: ASGI application
        header_name: HTTP header name for request ID (default: X-Request-ID)
    """

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = "X-Request-ID"
    ) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(self.header_name)
        if not request_id or not CLIENT_REQUEST_ID_PATTERN.match(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.time()

        logger.debug(f"→ {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed after {duration*1000:.2f}ms: {type(e).__name__}: {e}",
                exc_info=True
            )
            raise
        finally:
            request_id_var.reset(token)

        response.headers[self.header_name] = request_id
        self._log_response(request, response, request_id, time.time() - start_time)
        return response

    def _log_response(
        self,
        request: Request,
        response: Response,
        request_id: str,
        duration: float
    ) -> None:
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        elif request.url.path.startswith(QUIET_PATH_PREFIXES):
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO

        duration_ms = duration * 1000
        logger.log(
            log_level,
            f"← {request.method} {request.url.path} {status} ({duration_ms:.2f}ms)",
            extra={
                "request_id": request_id,
                "status_code": status,
                "duration_ms": round(duration_ms, 2)
            }
        )
