"""Rate limiting middleware using token bucket algorithm.

Limits mutating API calls (POST/PUT/PATCH/DELETE under /api/) per client
IP. Each start request can spawn an FFmpeg process, so these are the
calls worth protecting. Reads, static HLS output, health and metrics are
never limited.

Token Bucket Algorithm:
    - Each client has a bucket that fills at a constant rate
    - Bucket has maximum capacity (burst size)
    - Each request consumes 1 token from bucket
    - Request allowed if bucket has ≥1 token

Logging Strategy:
    DEBUG - Token bucket operations
    INFO  - Middleware configuration
    WARN  - Rate limit violations with client IP
"""
from __future__ import annotations

import logging
import math
import time
from typing import Awaitable, Callable, Final

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

RATE_LIMITED_METHODS: Final[set[str]] = {"POST", "PUT", "PATCH", "DELETE"}
"""HTTP methods that trigger rate limiting (mutating operations only)."""

RATE_LIMITED_PREFIX: Final[str] = "/api/"

MAX_TRACKED_CLIENTS: Final[int] = 10_000
"""Bucket count above which full buckets are pruned."""

# ============================================================================
# Rate Limit Middleware
# ============================================================================

class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket rate limiter for API abuse prevention.

    Args:
        app: ASGI application
        requests_per_second: Token refill rate
        burst: Maximum token capacity
        clock: Time source (injectable for tests)
    """

    def __init__(
        self,
        app: ASGIApp,
        requests_per_second: float = 1.0,
        burst: int = 10,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        super().__init__(app)
        self.rate = requests_per_second
        self.burst = burst
        self._clock = clock

        # {client_ip: (tokens, last_update_time)}
        self.buckets: dict[str, tuple[float, float]] = {}

        logger.info(f"Rate limiter initialized: {requests_per_second} req/s, burst={burst}")

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method not in RATE_LIMITED_METHODS or not request.url.path.startswith(RATE_LIMITED_PREFIX):
            return await call_next(request)

        client_ip = self._get_client_ip(request)

        if not self._check_rate_limit(client_ip):
            logger.warning(f"Rate limit exceeded: {client_ip} {request.method} {request.url.path}")
            return self._rate_limit_response()

        return await call_next(request)

    def _get_client_ip(self, request: Request) -> str:
        """Client IP, honouring X-Forwarded-For and X-Real-IP first."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

        if request.client:
            return request.client.host

        logger.warning("Unable to determine client IP")
        return "unknown"

    def _check_rate_limit(self, client_ip: str) -> bool:
        """Consume one token for client_ip if available."""
        now = self._clock()
        tokens, last_update = self.buckets.get(client_ip, (float(self.burst), now))

        elapsed = now - last_update
        tokens = min(float(self.burst), tokens + elapsed * self.rate)

        if tokens >= 1.0:
            self.buckets[client_ip] = (tokens - 1.0, now)
            logger.debug(f"Token consumed: {client_ip} now has {tokens - 1.0:.2f} tokens")
            allowed = True
        else:
            self.buckets[client_ip] = (tokens, now)
            logger.debug(f"Rate limited: {client_ip} has {tokens:.2f} tokens (need 1.0)")
            allowed = False

        if len(self.buckets) > MAX_TRACKED_CLIENTS:
            self._prune(now)
        return allowed

    def _prune(self, now: float) -> None:
        """Drop buckets that have refilled completely."""
        refill_time = self.burst / self.rate
        stale = [ip for ip, (_, last) in self.buckets.items() if now - last >= refill_time]
        for ip in stale:
            del self.buckets[ip]
        logger.debug(f"Pruned {len(stale)} idle rate-limit bucket(s)")

    def _rate_limit_response(self) -> JSONResponse:
        retry_after = max(1, math.ceil(1.0 / self.rate))

        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "code": "RATE_LIMIT_EXCEEDED",
                "message": "Too many requests. Please slow down.",
                "details": {"requests_per_second": self.rate, "burst": self.burst}
            },
            headers={"Retry-After": str(retry_after)}
        )
