"""Response header middleware for HLS output and basic hardening.

HLS Output (/streams/...):
    .m3u8 - application/vnd.apple.mpegurl, never cached (the playlist
            changes every segment)
    .ts   - video/mp2t, cached for a year (segment names are never reused
            within a stream's lifetime)

Security Headers (all responses):
    X-Content-Type-Options, X-Frame-Options, Referrer-Policy and a
    Content-Security-Policy that allows the hls.js CDN and blob: media.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Final

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

PLAYLIST_HEADERS: Final[dict[str, str]] = {
    "Content-Type": "application/vnd.apple.mpegurl",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

SEGMENT_HEADERS: Final[dict[str, str]] = {
    "Content-Type": "video/mp2t",
    "Cache-Control": "public, max-age=31536000",
}

CONTENT_SECURITY_POLICY: Final[str] = "; ".join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: blob:",
    "media-src 'self' blob:",
    "connect-src 'self' ws: wss:",
])

SECURITY_HEADERS: Final[dict[str, str]] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
}


class HLSHeadersMiddleware(BaseHTTPMiddleware):
    """Set HLS cache headers under `prefix` and security headers everywhere.

    Args:
        app: ASGI application
        prefix: URL prefix the HLS output is served under
    """

    def __init__(self, app: ASGIApp, prefix: str = "/streams") -> None:
        super().__init__(app)
        self.prefix = prefix.rstrip("/") + "/"

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        path = request.url.path
        if path.startswith(self.prefix) and response.status_code < 400:
            if path.endswith(".m3u8"):
                response.headers.update(PLAYLIST_HEADERS)
            elif path.endswith(".ts"):
                response.headers.update(SEGMENT_HEADERS)

        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
