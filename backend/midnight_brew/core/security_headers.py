from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Browser hardening headers on every response: no MIME sniffing, no framing,
    a locked-down CSP for the JSON API, and HSTS when served over HTTPS.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault(
            "Content-Security-Policy",
            "default-src 'none'; base-uri 'none'; object-src 'none'; frame-ancestors 'none'",
        )

        # TLS is usually terminated upstream; trust x-forwarded-proto
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "").lower()
        if proto == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

        # Anything touching credentials must not be cached by intermediaries
        if request.url.path.startswith(("/auth", "/admin")):
            response.headers.setdefault("Cache-Control", "no-store")

        return response
