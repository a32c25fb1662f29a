import json
import logging
import os
import time
import uuid
from typing import Optional

from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

from midnight_brew.core.config import get_settings


REQ_COUNT = Counter(
    "mb_http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)
REQ_LATENCY = Histogram(
    "mb_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "route"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
AUTH_OUTCOMES = Counter(
    "mb_auth_outcomes_total",
    "Request authentication outcomes",
    ["outcome"],
)
SESSIONS_ISSUED = Counter(
    "mb_sessions_issued_total",
    "Sessions created at login/register",
)
SESSIONS_REVOKED = Counter(
    "mb_sessions_revoked_total",
    "Sessions deactivated by logout or revoke-all",
    ["scope"],
)
SESSIONS_DELETED = Counter(
    "mb_sessions_deleted_total",
    "Expired or inactive sessions removed by the janitor",
)

_SKIP_METRICS_ROUTES = ("/metrics", "/health", "/healthz", "/readyz")


def _release() -> Optional[str]:
    return os.getenv("GIT_SHA") or None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Adds a request ID and logs one JSON line per request/response.
    """

    async def dispatch(self, request: Request, call_next):
        # Propagate a request id if provided by upstream (e.g. proxy), else generate.
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.time()
        try:
            response = await call_next(request)
        except Exception:
            payload = self._payload(request, request_id, start, status_code=500)
            payload["event"] = "http_exception"
            logging.getLogger("mb.http").exception(json.dumps(payload, ensure_ascii=False))
            raise

        payload = self._payload(request, request_id, start, status_code=response.status_code)
        logger = logging.getLogger("mb.http")
        if response.status_code >= 500:
            logger.error(json.dumps(payload, ensure_ascii=False))
        elif response.status_code >= 400:
            logger.warning(json.dumps(payload, ensure_ascii=False))
        else:
            logger.info(json.dumps(payload, ensure_ascii=False))

        route = payload["route"]
        if route not in _SKIP_METRICS_ROUTES:
            REQ_COUNT.labels(request.method, route, str(response.status_code)).inc()
            REQ_LATENCY.labels(request.method, route).observe(time.time() - start)

        response.headers["X-Request-ID"] = request_id
        return response

    @staticmethod
    def _payload(request: Request, request_id: str, start: float, *, status_code: int) -> dict:
        route_obj = request.scope.get("route")
        return {
            "event": "http_request",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "route": getattr(route_obj, "path", None) or request.url.path,
            "status_code": status_code,
            "duration_ms": int((time.time() - start) * 1000),
            "client_ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "release": _release(),
        }


def configure_logging() -> None:
    """Configure a sane default logging setup for the backend."""
    settings = get_settings()
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    # Ensure our loggers are visible even if uvicorn already configured logging
    for name in ("mb.http", "mb.auth", "mb.sessions", "mb.migrations", "mb.tracing"):
        logging.getLogger(name).setLevel(level)


def init_tracing(app: FastAPI) -> None:
    """
    Attach request logging and, if configured, error tracing (Sentry).
    """
    settings = get_settings()
    configure_logging()

    app.add_middleware(RequestLoggingMiddleware)

    dsn: Optional[str] = settings.sentry_dsn
    if not dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=settings.sentry_env or settings.environment,
            release=_release(),
            integrations=[FastApiIntegration()],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05")),
        )
        logging.getLogger("mb.tracing").info("Sentry tracing initialized")
    except ImportError:
        logging.getLogger("mb.tracing").warning("sentry-sdk not installed; skipping Sentry tracing setup")
