import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import redis
from fastapi import HTTPException, Request

from midnight_brew.core.config import get_settings

logger = logging.getLogger("mb.auth")


def get_client_ip(request: Request) -> str:
    """
    Best-effort client IP extraction.

    Behind a proxy the first X-Forwarded-For hop is the client; in tests/dev
    fall back to request.client.host.
    """
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        return xff.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _hash(s: str) -> str:
    s = (s or "").strip().lower()
    if not s:
        return "empty"
    return hashlib.sha256(s.encode("utf-8")).hexdigest()[:32]


_redis_client: Optional[redis.Redis] = None
_redis_lock = threading.Lock()


def _get_redis_client() -> Optional[redis.Redis]:
    """
    Lazily create a Redis client.

    If Redis is not configured or is unreachable, returns None and we fall back
    to in-memory counters (single-instance protection only).
    """
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    url = (settings.redis_url or "").strip()
    if not url:
        return None

    with _redis_lock:
        if _redis_client is not None:
            return _redis_client
        try:
            client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=1)
            client.ping()
        except redis.RedisError:
            # Do not cache failures permanently; redis might appear later.
            logger.warning("rate limit redis unreachable; using in-memory counters")
            return None
        _redis_client = client
        return _redis_client


@dataclass(frozen=True)
class LimitResult:
    allowed: bool
    retry_after_seconds: int


_mem_lock = threading.Lock()
_mem_counters: dict[str, tuple[float, int]] = {}


def _prune_expired(now: float) -> None:
    """Drop counters whose window has closed. Caller holds _mem_lock."""
    for k in [k for k, (reset_at, _) in _mem_counters.items() if now >= reset_at]:
        del _mem_counters[k]


def _mem_hit(key: str, limit: int, window_seconds: int) -> LimitResult:
    now = time.time()
    with _mem_lock:
        if key not in _mem_counters:
            _prune_expired(now)
        reset_at, count = _mem_counters.get(key, (now + window_seconds, 0))
        if now >= reset_at:
            reset_at, count = now + window_seconds, 0
        count += 1
        _mem_counters[key] = (reset_at, count)
        allowed = count <= limit
        retry_after = max(0, int(reset_at - now)) if not allowed else 0
        return LimitResult(allowed=allowed, retry_after_seconds=retry_after)


def _redis_hit(key: str, limit: int, window_seconds: int) -> Optional[LimitResult]:
    client = _get_redis_client()
    if client is None:
        return None
    try:
        count = int(client.incr(key))
        if count == 1:
            client.expire(key, int(window_seconds))
        ttl = int(client.ttl(key))
    except redis.RedisError:
        return None
    # ttl can be -1/-2; normalize
    retry_after = max(0, ttl) if count > limit else 0
    return LimitResult(allowed=(count <= limit), retry_after_seconds=retry_after)


def hit(key: str, limit: int, window_seconds: int) -> LimitResult:
    """
    Increment a counter in a fixed window and return whether request is allowed.
    Prefers Redis, falls back to in-memory.
    """
    res = _redis_hit(key, limit, window_seconds)
    if res is not None:
        return res
    return _mem_hit(key, limit, window_seconds)


def enforce_rate_limit(
    request: Request,
    *,
    scope: str,
    limit: int,
    window_seconds: int,
    discriminator: str = "",
) -> None:
    """
    Rate limit helper. Raises HTTP 429 when exceeded.
    """
    settings = get_settings()
    if not settings.auth_rate_limit_enabled:
        return

    ip = get_client_ip(request)
    d = _hash(discriminator) if discriminator else ""
    key = f"mb:rl:{scope}:{ip}:{d}"
    res = hit(key, limit, window_seconds)
    if not res.allowed:
        logger.warning("rate_limited scope=%s ip=%s", scope, ip)
        headers = {"Retry-After": str(res.retry_after_seconds)} if res.retry_after_seconds else None
        raise HTTPException(status_code=429, detail="Too many requests", headers=headers)
