import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from midnight_brew.core.config import get_settings
from midnight_brew.db.session import engine

router = APIRouter(tags=["health"])

SERVICE_NAME = "midnight-brew-backend"


def _release() -> Optional[str]:
    return os.getenv("GIT_SHA") or None


def _base_payload() -> dict:
    settings = get_settings()
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "environment": settings.environment,
        "release": _release(),
        "time": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/")
def root() -> dict:
    # Load balancers may probe "/"; keep it cheap and 200.
    return _base_payload()


@router.get("/health")
@router.get("/healthz")
def health() -> dict:
    return _base_payload()


@router.get("/readyz")
def readyz(response: Response) -> dict:
    """
    Readiness check: the session store must be reachable, otherwise every
    authenticated request would fail closed. Returns 503 when not ready.
    """
    settings = get_settings()
    checks: dict[str, object] = {}
    ok = True

    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        checks["db"] = "ok"
    except SQLAlchemyError as e:
        ok = False
        checks["db"] = "error"
        checks["db_error"] = str(e)[:250]

    if ok and settings.environment == "production":
        try:
            with engine.connect() as conn:
                v = conn.execute(text("select version_num from alembic_version limit 1")).scalar()
            checks["alembic_version"] = v or None
            if not v:
                ok = False
        except SQLAlchemyError as e:
            ok = False
            checks["alembic_version"] = None
            checks["alembic_error"] = str(e)[:250]

    if not ok:
        response.status_code = 503
    payload = _base_payload()
    payload.update({"status": "ok" if ok else "not_ready", "checks": checks})
    return payload
