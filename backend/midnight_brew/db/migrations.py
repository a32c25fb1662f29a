import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from midnight_brew.core.config import get_settings
from midnight_brew.db.session import engine

logger = logging.getLogger("mb.migrations")
_migration_thread: Optional[threading.Thread] = None


def _alembic_config() -> Config:
    """Alembic config pointing at backend/alembic.ini, with the URL from settings."""
    settings = get_settings()
    backend_dir = Path(__file__).resolve().parents[2]  # .../backend
    cfg = Config(str(backend_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(backend_dir / "alembic"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return cfg


def stamp_head_if_missing() -> bool:
    """
    If alembic_version table is missing, stamp DB to current head.
    Returns True if a stamp was performed.
    """
    insp = inspect(engine)
    if insp.has_table("alembic_version"):
        return False

    logger.warning("alembic_version missing; stamping database to Alembic head (no schema changes).")
    command.stamp(_alembic_config(), "head")
    return True


def upgrade_head() -> None:
    logger.info("Running Alembic upgrade head.")
    command.upgrade(_alembic_config(), "head")


def _bool_env(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _start_background(job_name: str, fn: Callable[[], None]) -> None:
    """Run a migration step in a daemon thread so the server can bind its port quickly."""
    global _migration_thread
    if _migration_thread and _migration_thread.is_alive():
        logger.warning("Migration already running in background; skipping (%s).", job_name)
        return

    def _runner():
        try:
            fn()
            logger.warning("Migration background job finished (%s).", job_name)
        except Exception:
            logger.exception("Migration background job failed (%s).", job_name)

    t = threading.Thread(target=_runner, name=f"mb-{job_name}", daemon=True)
    _migration_thread = t
    t.start()


def run_migrations_on_startup() -> None:
    """
    Production only. Controlled by env vars:
    - ALEMBIC_UPGRADE_ON_STARTUP=true: run upgrade head (applies migrations)
    - ALEMBIC_STAMP_IF_MISSING=true: create alembic_version if missing
    - ALEMBIC_ASYNC_ON_STARTUP=false: run the step inline instead of in a thread
    """
    settings = get_settings()
    if settings.environment != "production":
        return

    stamp = _bool_env("ALEMBIC_STAMP_IF_MISSING", default=False)
    upgrade = _bool_env("ALEMBIC_UPGRADE_ON_STARTUP", default=False)
    async_mode = _bool_env("ALEMBIC_ASYNC_ON_STARTUP", default=True)

    # Upgrade wins: stamping first would mark the DB current and skip migrations.
    if upgrade:
        if async_mode:
            _start_background("alembic-upgrade", upgrade_head)
        else:
            upgrade_head()
        return

    if stamp:
        if async_mode:
            _start_background("alembic-stamp", stamp_head_if_missing)
        elif stamp_head_if_missing():
            logger.warning("Database stamped to Alembic head successfully.")
