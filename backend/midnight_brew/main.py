import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from midnight_brew.api.routes import admin as admin_routes
from midnight_brew.api.routes import auth as auth_routes
from midnight_brew.api.routes import health as health_routes
from midnight_brew.api.routes import metrics as metrics_routes
from midnight_brew.core.config import get_settings
from midnight_brew.core.security_headers import SecurityHeadersMiddleware
from midnight_brew.core.sessions import SessionJanitor, StorageUnavailable, run_startup_session_tasks
from midnight_brew.core.tracing import init_tracing
from midnight_brew.db.base import Base
from midnight_brew.db.migrations import run_migrations_on_startup
from midnight_brew.db.session import SessionLocal, engine
from midnight_brew.models import auth_session, user  # noqa: F401  (register tables)

logger = logging.getLogger("mb.sessions")


def _unavailable(request: Request, exc: Exception) -> JSONResponse:
    # Fail closed: a request we could not check is never treated as authenticated.
    logger.error("storage_unavailable path=%s error=%s", request.url.path, exc.__class__.__name__)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.on_event("startup")
    def _startup() -> None:
        run_migrations_on_startup()
        try:
            summary = run_startup_session_tasks(SessionLocal)
            logger.warning("startup session tasks done %s", summary)
        except StorageUnavailable:
            # Schema may still be migrating in the background; the janitor will catch up.
            logger.exception("startup session tasks failed")
        janitor = SessionJanitor(SessionLocal, settings.session_cleanup_interval_minutes * 60)
        janitor.start()
        app.state.session_janitor = janitor

    @app.on_event("shutdown")
    def _shutdown() -> None:
        janitor = getattr(app.state, "session_janitor", None)
        if janitor is not None:
            janitor.stop()

    # Observability: configure logging + optional error tracing
    init_tracing(app)

    # CORS
    origins = [o.strip() for o in settings.backend_cors_origins.split(",") if o.strip()]
    cors_kwargs = dict(
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if origins:
        cors_kwargs["allow_origins"] = origins  # type: ignore
    if settings.backend_cors_origins_regex:
        cors_kwargs["allow_origin_regex"] = settings.backend_cors_origins_regex  # type: ignore
    app.add_middleware(CORSMiddleware, **cors_kwargs)

    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(StorageUnavailable, _unavailable)
    app.add_exception_handler(SQLAlchemyError, _unavailable)

    # Routers
    app.include_router(health_routes.router)
    app.include_router(metrics_routes.router)
    app.include_router(auth_routes.router)
    app.include_router(admin_routes.router)

    # Auto-create tables only in non-production for local/dev convenience.
    # In production all schema changes must go through Alembic migrations.
    if settings.environment != "production":
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError:
            logger.exception("Could not create tables")

    return app


app = create_app()
