import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with Pydantic validation.
    Loads from environment variables with type checking and validation.
    """
    app_name: str = Field(default="The Midnight Brew")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    backend_cors_origins: str = Field(default="http://localhost:3000,http://127.0.0.1:3000")
    backend_cors_origins_regex: Optional[str] = Field(default=None)

    database_url: str = Field(default="sqlite:///./midnight_brew.db", validate_default=True)

    # Token signing. No default on purpose: the process must not start without it.
    jwt_secret_key: str = Field(...)
    jwt_algorithm: str = Field(default="HS256")
    jwt_expire_hours: int = Field(default=24, gt=0)

    # Server-side sessions
    session_timeout_hours: int = Field(default=24, gt=0)
    session_cleanup_interval_minutes: int = Field(default=60, ge=0)
    session_revoke_on_startup: bool = Field(default=True)

    # Cookie transport for the access token
    cookie_name: str = Field(default="token")
    cookie_domain: Optional[str] = Field(default=None)
    cookie_secure: bool = Field(default=False)
    cookie_samesite: str = Field(default="lax")

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # Login / register throttling
    redis_url: Optional[str] = Field(default=None)
    auth_rate_limit_enabled: bool = Field(default=True)
    auth_login_rl_ip_per_minute: int = Field(default=20)
    auth_login_rl_email_per_minute: int = Field(default=10)
    auth_register_rl_ip_per_hour: int = Field(default=30)

    # Observability
    sentry_dsn: Optional[str] = Field(default=None)
    sentry_env: str = Field(default="development")
    metrics_token: Optional[str] = Field(default=None)

    # Admin bootstrap (manage.py setup-admin)
    admin_email: Optional[str] = Field(default=None)
    admin_password: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        # Load env file based on ENVIRONMENT; default to development
        env_file=".env.production" if os.getenv("ENVIRONMENT") == "production" else ".env.development",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str, info: ValidationInfo) -> str:
        """Refuse blank secrets everywhere and weak ones in production."""
        v = (v or "").strip()
        if not v:
            raise ValueError("JWT_SECRET_KEY must be set")
        if info.data.get("environment") == "production":
            lowered = v.lower()
            if len(v) < 32 or "change" in lowered or "secret" in lowered or lowered.startswith("dev-"):
                raise ValueError(
                    "JWT_SECRET_KEY must be a strong, unique secret (min 32 chars) in production. "
                    "Generate with: python -m midnight_brew.manage generate-secrets"
                )
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str, info: ValidationInfo) -> str:
        """Validate database URL; disallow SQLite in production."""
        if info.data.get("environment") == "production" and v.startswith("sqlite"):
            raise ValueError("SQLite is not allowed for DATABASE_URL in production. Use PostgreSQL.")
        return v

    @field_validator("cookie_samesite")
    @classmethod
    def validate_samesite(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be one of: lax, strict, none")
        return v

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_timeout_hours * 60 * 60


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Validates all environment variables on first access.
    Raises ValidationError if configuration is invalid (e.g. JWT_SECRET_KEY missing).
    """
    return Settings()
