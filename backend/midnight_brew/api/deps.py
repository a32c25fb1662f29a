import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from midnight_brew.core.config import get_settings
from midnight_brew.core.sessions import AuthIdentity, AuthResult, StorageUnavailable, authenticate_token
from midnight_brew.core.tracing import AUTH_OUTCOMES
from midnight_brew.db.session import get_db_session  # re-exported for convenience
from midnight_brew.models.user import User, UserRole

logger = logging.getLogger("mb.auth")


def _extract_bearer_token(authorization: str) -> str:
    """Extract bearer token from authorization header value."""
    parts = (authorization or "").strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1].strip()


def extract_token(request: Request) -> Optional[str]:
    """Authorization header first, then the auth cookie. First one present wins."""
    token = _extract_bearer_token(request.headers.get("authorization", ""))
    if token:
        return token
    settings = get_settings()
    return request.cookies.get(settings.cookie_name) or None


def authenticate_request(request: Request, db: Session) -> AuthResult:
    """
    Run the token + session check for this request and attach the outcome to request.state.

    Raises StorageUnavailable when the session store cannot be reached.
    """
    request.state.identity = None
    request.state.auth_session = None
    try:
        result = authenticate_token(db, extract_token(request))
    except StorageUnavailable:
        AUTH_OUTCOMES.labels("storage_unavailable").inc()
        logger.error("auth_storage_unavailable path=%s", request.url.path)
        raise

    if result.authenticated:
        request.state.identity = result.identity
        request.state.auth_session = result.session
        AUTH_OUTCOMES.labels("authenticated").inc()
    else:
        AUTH_OUTCOMES.labels(result.failure.value).inc()
        logger.info("auth_rejected reason=%s path=%s", result.failure.value, request.url.path)
    return result


def get_current_identity(
    request: Request,
    db: Session = Depends(get_db_session),
) -> AuthIdentity:
    """Hard-gated: 401 for every authentication failure, without saying which one."""
    result = authenticate_request(request, db)
    if not result.authenticated:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result.identity


def get_optional_identity(
    request: Request,
    db: Session = Depends(get_db_session),
) -> Optional[AuthIdentity]:
    """
    Identity if the request is authenticated, None otherwise.

    Use for pages that work differently for logged in vs logged out visitors.
    """
    result = authenticate_request(request, db)
    if not result.authenticated:
        AUTH_OUTCOMES.labels("anonymous").inc()
        return None
    return result.identity


def get_current_user(
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db_session),
) -> User:
    """Load the user row behind the authenticated identity."""
    try:
        user = db.get(User, identity.user_id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageUnavailable("user lookup failed") from exc
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_role(*allowed_roles: UserRole) -> Callable:
    """Create dependency that requires user to have one of the specified roles."""
    def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed_roles:
            raise HTTPException(status_code=403, detail="Admin access required")
        return user
    return role_checker


require_admin = require_role(UserRole.admin)
