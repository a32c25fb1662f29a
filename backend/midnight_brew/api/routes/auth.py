import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from midnight_brew.api.deps import (
    authenticate_request,
    get_current_identity,
    get_current_user,
    get_db_session,
    get_optional_identity,
)
from midnight_brew.core.config import get_settings
from midnight_brew.core.passwords import hash_password, verify_password
from midnight_brew.core.rate_limit import enforce_rate_limit, get_client_ip
from midnight_brew.core.sessions import (
    AuthIdentity,
    StorageUnavailable,
    issue_session_token,
    revoke_all_user_sessions,
    revoke_session,
)
from midnight_brew.models.auth_session import AuthSession
from midnight_brew.models.user import User, UserRole
from midnight_brew.schemas.auth import (
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    SessionOut,
    TokenResponse,
    UserOut,
)

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("mb.auth")


def _set_auth_cookie(response: Response, token: str, settings) -> None:
    response.set_cookie(
        key=settings.cookie_name,
        value=token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
        domain=settings.cookie_domain,
        max_age=settings.session_ttl_seconds,
    )


def _clear_auth_cookie(response: Response, settings) -> None:
    response.delete_cookie(settings.cookie_name, path="/", domain=settings.cookie_domain)


def _user_out(user: User) -> dict:
    return UserOut.model_validate(user).model_dump(mode="json")


def _issue(db: Session, user: User, request: Request, response: Response) -> TokenResponse:
    settings = get_settings()
    issued = issue_session_token(
        db,
        user,
        user_agent=request.headers.get("user-agent"),
        ip=get_client_ip(request),
    )
    _set_auth_cookie(response, issued.token, settings)
    return TokenResponse(token=issued.token, user=UserOut.model_validate(user))


@router.post("/register", response_model=TokenResponse)
def register(body: RegisterRequest, request: Request, response: Response, db: Session = Depends(get_db_session)):
    settings = get_settings()
    enforce_rate_limit(
        request,
        scope="auth_register_ip",
        limit=settings.auth_register_rl_ip_per_hour,
        window_seconds=60 * 60,
    )

    # Case-insensitive check (Postgres UNIQUE is case-sensitive by default)
    existing = db.query(User).filter(func.lower(User.email) == body.email).first()
    if existing:
        raise HTTPException(status_code=409, detail="User already exists")

    user = User(
        email=body.email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
        phone=(body.phone or "").strip() or None,
        role=UserRole.user,
    )
    db.add(user)
    try:
        db.commit()
        db.refresh(user)
    except IntegrityError:
        db.rollback()
        # Lost a race against a concurrent registration for the same email
        raise HTTPException(status_code=409, detail="User already exists")

    logger.info("user_registered user_id=%s", user.id)
    return _issue(db, user, request, response)


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db_session)):
    settings = get_settings()
    enforce_rate_limit(
        request,
        scope="auth_login_ip",
        limit=settings.auth_login_rl_ip_per_minute,
        window_seconds=60,
    )
    enforce_rate_limit(
        request,
        scope="auth_login_email",
        limit=settings.auth_login_rl_email_per_minute,
        window_seconds=60,
        discriminator=body.email,
    )

    user = db.query(User).filter(func.lower(User.email) == body.email).first()
    if not user or not verify_password(body.password, user.hashed_password):
        logger.info("login_failed ip=%s", get_client_ip(request))
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return _issue(db, user, request, response)


@router.post("/logout")
def logout(request: Request, response: Response, db: Session = Depends(get_db_session)):
    """
    Revoke the current session (if the request carries a live one) and clear the cookie.

    The cookie is cleared even when server-side revocation fails.
    """
    settings = get_settings()
    revoked = False
    try:
        result = authenticate_request(request, db)
    except StorageUnavailable:
        result = None
    if result is not None and result.authenticated:
        revoked = revoke_session(db, result.identity.session_id)

    _clear_auth_cookie(response, settings)
    return {"message": "ok", "revoked": revoked}


@router.post("/logout-all")
def logout_all(
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db_session),
):
    """Log out from every device, including this one."""
    settings = get_settings()
    outcome = revoke_all_user_sessions(db, identity.user_id)
    status_code = 200 if outcome.ok else 503
    resp = JSONResponse(status_code=status_code, content={"ok": outcome.ok, "revoked": outcome.revoked})
    _clear_auth_cookie(resp, settings)
    return resp


@router.get("/profile")
def profile(user: User = Depends(get_current_user)):
    return _user_out(user)


@router.get("/status")
def status(
    identity: Optional[AuthIdentity] = Depends(get_optional_identity),
    db: Session = Depends(get_db_session),
):
    """Navigation helper: who (if anyone) is logged in. Never rejects."""
    if identity is None:
        return {"authenticated": False, "user": None}
    user = db.get(User, identity.user_id)
    if user is None:
        return {"authenticated": False, "user": None}
    return {"authenticated": True, "user": _user_out(user)}


@router.get("/sessions")
def list_sessions(
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db_session),
):
    """
    List active sessions (devices) for current user.
    """
    rows = (
        db.query(AuthSession)
        .filter(AuthSession.user_id == identity.user_id, AuthSession.is_active.is_(True))
        .order_by(AuthSession.last_activity_at.desc())
        .limit(200)
        .all()
    )
    out = []
    for s in rows:
        item = SessionOut.model_validate(s)
        item.is_current = s.id == identity.session_id
        out.append(item.model_dump(mode="json"))
    return out


@router.post("/password")
def change_password(
    body: PasswordChangeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db_session),
):
    """Change password, then log out everywhere so old tokens stop working."""
    settings = get_settings()
    if not verify_password(body.current_password, user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    user.hashed_password = hash_password(body.new_password)
    db.add(user)
    db.commit()

    outcome = revoke_all_user_sessions(db, user.id)
    if outcome.ok:
        resp = JSONResponse(status_code=200, content={"message": "ok", "revoked": outcome.revoked})
    else:
        # Password is changed, but old tokens may still work; the caller must retry logout-all.
        resp = JSONResponse(
            status_code=503,
            content={"detail": "Password changed but sessions could not be revoked", "revoked": 0},
        )
    _clear_auth_cookie(resp, settings)
    return resp
