"""
Server-side session lifecycle.

Every access token references one `AuthSession` row through its `sid` claim. The row,
not the token, decides whether a request is authenticated:

- issue_session_token: persist a new active session, then sign a token for it
- authenticate_token: verify the token, cross-check the session, slide its expiry
- revoke_session / revoke_all_user_sessions / deactivate_all_sessions: set is_active=False
- cleanup_expired_sessions / SessionJanitor: delete expired or inactive rows

All functions take an explicit SQLAlchemy session; they commit their own writes.
Storage failures surface as StorageUnavailable so callers can fail closed.
"""

import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from midnight_brew.core.config import get_settings
from midnight_brew.core.tokens import InvalidCredential, create_access_token, decode_access_token
from midnight_brew.core.tracing import SESSIONS_DELETED, SESSIONS_ISSUED, SESSIONS_REVOKED
from midnight_brew.models.auth_session import AuthSession
from midnight_brew.models.user import User

logger = logging.getLogger("mb.sessions")


class StorageUnavailable(Exception):
    """The session/credential store could not be read or written."""


class AuthFailure(str, enum.Enum):
    missing_credential = "missing_credential"
    invalid_credential = "invalid_credential"
    session_not_found = "session_not_found"
    session_expired = "session_expired"


@dataclass(frozen=True)
class AuthIdentity:
    user_id: int
    email: str
    first_name: str
    last_name: str
    session_id: str


@dataclass
class AuthResult:
    identity: Optional[AuthIdentity] = None
    session: Optional[AuthSession] = None
    failure: Optional[AuthFailure] = None

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    @classmethod
    def reject(cls, failure: AuthFailure) -> "AuthResult":
        return cls(failure=failure)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    session: AuthSession


@dataclass(frozen=True)
class RevokeOutcome:
    ok: bool
    revoked: int = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_ttl() -> timedelta:
    return timedelta(hours=get_settings().session_timeout_hours)


def new_session_id() -> str:
    return str(uuid.uuid4())


def _storage_error(db: Session, exc: SQLAlchemyError, action: str) -> StorageUnavailable:
    try:
        db.rollback()
    except SQLAlchemyError:
        logger.exception("rollback failed after %s", action)
    return StorageUnavailable(f"{action} failed: {exc.__class__.__name__}")


def issue_session_token(
    db: Session,
    user: User,
    *,
    user_agent: Optional[str] = None,
    ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IssuedToken:
    """
    Create an active session for an already-authenticated user and sign a token for it.

    The session is committed before the token is signed; if the write fails no token
    is produced.
    """
    now = now or utcnow()
    sess = AuthSession(
        id=new_session_id(),
        user_id=int(user.id),
        is_active=True,
        created_at=now,
        last_activity_at=now,
        expires_at=now + session_ttl(),
        user_agent=(user_agent or "")[:512] or None,
        ip=(ip or "")[:64] or None,
    )
    try:
        db.add(sess)
        db.commit()
    except SQLAlchemyError as exc:
        raise _storage_error(db, exc, "session create") from exc

    token = create_access_token(
        user_id=int(user.id),
        session_id=sess.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        now=now,
    )
    SESSIONS_ISSUED.inc()
    logger.info("session_issued user_id=%s sid=%s", user.id, sess.id)
    return IssuedToken(token=token, session=sess)


def authenticate_token(db: Session, token: Optional[str], *, now: Optional[datetime] = None) -> AuthResult:
    """
    Resolve a raw token to an identity, or to the reason it was rejected.

    Expected failures come back as AuthResult.failure; only StorageUnavailable is raised.
    A session found past its expiry is deactivated before the rejection is returned.
    On success the session's expiry slides to now + TTL.
    """
    if not token:
        return AuthResult.reject(AuthFailure.missing_credential)

    try:
        claims = decode_access_token(token)
    except InvalidCredential:
        return AuthResult.reject(AuthFailure.invalid_credential)

    now = now or utcnow()
    try:
        sess = (
            db.query(AuthSession)
            .filter(
                AuthSession.id == claims.session_id,
                AuthSession.user_id == claims.user_id,
                AuthSession.is_active.is_(True),
            )
            .first()
        )
        if sess is None:
            return AuthResult.reject(AuthFailure.session_not_found)

        if sess.is_expired(now):
            sess.deactivate()
            db.commit()
            return AuthResult.reject(AuthFailure.session_expired)

        sess.refresh(session_ttl(), now)
        db.commit()
    except SQLAlchemyError as exc:
        raise _storage_error(db, exc, "session check") from exc

    identity = AuthIdentity(
        user_id=claims.user_id,
        email=claims.email,
        first_name=claims.first_name,
        last_name=claims.last_name,
        session_id=claims.session_id,
    )
    return AuthResult(identity=identity, session=sess)


def revoke_session(db: Session, session_id: str) -> bool:
    """
    Single-device logout. Idempotent: an unknown or already-inactive session is a success.

    Returns False (and logs) when the store could not be written.
    """
    try:
        sess = db.get(AuthSession, session_id)
        changed = bool(sess is not None and sess.is_active)
        if changed:
            sess.deactivate()
            db.add(sess)
            db.commit()
    except SQLAlchemyError:
        logger.exception("session_revoke_failed sid=%s", session_id)
        db.rollback()
        return False

    if changed:
        SESSIONS_REVOKED.labels("single").inc()
    logger.info("session_revoked sid=%s changed=%s", session_id, changed)
    return True


def revoke_all_user_sessions(db: Session, user_id: int) -> RevokeOutcome:
    """Log out everywhere for one user. Other users' sessions are untouched."""
    try:
        rows = (
            db.query(AuthSession)
            .filter(AuthSession.user_id == int(user_id), AuthSession.is_active.is_(True))
            .all()
        )
        for s in rows:
            s.deactivate()
            db.add(s)
        db.commit()
    except SQLAlchemyError:
        logger.exception("session_revoke_all_failed user_id=%s", user_id)
        db.rollback()
        return RevokeOutcome(ok=False)

    revoked = len(rows)
    if revoked:
        SESSIONS_REVOKED.labels("user").inc(revoked)
    logger.info("sessions_revoked_for_user user_id=%s count=%s", user_id, revoked)
    return RevokeOutcome(ok=True, revoked=revoked)


def deactivate_all_sessions(db: Session) -> int:
    """Boot-time policy: every existing session must log in again."""
    try:
        count = (
            db.query(AuthSession)
            .filter(AuthSession.is_active.is_(True))
            .update({"is_active": False}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        raise _storage_error(db, exc, "global session deactivation") from exc

    count = int(count or 0)
    if count:
        SESSIONS_REVOKED.labels("global").inc(count)
    logger.warning("sessions_deactivated_on_startup count=%s", count)
    return count


def cleanup_expired_sessions(db: Session, *, now: Optional[datetime] = None) -> int:
    """Delete sessions that are expired or inactive. Returns the number of rows removed."""
    now = now or utcnow()
    try:
        deleted = (
            db.query(AuthSession)
            .filter(or_(AuthSession.expires_at < now, AuthSession.is_active.is_(False)))
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        raise _storage_error(db, exc, "session cleanup") from exc

    deleted = int(deleted or 0)
    if deleted:
        SESSIONS_DELETED.inc(deleted)
    logger.info("sessions_cleaned deleted=%s", deleted)
    return deleted


class SessionJanitor:
    """
    Runs cleanup_expired_sessions on a fixed interval in a daemon thread.

    Each pass opens its own database session from `session_factory`.
    """

    def __init__(self, session_factory: Callable[[], Session], interval_seconds: float) -> None:
        self._session_factory = session_factory
        self._interval = float(interval_seconds)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        db = self._session_factory()
        try:
            return cleanup_expired_sessions(db)
        finally:
            db.close()

    def start(self) -> None:
        if self.running or self._interval <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="mb-session-janitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except StorageUnavailable:
                # Not security-relevant; the next pass retries.
                logger.exception("session janitor pass failed")


def run_startup_session_tasks(session_factory: Callable[[], Session]) -> dict:
    """Boot hook: optional global deactivation, then one janitor pass."""
    settings = get_settings()
    db = session_factory()
    try:
        deactivated = deactivate_all_sessions(db) if settings.session_revoke_on_startup else 0
        deleted = cleanup_expired_sessions(db)
    finally:
        db.close()
    return {"deactivated": deactivated, "deleted": deleted}
