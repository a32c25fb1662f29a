"""
Operator commands.

    python -m midnight_brew.manage make-admin someone@example.com
    python -m midnight_brew.manage setup-admin            # uses ADMIN_EMAIL / ADMIN_PASSWORD
    python -m midnight_brew.manage cleanup-sessions
    python -m midnight_brew.manage revoke-sessions [--user-id 42]
    python -m midnight_brew.manage serve [--host 0.0.0.0] [--port 8000]
    python -m midnight_brew.manage generate-secrets [--session-hours 24]
"""

import argparse
import secrets
import sys
from typing import Callable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from midnight_brew.core.config import get_settings
from midnight_brew.core.passwords import hash_password
from midnight_brew.core.sessions import (
    StorageUnavailable,
    cleanup_expired_sessions,
    deactivate_all_sessions,
    revoke_all_user_sessions,
)
from midnight_brew.db.base import Base
from midnight_brew.models.user import User, UserRole


def _find_user(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == (email or "").strip().lower()).first()


def make_admin(db: Session, email: str) -> bool:
    """Promote an existing user. Returns False if no such user."""
    user = _find_user(db, email)
    if not user:
        return False
    user.role = UserRole.admin
    db.add(user)
    db.commit()
    return True


def setup_admin(db: Session, email: str, password: str) -> User:
    """Create the bootstrap admin, or reset role + password if the account exists."""
    email = (email or "").strip().lower()
    user = _find_user(db, email)
    if not user:
        user = User(email=email, first_name="Admin", last_name="User")
    user.role = UserRole.admin
    user.hashed_password = hash_password(password)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def revoke_sessions(db: Session, user_id: Optional[int] = None) -> int:
    """Revoke one user's sessions, or every session when user_id is None."""
    if user_id is None:
        return deactivate_all_sessions(db)
    outcome = revoke_all_user_sessions(db, user_id)
    if not outcome.ok:
        raise StorageUnavailable("revoke failed")
    return outcome.revoked


def secrets_env(session_hours: int = 24) -> list[str]:
    """
    Fresh deployment env lines. Nothing is written to disk.

    Token expiry and session TTL are emitted as a pair: the session row decides,
    the token `exp` only bounds it, so keep JWT_EXPIRE_HOURS >= SESSION_TIMEOUT_HOURS.
    """
    return [
        "# Paste into your secret manager; do NOT commit",
        f"JWT_SECRET_KEY={secrets.token_urlsafe(64)}",
        f"SESSION_TIMEOUT_HOURS={session_hours}",
        f"JWT_EXPIRE_HOURS={session_hours}",
        "SESSION_REVOKE_ON_STARTUP=true",
        "# Optional",
        f"METRICS_TOKEN={secrets.token_urlsafe(32)}",
    ]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="midnight_brew.manage")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("make-admin", help="promote an existing user to admin")
    p.add_argument("email")

    sub.add_parser("setup-admin", help="create/reset the admin from ADMIN_EMAIL and ADMIN_PASSWORD")
    sub.add_parser("cleanup-sessions", help="delete expired and inactive sessions now")

    p = sub.add_parser("revoke-sessions", help="log out one user or everyone")
    p.add_argument("--user-id", type=int, default=None)

    p = sub.add_parser("serve", help="run the API with uvicorn")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")

    p = sub.add_parser("generate-secrets", help="print fresh production secrets")
    p.add_argument("--session-hours", type=int, default=24)
    return parser


def main(argv: Optional[Sequence[str]] = None, session_factory: Optional[Callable[[], Session]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("midnight_brew.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    if args.command == "generate-secrets":
        if args.session_hours <= 0:
            print("--session-hours must be positive", file=sys.stderr)
            return 1
        print("\n".join(secrets_env(args.session_hours)))
        return 0

    if session_factory is None:
        from midnight_brew.db.session import SessionLocal, engine

        # Fresh SQLite databases have no tables yet
        if get_settings().environment != "production":
            Base.metadata.create_all(bind=engine)
        session_factory = SessionLocal

    db = session_factory()
    try:
        if args.command == "make-admin":
            if not make_admin(db, args.email):
                print(f"No user with email {args.email}", file=sys.stderr)
                return 1
            print(f"✓ {args.email} is now an admin")
            return 0

        if args.command == "setup-admin":
            settings = get_settings()
            if not settings.admin_email or not settings.admin_password:
                print("ADMIN_EMAIL and ADMIN_PASSWORD must be set", file=sys.stderr)
                return 1
            user = setup_admin(db, settings.admin_email, settings.admin_password)
            print(f"✓ Admin ready: {user.email}")
            return 0

        if args.command == "cleanup-sessions":
            print(f"✓ Deleted {cleanup_expired_sessions(db)} sessions")
            return 0

        if args.command == "revoke-sessions":
            count = revoke_sessions(db, args.user_id)
            print(f"✓ Revoked {count} sessions")
            return 0
    except StorageUnavailable as exc:
        print(f"Database unavailable: {exc}", file=sys.stderr)
        return 2
    finally:
        db.close()
    return 1


if __name__ == "__main__":
    sys.exit(main())
