"""Access token (JWT) encoding and verification."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from midnight_brew.core.config import get_settings


class InvalidCredential(Exception):
    """Token is malformed, not signed by us, of the wrong type, or past its `exp`."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    session_id: str
    email: str
    first_name: str
    last_name: str


def create_access_token(
    *,
    user_id: int,
    session_id: str,
    email: str,
    first_name: str = "",
    last_name: str = "",
    now: datetime,
    expire_hours: Optional[int] = None,
) -> str:
    settings = get_settings()
    hours = expire_hours if expire_hours is not None else settings.jwt_expire_hours
    payload = {
        "sub": str(user_id),
        "sid": session_id,
        "email": email,
        "first_name": first_name or "",
        "last_name": last_name or "",
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=hours)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenClaims:
    """Verify signature and `exp`, then normalize claims. Raises InvalidCredential."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        # ExpiredSignatureError and JWTClaimsError are both JWTError subclasses
        raise InvalidCredential(str(exc)) from exc

    if payload.get("typ") != "access":
        raise InvalidCredential("Invalid token type")
    sid = str(payload.get("sid") or "")
    if not sid:
        raise InvalidCredential("Missing session id")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError) as exc:
        raise InvalidCredential("Invalid subject") from exc

    return TokenClaims(
        user_id=user_id,
        session_id=sid,
        email=str(payload.get("email") or ""),
        first_name=str(payload.get("first_name") or ""),
        last_name=str(payload.get("last_name") or ""),
    )
