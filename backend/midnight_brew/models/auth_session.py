from datetime import datetime, timedelta, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from midnight_brew.db.base import Base


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthSession(Base):
    """
    Server-side record of one authenticated device/browser.

    The access JWT carries `sid` (this row's id). A token is only usable while the row
    it references is active and unexpired, so revocation happens here and never on the
    token itself.

    States: active and unexpired (valid), active but past `expires_at` (dead, deactivated
    lazily by the next auth attempt or removed by the janitor), inactive (revoked).
    No transition sets `is_active` back to True.
    """

    __tablename__ = "auth_sessions"

    # Random UUID4 string, never derived from user data
    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Diagnostic only; never compared during authentication
    user_agent = Column(Text, nullable=True)
    ip = Column(String(64), nullable=True)

    user = relationship("User", back_populates="sessions")

    def is_expired(self, now: datetime) -> bool:
        return now > as_utc(self.expires_at)

    def refresh(self, ttl: timedelta, now: datetime) -> None:
        """Slide the expiry window forward. Caller commits."""
        self.last_activity_at = now
        self.expires_at = now + ttl

    def deactivate(self) -> None:
        self.is_active = False
