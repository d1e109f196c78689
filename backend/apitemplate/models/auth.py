"""Authentication/session models."""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from apitemplate.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a stored timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes even for timezone-aware columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RefreshToken(Base):
    """Opaque refresh token issued on login and consumed by rotation.

    A token is active while it is neither used nor revoked and has not
    reached ``expires_at``. ``is_used`` and ``is_revoked`` are set at most
    once and never cleared; ``replaced_by_token`` is only set by rotation.
    """

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("ix_refresh_tokens_user_active", "user_id", "is_revoked", "is_used"),
        Index("ix_refresh_tokens_expires_at", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(128), unique=True, nullable=False, index=True)
    device_info = Column(String(500))
    ip_address = Column(String(45))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True))
    revoked_by_ip = Column(String(45))
    replaced_by_token = Column(String(128))
    used_at = Column(DateTime(timezone=True))
    is_revoked = Column(Boolean, default=False, nullable=False)
    is_used = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="refresh_tokens")

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, used={self.is_used}, revoked={self.is_revoked})>"

    def is_expired_at(self, now: datetime) -> bool:
        return now >= as_utc(self.expires_at)

    def is_active_at(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_used and not self.is_expired_at(now)

    @property
    def is_active(self) -> bool:
        return self.is_active_at(utcnow())

    @property
    def state(self) -> str:
        """Lifecycle state name, computed on read."""
        if self.is_used:
            return "used"
        if self.is_revoked:
            return "revoked"
        if self.is_expired_at(utcnow()):
            return "expired"
        return "active"
