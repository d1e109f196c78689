"""Persistence of refresh-token records.

The lifecycle service only talks to a :class:`TokenStore`. The SQLAlchemy
implementation is bound to the caller's session and never commits: the caller
owns the unit of work, so every write made while handling one request lands
or disappears together.
"""
from datetime import datetime
from typing import Protocol

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from apitemplate.models.auth import RefreshToken
from apitemplate.models.user import User


class TokenStore(Protocol):
    def get_by_token(self, token: str) -> RefreshToken | None: ...

    def token_exists(self, token: str) -> bool: ...

    def add(self, record: RefreshToken) -> RefreshToken: ...

    def lock_user(self, user_id: int) -> None: ...

    def list_active_for_user(self, user_id: int, now: datetime) -> list[RefreshToken]: ...

    def consume(self, record: RefreshToken, successor: str, now: datetime) -> bool: ...

    def revoke(
        self, records: list[RefreshToken], now: datetime, ip_address: str | None = None
    ) -> int: ...

    def delete_terminal_before(self, cutoff: datetime) -> int: ...


def _active_clause(now: datetime):
    return and_(
        RefreshToken.is_used.is_(False),
        RefreshToken.is_revoked.is_(False),
        RefreshToken.expires_at > now,
    )


class SqlAlchemyTokenStore:
    """TokenStore over a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_token(self, token: str) -> RefreshToken | None:
        return self.db.scalar(select(RefreshToken).where(RefreshToken.token == token))

    def token_exists(self, token: str) -> bool:
        return self.db.scalar(select(RefreshToken.id).where(RefreshToken.token == token)) is not None

    def add(self, record: RefreshToken) -> RefreshToken:
        self.db.add(record)
        self.db.flush()
        return record

    def lock_user(self, user_id: int) -> None:
        """Hold the user's row lock until the caller's transaction ends.

        Serialises token issuance per subject on backends with row locks;
        SQLite ignores FOR UPDATE and serialises writers at commit instead.
        """
        self.db.execute(select(User.id).where(User.id == user_id).with_for_update())

    def list_active_for_user(self, user_id: int, now: datetime) -> list[RefreshToken]:
        """Active tokens of a user, oldest issuance first (record id breaks ties)."""
        stmt = (
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id, _active_clause(now))
            .order_by(RefreshToken.created_at.asc(), RefreshToken.id.asc())
        )
        return list(self.db.scalars(stmt))

    def consume(self, record: RefreshToken, successor: str, now: datetime) -> bool:
        """Mark an active token used and link its successor.

        The update only matches a row that is still active, so of two
        concurrent rotations of the same token exactly one wins.
        """
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id == record.id, _active_clause(now))
            .values(is_used=True, used_at=now, replaced_by_token=successor)
            .execution_options(synchronize_session=False)
        )
        consumed = self.db.execute(stmt).rowcount == 1
        self.db.refresh(record)
        return consumed

    def revoke(self, records: list[RefreshToken], now: datetime, ip_address: str | None = None) -> int:
        """Revoke the given tokens that are still active; returns how many were."""
        if not records:
            return 0
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.id.in_([record.id for record in records]), _active_clause(now))
            .values(is_revoked=True, revoked_at=now, revoked_by_ip=ip_address)
            .execution_options(synchronize_session=False)
        )
        revoked = self.db.execute(stmt).rowcount
        for record in records:
            self.db.refresh(record)
        return revoked

    def delete_terminal_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(RefreshToken)
            .where(
                or_(
                    and_(RefreshToken.is_revoked.is_(True), RefreshToken.revoked_at < cutoff),
                    and_(RefreshToken.is_used.is_(True), RefreshToken.used_at < cutoff),
                    RefreshToken.expires_at < cutoff,
                    # terminal rows written without their transition stamp
                    and_(
                        or_(RefreshToken.is_revoked.is_(True), RefreshToken.is_used.is_(True)),
                        RefreshToken.revoked_at.is_(None),
                        RefreshToken.used_at.is_(None),
                        RefreshToken.created_at < cutoff,
                    ),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount
