"""Refresh-token lifecycle: issuance, rotation, revocation and cleanup.

States are derived from the stored flags::

    issued -> active -> used      (rotate)
                     -> revoked   (revoke, revoke-all, cap eviction)
                     -> expired   (now >= expires_at, never written)

Used, revoked and expired are terminal. The service flushes but never
commits; callers commit once per unit of work.
"""
from collections.abc import Callable
from datetime import datetime, timedelta
import logging

from apitemplate.config import Settings
from apitemplate.models.auth import RefreshToken, utcnow
from apitemplate.services.token_generator import SecureTokenGenerator
from apitemplate.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class RefreshTokenError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TokenNotFoundError(RefreshTokenError):
    """No record carries the presented token string."""


class TokenNotActiveError(RefreshTokenError):
    """The token exists but is used, revoked or expired.

    Presenting a consumed token is how credential reuse shows up, so the
    record is kept on the exception for the caller to react to.
    """

    def __init__(self, message: str, record: RefreshToken):
        super().__init__(message)
        self.record = record

    @property
    def is_reuse(self) -> bool:
        return bool(self.record.is_used)


class TokenGenerationError(RefreshTokenError):
    """A fresh token string collided with a stored one twice in a row."""


class RefreshTokenService:
    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        generator: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.generator = generator or SecureTokenGenerator()
        self.clock = clock

    @property
    def lifetime(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_expire_days)

    def generate_for(
        self,
        user_id: int,
        ip_address: str | None = None,
        device_info: str | None = None,
    ) -> RefreshToken:
        """Issue a new active token for a user, evicting the oldest at the cap."""
        return self._issue(user_id, self._draw_token(), ip_address, device_info)

    def get(self, token: str) -> RefreshToken | None:
        if not token:
            return None
        return self.store.get_by_token(token)

    def validate(self, token: str) -> RefreshToken:
        """Look a token up by its exact string, whatever its state."""
        record = self.get(token)
        if record is None:
            raise TokenNotFoundError("Refresh token not found")
        return record

    def rotate(
        self,
        old_token: RefreshToken | str,
        ip_address: str | None = None,
        device_info: str | None = None,
    ) -> RefreshToken:
        """Consume an active token and issue its successor.

        Both writes happen in the caller's transaction. A token that is not
        active raises :class:`TokenNotActiveError` and nothing is written.
        """
        record = self.validate(old_token) if isinstance(old_token, str) else old_token
        now = self.clock()
        if not record.is_active_at(now):
            self._reject_inactive(record)

        successor = self._draw_token()
        # user row before token rows, the same order issuance and cap eviction use
        self.store.lock_user(record.user_id)
        if not self.store.consume(record, successor, now):
            # lost a race with another rotation or revocation of the same token
            self._reject_inactive(record)

        new_record = self._issue(
            record.user_id,
            successor,
            ip_address if ip_address is not None else record.ip_address,
            device_info if device_info is not None else record.device_info,
        )
        logger.info(f"Rotated refresh token {record.id} -> {new_record.id} for user {record.user_id}")
        return new_record

    def revoke(self, token: str, ip_address: str | None = None) -> bool:
        """Revoke one active token. Unknown or terminal tokens are ignored."""
        record = self.get(token)
        if record is None:
            return False
        now = self.clock()
        if not record.is_active_at(now):
            return False
        revoked = self.store.revoke([record], now, ip_address) == 1
        if revoked:
            logger.info(f"Revoked refresh token {record.id} for user {record.user_id}")
        return revoked

    def revoke_all_for_user(self, user_id: int, ip_address: str | None = None) -> bool:
        """Revoke every active token of a user. False when there was none."""
        now = self.clock()
        self.store.lock_user(user_id)
        active = self.store.list_active_for_user(user_id, now)
        if not active:
            return False
        count = self.store.revoke(active, now, ip_address)
        logger.info(f"Revoked {count} refresh token(s) for user {user_id}")
        return count > 0

    def cleanup_expired(self) -> int:
        """Delete terminal tokens whose terminal transition is past retention."""
        cutoff = self.clock() - timedelta(days=self.settings.refresh_token_retention_days)
        removed = self.store.delete_terminal_before(cutoff)
        logger.info(f"Removed {removed} refresh token(s) terminal before {cutoff.isoformat()}")
        return removed

    def _issue(
        self,
        user_id: int,
        token: str,
        ip_address: str | None,
        device_info: str | None,
    ) -> RefreshToken:
        self.store.lock_user(user_id)
        self._enforce_concurrency_cap(user_id)
        now = self.clock()
        record = RefreshToken(
            user_id=user_id,
            token=token,
            ip_address=ip_address,
            device_info=device_info,
            created_at=now,
            expires_at=now + self.lifetime,
            is_revoked=False,
            is_used=False,
        )
        self.store.add(record)
        logger.debug(f"Issued refresh token {record.id} for user {user_id}")
        return record

    def _enforce_concurrency_cap(self, user_id: int) -> None:
        """Revoke the oldest active tokens so one more fits under the cap."""
        cap = self.settings.max_active_refresh_tokens_per_user
        now = self.clock()
        active = self.store.list_active_for_user(user_id, now)
        if len(active) < cap:
            return
        evicted = active[: len(active) - cap + 1]
        self.store.revoke(evicted, now)
        logger.warning(
            f"User {user_id} reached {cap} active refresh tokens; "
            f"revoked oldest {[record.id for record in evicted]}"
        )

    def _draw_token(self) -> str:
        token = self.generator()
        if self.store.token_exists(token):
            token = self.generator()
            if self.store.token_exists(token):
                raise TokenGenerationError("Could not generate a unique refresh token")
        return token

    def _reject_inactive(self, record: RefreshToken) -> None:
        if record.is_used:
            reason = "used"
        elif record.is_revoked:
            reason = "revoked"
        else:
            reason = "expired"
        if reason == "expired":
            logger.info(f"Expired refresh token {record.id} presented for user {record.user_id}")
        else:
            logger.warning(
                f"Refresh token reuse: token {record.id} of user {record.user_id} "
                f"is already {reason} (successor={record.replaced_by_token is not None})"
            )
        raise TokenNotActiveError(f"Refresh token is {reason}", record)
