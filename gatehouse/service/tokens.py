from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.storage.models import User, ensure_utc, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32


def new_opaque_token() -> str:
    """64 hex characters from the OS CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """A token without an expiry, or at/after it, is treated as expired."""
    return expires_at is None or ensure_utc(expires_at) <= now


class TokenStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_email_verification_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None: ...

    def set_password_reset_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> None: ...


class TokenService:
    """Issues email verification and password reset tokens.

    Issuing overwrites any earlier unconsumed token of the same kind, so only
    the newest one is ever accepted.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    def issue_email_verification_token(self, user_id: int) -> str:
        token = new_opaque_token()
        expires_at = self._clock() + self.verification_ttl
        self.store.set_email_verification_token(user_id, token, expires_at)
        logger.info("verification_token_issued", user_id=user_id)
        return token

    def issue_password_reset_token(self, email: str) -> Optional[str]:
        """Return a fresh reset token, or None when no account has this email."""
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        token = new_opaque_token()
        expires_at = self._clock() + self.reset_ttl
        self.store.set_password_reset_token(user.id, token, expires_at)
        logger.info("password_reset_token_issued", user_id=user.id)
        return token


__all__ = ["TokenService", "new_opaque_token", "is_expired"]
