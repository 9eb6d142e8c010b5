from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from gatehouse.logging import get_logger, token_fingerprint
from gatehouse.service.errors import AuthenticationError
from gatehouse.service.sessions import SessionStore
from gatehouse.storage.models import ensure_utc, utcnow

logger = get_logger(__name__)


class SessionRotationPolicy:
    """Replaces long-lived session tokens to bound how long a leaked one is useful."""

    def __init__(
        self,
        sessions: SessionStore,
        *,
        interval: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.interval = interval
        self._clock = clock

    def should_rotate(self, created_at: Optional[Union[datetime, str]]) -> bool:
        """True once the session is older than the interval, or its age is unknown."""
        if created_at is None:
            return True
        if isinstance(created_at, str):
            try:
                created_at = datetime.fromisoformat(created_at)
            except ValueError:
                return True
        if not isinstance(created_at, datetime):
            return True
        return self._clock() - ensure_utc(created_at) > self.interval

    async def rotate(self, old_token: str, user_id: int) -> str:
        """Return a replacement token, or ``old_token`` itself when rotation is not due.

        Raises:
            AuthenticationError: the old token is not a live session of ``user_id``
        """
        payload = await self.sessions.validate(old_token)
        if payload is None:
            raise AuthenticationError("invalid or expired session")
        if payload.user_id != user_id:
            logger.warning(
                "session_rotation_user_mismatch",
                token_prefix=token_fingerprint(old_token),
                expected_user_id=user_id,
                session_user_id=payload.user_id,
            )
            raise AuthenticationError("session does not belong to this user")
        if not self.should_rotate(payload.created_at):
            return old_token

        new_token = await self.sessions.create(user_id)
        try:
            await self.sessions.invalidate(old_token)
        except Exception as exc:
            # the old token still expires on its own TTL
            logger.warning(
                "session_rotation_invalidate_failed",
                user_id=user_id,
                token_prefix=token_fingerprint(old_token),
                error=str(exc),
            )
        logger.info("session_rotated", user_id=user_id)
        return new_token


__all__ = ["SessionRotationPolicy"]
