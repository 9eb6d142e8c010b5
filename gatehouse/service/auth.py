from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol, Set

from gatehouse.logging import get_logger, token_fingerprint
from gatehouse.service.email import EmailService
from gatehouse.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidTokenError,
    WeakPasswordError,
)
from gatehouse.service.passwords import PasswordService
from gatehouse.service.sessions import SessionStore
from gatehouse.service.tokens import TokenService, is_expired
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import SessionPayload, User, utcnow

logger = get_logger(__name__)

REGISTERED_MESSAGE = (
    "User registered successfully. Please check your email to verify your account."
)
LOGGED_OUT_MESSAGE = "Logout successful"
EMAIL_VERIFIED_MESSAGE = "Email verified successfully"
RESET_REQUESTED_MESSAGE = (
    "If an account with this email exists, a password reset link has been sent"
)
PASSWORD_RESET_MESSAGE = "Password reset successfully"
VERIFICATION_RESENT_MESSAGE = (
    "If an unverified account with this email exists, a new verification link has been sent"
)
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_VERIFICATION_TOKEN_MESSAGE = "Invalid or expired verification token"
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"


class AuthStore(Protocol):
    def create_user(self, name: str, email: str, password_hash: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int) -> Optional[User]: ...

    def update_password(self, user_id: int, password_hash: str) -> None: ...


@dataclass
class LoginResult:
    session_token: str
    user: Dict[str, Any]


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Registration, login, email verification and password reset.

    The only component that talks to the credential store, the password and
    token services and the session store. Password hashing and SMTP delivery
    run in worker threads so they never block the event loop.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        passwords: PasswordService,
        tokens: TokenService,
        sessions: SessionStore,
        email: EmailService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.email = email
        self._clock = clock
        self._deliveries: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    def _require_strong(self, password: str, *user_inputs: str) -> None:
        strength = self.passwords.score_strength(password, user_inputs)
        if not strength.is_valid:
            raise WeakPasswordError(strength.score, strength.feedback)

    async def _send_verification(self, user: User, token: str) -> None:
        sent = await asyncio.to_thread(
            self.email.send_email_verification, user.email, token, user.name
        )
        if not sent:
            logger.warning("verification_email_not_sent", user_id=user.id)

    def _deliver(self, send: Callable[..., bool], *args: Any, event: str) -> None:
        try:
            sent = send(*args)
        except Exception as exc:
            logger.error(event, error=str(exc))
            return
        if not sent:
            logger.warning(event)

    def _deliver_later(
        self,
        defer: Optional[Callable[..., Any]],
        send: Callable[..., bool],
        *args: Any,
        event: str,
    ) -> None:
        """Send mail after the reply so known and unknown addresses answer alike.

        ``defer`` is a scheduler such as ``BackgroundTasks.add_task``; without
        one the send runs in a tracked worker-thread task.
        """
        if defer is not None:
            defer(self._deliver, send, *args, event=event)
            return
        task = asyncio.create_task(
            asyncio.to_thread(self._deliver, send, *args, event=event)
        )
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def drain_deliveries(self) -> None:
        """Wait for mail handed to worker-thread tasks."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def register(self, name: str, email: str, password: str) -> str:
        email = normalize_email(email)
        name = (name or "").strip()
        self._require_strong(password, name, email)

        if await asyncio.to_thread(self.store.get_user_by_email, email):
            raise ConflictError("User with this email already exists", detail={"field": "email"})

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            user = await asyncio.to_thread(self.store.create_user, name, email, password_hash)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration of the same address
            raise ConflictError("User with this email already exists", detail=exc.detail)

        token = await asyncio.to_thread(self.tokens.issue_email_verification_token, user.id)
        await self._send_verification(user, token)
        logger.info("user_registered", user_id=user.id)
        return REGISTERED_MESSAGE

    async def login(self, email: str, password: str) -> LoginResult:
        user = await asyncio.to_thread(self.store.get_user_by_email, normalize_email(email))
        if user is None:
            # spend the same hashing time as a real mismatch
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            logger.info("login_failed", reason="credentials")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if not await asyncio.to_thread(self.passwords.verify, password, user.password_hash):
            logger.info("login_failed", reason="credentials")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        session_token = await self.sessions.create(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(session_token=session_token, user=user.public_fields())

    async def logout(self, session_token: Optional[str]) -> str:
        await self.sessions.invalidate(session_token)
        if session_token:
            logger.info("logout", token_prefix=token_fingerprint(session_token))
        return LOGGED_OUT_MESSAGE

    async def get_current_user(self, session_token: Optional[str]) -> SessionPayload:
        """Resolve a session to its stored user snapshot.

        The snapshot is returned as captured at login; it is not re-read from
        the credential store.
        """
        if not session_token:
            raise AuthenticationError("Not authenticated")
        payload = await self.sessions.validate(session_token)
        if payload is None:
            raise AuthenticationError("Invalid or expired session")
        return payload

    async def verify_email(self, token: str) -> str:
        user = None
        if token:
            user = await asyncio.to_thread(self.store.get_user_by_verification_token, token)
        if user is None or is_expired(user.email_verification_expires, self._now()):
            raise InvalidTokenError(INVALID_VERIFICATION_TOKEN_MESSAGE)
        await asyncio.to_thread(self.store.mark_email_verified, user.id)
        logger.info("email_verified", user_id=user.id)
        return EMAIL_VERIFIED_MESSAGE

    async def resend_verification(
        self, email: str, *, defer: Optional[Callable[..., Any]] = None
    ) -> str:
        user = await asyncio.to_thread(self.store.get_user_by_email, normalize_email(email))
        if user is not None and not user.email_verified:
            token = await asyncio.to_thread(self.tokens.issue_email_verification_token, user.id)
            self._deliver_later(
                defer,
                self.email.send_email_verification,
                user.email,
                token,
                user.name,
                event="verification_email_not_sent",
            )
        return VERIFICATION_RESENT_MESSAGE

    async def forgot_password(
        self, email: str, *, defer: Optional[Callable[..., Any]] = None
    ) -> str:
        """Start a reset. The reply is the same whether or not the account exists."""
        email = normalize_email(email)
        token = await asyncio.to_thread(self.tokens.issue_password_reset_token, email)
        if token:
            self._deliver_later(
                defer,
                self.email.send_password_reset,
                email,
                token,
                event="password_reset_email_not_sent",
            )
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> str:
        self._require_strong(new_password)
        user = None
        if token:
            user = await asyncio.to_thread(self.store.get_user_by_reset_token, token)
        if user is None or is_expired(user.password_reset_expires, self._now()):
            raise InvalidTokenError(INVALID_RESET_TOKEN_MESSAGE)

        password_hash = await asyncio.to_thread(self.passwords.hash, new_password)
        await asyncio.to_thread(self.store.update_password, user.id, password_hash)
        await self.sessions.invalidate_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return PASSWORD_RESET_MESSAGE


__all__ = ["AuthService", "AuthStore", "LoginResult", "normalize_email"]
