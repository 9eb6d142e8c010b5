from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Path, Request, Response

from gatehouse.api.schemas import (
    MAX_TOKEN_LENGTH,
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    RotationResponse,
    UserOut,
    UserResponse,
)
from gatehouse.logging import get_logger, token_fingerprint
from gatehouse.service.errors import AuthenticationError, RateLimitedError
from gatehouse.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")

LOGIN_SUCCEEDED_MESSAGE = "Login successful"


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, request: Request, route: str, limit: int, window_seconds: int
) -> None:
    """Raise RateLimitedError when the caller's address has used up its budget."""
    address = _client_address(request)
    decision = await runtime.rate_limiter.check(f"{route}:{address}", limit, window_seconds)
    if not decision.allowed:
        logger.warning("rate_limit_exceeded", route=route, client=address)
        raise RateLimitedError(retry_after=max(1, decision.reset_seconds))


def _session_token(runtime: Runtime, request: Request) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name) or None


def _set_session_cookie(runtime: Runtime, response: Response, token: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=settings.session_cookie_max_age,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_session_cookie(runtime: Runtime, response: Response) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="strict",
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and send the email verification link.

    No session is created; the user logs in separately.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "register",
        settings.register_rate_limit,
        settings.register_rate_window_seconds,
    )
    message = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "login",
        settings.login_rate_limit,
        settings.login_rate_window_seconds,
    )
    result = await runtime.auth.login(body.email, body.password)
    _set_session_cookie(runtime, response, result.session_token)
    return Envelope(
        status="ok",
        data=LoginResponse(
            message=LOGIN_SUCCEEDED_MESSAGE, user=UserOut(**result.user)
        ),
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """End the current session. Succeeds with or without a cookie."""
    runtime = get_runtime()
    message = await runtime.auth.logout(_session_token(runtime, request))
    _clear_session_cookie(runtime, response)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, response: Response):
    """Return the session's user snapshot, rotating the session token when due."""
    runtime = get_runtime()
    token = _session_token(runtime, request)
    payload = await runtime.auth.get_current_user(token)

    if runtime.rotation.should_rotate(payload.created_at):
        try:
            new_token = await runtime.rotation.rotate(token, payload.user_id)
        except Exception as exc:
            logger.warning(
                "session_rotation_failed",
                user_id=payload.user_id,
                token_prefix=token_fingerprint(token),
                error=str(exc),
            )
        else:
            if new_token != token:
                _set_session_cookie(runtime, response, new_token)

    return Envelope(
        status="ok", data=UserResponse(user=UserOut(**payload.public_fields()))
    )


@router.get("/verify/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., min_length=1, max_length=MAX_TOKEN_LENGTH)):
    runtime = get_runtime()
    message = await runtime.auth.verify_email(token)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: EmailRequest, request: Request, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "forgot_password",
        settings.forgot_password_rate_limit,
        settings.forgot_password_rate_window_seconds,
    )
    message = await runtime.auth.forgot_password(
        body.email, defer=background_tasks.add_task
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    """Set a new password from a reset token and end every session of the user."""
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        request,
        "reset_password",
        settings.reset_password_rate_limit,
        settings.reset_password_rate_window_seconds,
    )
    message = await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailRequest, request: Request, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    settings = runtime.settings
    # same limits as forgot-password
    await _enforce_rate_limit(
        runtime,
        request,
        "resend_verification",
        settings.forgot_password_rate_limit,
        settings.forgot_password_rate_window_seconds,
    )
    message = await runtime.auth.resend_verification(
        body.email, defer=background_tasks.add_task
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/session/rotate", response_model=Envelope, tags=["auth"])
async def rotate_session(request: Request, response: Response):
    """Apply the rotation policy to the current session cookie."""
    runtime = get_runtime()
    token = _session_token(runtime, request)
    if not token:
        raise AuthenticationError("Not authenticated")
    payload = await runtime.auth.get_current_user(token)
    new_token = await runtime.rotation.rotate(token, payload.user_id)
    rotated = new_token != token
    if rotated:
        _set_session_cookie(runtime, response, new_token)
    return Envelope(status="ok", data=RotationResponse(rotated=rotated))
