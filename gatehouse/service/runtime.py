from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.email import EmailService
from gatehouse.service.passwords import PasswordService
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.rotation import SessionRotationPolicy
from gatehouse.service.sessions import (
    CacheSessionBackend,
    DurableSessionBackend,
    SessionStore,
)
from gatehouse.service.tokens import TokenService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = settings = get_settings()
        store_type = "memory" if settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if settings.redis_url:
            try:
                cache = RedisCache(
                    settings.redis_url, socket_timeout=settings.cache_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not settings.test_mode and not settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is unreachable; start Redis, unset REDIS_URL to run on "
                        "database sessions only, or set ALLOW_REDIS_FALLBACK_DEV=true."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                )

        self.passwords = PasswordService(
            min_length=settings.password_min_length,
            min_score=settings.password_min_score,
        )
        self.tokens = TokenService(
            self.store,
            verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )
        self.sessions = SessionStore(
            self.store,
            durable=DurableSessionBackend(self.store),
            cache=(
                CacheSessionBackend(self.cache, ttl_seconds=settings.session_ttl_seconds)
                if self.cache is not None
                else None
            ),
            ttl_seconds=settings.session_ttl_seconds,
            max_sessions=settings.max_sessions_per_user,
        )
        self.rotation = SessionRotationPolicy(
            self.sessions,
            interval=timedelta(minutes=settings.session_rotation_minutes),
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            passwords=self.passwords,
            tokens=self.tokens,
            sessions=self.sessions,
            email=self.email,
        )
        self.rate_limiter = RateLimiter(self.cache, enabled=settings.rate_limits_enabled)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            max_sessions_per_user=settings.max_sessions_per_user,
        )

    async def close(self) -> None:
        await self.auth.drain_deliveries()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked under a lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
