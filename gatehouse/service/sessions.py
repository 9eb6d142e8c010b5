from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, NamedTuple, Optional, Protocol, TypeVar

from redis.exceptions import RedisError

from gatehouse.logging import get_logger, token_fingerprint
from gatehouse.service.errors import NotFoundError
from gatehouse.service.tokens import new_opaque_token
from gatehouse.storage.models import (
    MalformedSessionPayload,
    SessionPayload,
    SessionRecord,
    User,
    utcnow,
)
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")


class SessionBackendUnavailable(Exception):
    """A session backend could not be reached; the caller should fall back."""

    def __init__(self, backend: str, operation: str) -> None:
        super().__init__(f"{backend} unavailable during {operation}")
        self.backend = backend
        self.operation = operation


class SessionRef(NamedTuple):
    token: str
    created_at: datetime


class SessionBackend(Protocol):
    name: str

    async def put(self, token: str, payload: SessionPayload, expires_at: datetime) -> None: ...

    async def get(self, token: str, now: datetime) -> Optional[SessionPayload]: ...

    async def touch(self, token: str, payload: SessionPayload) -> None: ...

    async def delete(self, token: str) -> Optional[int]: ...

    async def list_for_user(self, user_id: int, now: datetime) -> List[SessionRef]: ...

    async def delete_all_for_user(self, user_id: int) -> int: ...


class CacheSessionBackend:
    """Sessions as TTL'd JSON payloads in Redis with a per-user token index."""

    name = "cache"

    def __init__(self, cache: RedisCache, *, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise SessionBackendUnavailable(self.name, operation) from exc

    async def _parse(self, token: str, raw: Optional[str]) -> Optional[SessionPayload]:
        if raw is None:
            return None
        try:
            return SessionPayload.from_json(raw)
        except MalformedSessionPayload as exc:
            logger.warning(
                "session_payload_malformed",
                token_prefix=token_fingerprint(token),
                error=str(exc),
            )
            await self._call("delete", self.cache.delete_session(token))
            return None

    async def put(self, token: str, payload: SessionPayload, expires_at: datetime) -> None:
        await self._call(
            "put",
            self.cache.store_session(
                token, payload.user_id, payload.to_json(), self.ttl_seconds
            ),
        )

    async def get(self, token: str, now: datetime) -> Optional[SessionPayload]:
        raw = await self._call("get", self.cache.get_session(token))
        return await self._parse(token, raw)

    async def touch(self, token: str, payload: SessionPayload) -> None:
        refreshed = await self._call(
            "touch",
            self.cache.refresh_session(
                token, payload.user_id, payload.to_json(), self.ttl_seconds
            ),
        )
        if not refreshed:
            logger.info(
                "session_touch_skipped_deleted", token_prefix=token_fingerprint(token)
            )

    async def delete(self, token: str) -> Optional[int]:
        raw = await self._call("get", self.cache.get_session(token))
        payload = await self._parse(token, raw)
        user_id = payload.user_id if payload else None
        await self._call("delete", self.cache.delete_session(token, user_id))
        return user_id

    async def list_for_user(self, user_id: int, now: datetime) -> List[SessionRef]:
        """Live sessions from the user's index; dead or foreign entries are pruned."""
        tokens = await self._call("list", self.cache.list_user_sessions(user_id))
        raw_by_token = await self._call("list", self.cache.get_sessions(tokens))
        live: List[SessionRef] = []
        stale: List[str] = []
        for token in tokens:
            payload = await self._parse(token, raw_by_token.get(token))
            if payload is None or payload.user_id != user_id:
                stale.append(token)
                continue
            live.append(SessionRef(token, payload.created_at))
        if stale:
            await self._call("prune", self.cache.remove_from_index(user_id, stale))
            logger.info("session_index_pruned", user_id=user_id, pruned=len(stale))
        return live

    async def delete_all_for_user(self, user_id: int) -> int:
        return await self._call("delete_all", self.cache.delete_user_sessions(user_id))


class DurableSessionStore(Protocol):
    def create_session(
        self, token: str, user_id: int, *, created_at: datetime, expires_at: datetime
    ) -> SessionRecord: ...

    def get_session_with_user(self, token: str) -> Optional[tuple[SessionRecord, User]]: ...

    def touch_session(self, token: str, last_accessed: datetime) -> None: ...

    def delete_session(self, token: str) -> Optional[int]: ...

    def list_user_sessions(self, user_id: int, now: datetime) -> List[SessionRecord]: ...

    def delete_user_sessions(self, user_id: int) -> int: ...


class DurableSessionBackend:
    """Sessions as rows with an absolute expiry, joined to ``users`` on read."""

    name = "durable"

    def __init__(self, store: DurableSessionStore) -> None:
        self.store = store

    async def put(self, token: str, payload: SessionPayload, expires_at: datetime) -> None:
        await asyncio.to_thread(
            self.store.create_session,
            token,
            payload.user_id,
            created_at=payload.created_at,
            expires_at=expires_at,
        )

    async def get(self, token: str, now: datetime) -> Optional[SessionPayload]:
        found = await asyncio.to_thread(self.store.get_session_with_user, token)
        if not found:
            return None
        record, user = found
        if not record.is_live(now):
            return None
        return SessionPayload(
            user_id=user.id,
            email=user.email,
            name=user.name,
            email_verified=user.email_verified,
            created_at=record.created_at,
            last_accessed=record.last_accessed,
        )

    async def touch(self, token: str, payload: SessionPayload) -> None:
        await asyncio.to_thread(self.store.touch_session, token, payload.last_accessed)

    async def delete(self, token: str) -> Optional[int]:
        return await asyncio.to_thread(self.store.delete_session, token)

    async def list_for_user(self, user_id: int, now: datetime) -> List[SessionRef]:
        records = await asyncio.to_thread(self.store.list_user_sessions, user_id, now)
        return [SessionRef(r.token, r.created_at) for r in records]

    async def delete_all_for_user(self, user_id: int) -> int:
        return await asyncio.to_thread(self.store.delete_user_sessions, user_id)


class UserLookup(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...


class SessionStore:
    """Creates, validates and invalidates sessions across two backends.

    The cache backend is tried first and is optional. Any failure of it is
    logged and the durable backend takes over for that call; durable failures
    propagate except in :meth:`invalidate`, which is best-effort.
    """

    def __init__(
        self,
        users: UserLookup,
        *,
        durable: SessionBackend,
        cache: Optional[SessionBackend] = None,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        max_sessions: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.cache = cache
        self.durable = durable
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock

    def _cache_failed(self, exc: SessionBackendUnavailable, **context) -> None:
        logger.warning(
            "session_cache_unavailable",
            operation=exc.operation,
            error=str(exc.__cause__ or exc),
            **context,
        )

    async def create(self, user_id: int) -> str:
        await self.enforce_limit(user_id)
        user = await asyncio.to_thread(self.users.get_user, user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})

        now = self._clock()
        token = new_opaque_token()
        payload = SessionPayload.from_user(user, now)
        expires_at = now + timedelta(seconds=self.ttl_seconds)

        if self.cache is not None:
            try:
                await self.cache.put(token, payload, expires_at)
                logger.info("session_created", user_id=user_id, backend=self.cache.name)
                return token
            except SessionBackendUnavailable as exc:
                self._cache_failed(exc, user_id=user_id)

        await self.durable.put(token, payload, expires_at)
        logger.info("session_created", user_id=user_id, backend=self.durable.name)
        return token

    async def validate(self, token: Optional[str]) -> Optional[SessionPayload]:
        """Return the session payload with a refreshed lastAccessed, or None."""
        if not token:
            return None
        now = self._clock()

        if self.cache is not None:
            try:
                payload = await self.cache.get(token, now)
            except SessionBackendUnavailable as exc:
                self._cache_failed(exc, token_prefix=token_fingerprint(token))
                payload = None
            if payload is not None:
                payload = payload.touched(now)
                try:
                    await self.cache.touch(token, payload)
                except SessionBackendUnavailable as exc:
                    self._cache_failed(exc, token_prefix=token_fingerprint(token))
                return payload

        payload = await self.durable.get(token, now)
        if payload is None:
            return None
        payload = payload.touched(now)
        await self.durable.touch(token, payload)
        return payload

    async def invalidate(self, token: Optional[str]) -> None:
        """Delete a session wherever it lives. Missing sessions are not an error."""
        if not token:
            return
        if self.cache is not None:
            try:
                await self.cache.delete(token)
            except SessionBackendUnavailable as exc:
                self._cache_failed(exc, token_prefix=token_fingerprint(token))
        try:
            await self.durable.delete(token)
        except Exception as exc:
            logger.warning(
                "session_durable_invalidate_failed",
                token_prefix=token_fingerprint(token),
                error=str(exc),
            )

    async def invalidate_all(self, user_id: int) -> None:
        """Delete every session of a user from both backends."""
        cached = 0
        if self.cache is not None:
            try:
                cached = await self.cache.delete_all_for_user(user_id)
            except SessionBackendUnavailable as exc:
                logger.error(
                    "session_cache_bulk_invalidate_failed",
                    user_id=user_id,
                    error=str(exc.__cause__ or exc),
                )
        durable = await self.durable.delete_all_for_user(user_id)
        logger.info(
            "sessions_invalidated", user_id=user_id, cached=cached, durable=durable
        )

    async def enforce_limit(self, user_id: int, max_sessions: Optional[int] = None) -> int:
        """Evict the oldest sessions so one more fits under the limit.

        Returns:
            Number of sessions evicted
        """
        limit = self.max_sessions if max_sessions is None else max_sessions
        now = self._clock()
        live: dict[str, SessionRef] = {}
        if self.cache is not None:
            try:
                for ref in await self.cache.list_for_user(user_id, now):
                    live[ref.token] = ref
            except SessionBackendUnavailable as exc:
                self._cache_failed(exc, user_id=user_id)
        for ref in await self.durable.list_for_user(user_id, now):
            live.setdefault(ref.token, ref)

        ordered = sorted(live.values(), key=lambda ref: ref.created_at)
        evicted = 0
        while evicted < len(ordered) and len(ordered) - evicted >= limit:
            await self.invalidate(ordered[evicted].token)
            evicted += 1
        if evicted:
            logger.info(
                "session_limit_enforced", user_id=user_id, evicted=evicted, limit=limit
            )
        return evicted


__all__ = [
    "CacheSessionBackend",
    "DurableSessionBackend",
    "SessionBackend",
    "SessionBackendUnavailable",
    "SessionRef",
    "SessionStore",
]
