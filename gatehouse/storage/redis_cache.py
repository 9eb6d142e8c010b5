from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Awaitable, Iterable, Optional, Set, Tuple, TypeVar, Union

import redis.asyncio as aioredis
from redis import Redis

T = TypeVar("T")


def session_key(token: str) -> str:
    return f"session:{token}"


def user_sessions_key(user_id: int) -> str:
    return f"user_sessions:{user_id}"


class RedisCache:
    """Thin Redis wrapper for session payloads, the per-user index and rate limits.

    Every command is bounded by ``operation_timeout`` on top of the socket
    timeouts so callers can detect an unreachable server quickly and fall back.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Atomic refill + consume token bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, self.operation_timeout)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # sessions
    async def store_session(
        self, token: str, user_id: int, payload: str, ttl_seconds: int
    ) -> None:
        """Write the payload and add the token to the user's index, both with a full TTL."""
        ttl = max(1, int(ttl_seconds))
        pipe = self.client.pipeline()
        pipe.set(session_key(token), payload, ex=ttl)
        pipe.sadd(user_sessions_key(user_id), token)
        pipe.expire(user_sessions_key(user_id), ttl)
        await self._bounded(pipe.execute())

    async def refresh_session(
        self, token: str, user_id: int, payload: str, ttl_seconds: int
    ) -> bool:
        """Rewrite a session that still exists and slide both TTLs forward.

        Returns:
            False when the session key is gone; nothing is written then
        """
        ttl = max(1, int(ttl_seconds))
        # XX: a session deleted after it was read must stay deleted
        refreshed = await self._bounded(
            self.client.set(session_key(token), payload, ex=ttl, xx=True)
        )
        if not refreshed:
            return False
        pipe = self.client.pipeline()
        pipe.sadd(user_sessions_key(user_id), token)
        pipe.expire(user_sessions_key(user_id), ttl)
        await self._bounded(pipe.execute())
        return True

    async def get_session(self, token: str) -> Optional[str]:
        return await self._bounded(self.client.get(session_key(token)))

    async def get_sessions(self, tokens: Iterable[str]) -> dict[str, Optional[str]]:
        tokens = list(tokens)
        if not tokens:
            return {}
        pipe = self.client.pipeline()
        for token in tokens:
            pipe.get(session_key(token))
        values = await self._bounded(pipe.execute())
        return dict(zip(tokens, values))

    async def delete_session(self, token: str, user_id: Optional[int] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(session_key(token))
        if user_id is not None:
            pipe.srem(user_sessions_key(user_id), token)
        await self._bounded(pipe.execute())

    async def list_user_sessions(self, user_id: int) -> Set[str]:
        members = await self._bounded(self.client.smembers(user_sessions_key(user_id)))
        return set(members or ())

    async def remove_from_index(self, user_id: int, tokens: Iterable[str]) -> None:
        tokens = list(tokens)
        if tokens:
            await self._bounded(self.client.srem(user_sessions_key(user_id), *tokens))

    async def delete_user_sessions(self, user_id: int) -> int:
        """Delete every indexed session for a user and then the index itself.

        Returns:
            Number of session tokens found in the index
        """
        index_key = user_sessions_key(user_id)
        tokens = await self._bounded(self.client.smembers(index_key))
        pipe = self.client.pipeline()
        for token in tokens or ():
            pipe.delete(session_key(token))
        pipe.delete(index_key)
        await self._bounded(pipe.execute())
        return len(tokens or ())

    # rate limits
    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so delimiters in client data cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using the Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._bounded(
            self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


__all__ = ["RedisCache", "session_key", "user_sessions_key"]
