from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from redis.exceptions import RedisError

from gatehouse.logging import get_logger
from gatehouse.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Token-bucket limiter shared through Redis, with a per-instance local bucket.

    The local bucket is used when no cache is configured or when a cache call
    fails. Its state lives on this object, so a fresh limiter starts empty.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.enabled = enabled
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    async def check(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> RateLimitDecision:
        if not self.enabled or limit <= 0:
            return RateLimitDecision(True, max(limit, 0), 0)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60

        if self.cache is not None:
            try:
                allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                    key, limit, window_seconds, return_remaining=True, cost=cost
                )
                return RateLimitDecision(allowed, remaining, reset_seconds)
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("rate_limit_cache_unavailable", key=key, error=str(exc))

        return self._check_local(key, limit, window_seconds, cost)

    def _check_local(
        self, key: str, limit: int, window_seconds: int, cost: int
    ) -> RateLimitDecision:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
        reset_seconds = 0 if allowed else max(1, int((cost - tokens) / refill_rate) + 1)
        return RateLimitDecision(allowed, int(tokens), reset_seconds)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


__all__ = ["RateLimiter", "RateLimitDecision"]
