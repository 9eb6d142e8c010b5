"""Tests for the dual-backend session store.

Cache behaviour runs against the in-test FakeRedis and against AsyncMock
clients that raise redis ConnectionError, so no Redis server is needed.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatehouse.service.errors import NotFoundError
from gatehouse.service.sessions import (
    CacheSessionBackend,
    DurableSessionBackend,
    SessionStore,
)
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.redis_cache import RedisCache, session_key, user_sessions_key

TTL = 7 * 24 * 60 * 60


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("Ann Lee", "ann@example.com", "hash")


def make_sessions(store, clock, client=None, *, max_sessions=5):
    cache = None
    if client is not None:
        cache = CacheSessionBackend(
            RedisCache("redis://fake:6379/0", client=client), ttl_seconds=TTL
        )
    return SessionStore(
        store,
        durable=DurableSessionBackend(store),
        cache=cache,
        ttl_seconds=TTL,
        max_sessions=max_sessions,
        clock=clock,
    )


def failing_client():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(
        side_effect=RedisConnectionError("down")
    )
    pipe = MagicMock()
    pipe.execute = AsyncMock(side_effect=RedisConnectionError("down"))
    client.pipeline.return_value = pipe
    client.get = AsyncMock(side_effect=RedisConnectionError("down"))
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    client.smembers = AsyncMock(side_effect=RedisConnectionError("down"))
    client.srem = AsyncMock(side_effect=RedisConnectionError("down"))
    return client


class TestCacheBackend:
    async def test_create_writes_payload_and_index(self, store, user, clock, fake_redis):
        sessions = make_sessions(store, clock, fake_redis)

        token = await sessions.create(user.id)

        raw = json.loads(fake_redis.values[session_key(token)])
        assert raw["userId"] == user.id
        assert raw["email"] == "ann@example.com"
        assert raw["createdAt"] == clock.now.isoformat()
        assert token in fake_redis.sets[user_sessions_key(user.id)]
        assert fake_redis.ttls[session_key(token)] == TTL
        assert fake_redis.ttls[user_sessions_key(user.id)] == TTL
        assert store.sessions == {}

    async def test_validate_returns_payload_and_advances_last_accessed(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        token = await sessions.create(user.id)

        clock.advance(minutes=1)
        first = await sessions.validate(token)
        clock.advance(minutes=1)
        second = await sessions.validate(token)

        assert first.user_id == user.id
        assert first.last_accessed < second.last_accessed
        stored = json.loads(fake_redis.values[session_key(token)])
        assert stored["lastAccessed"] == second.last_accessed.isoformat()

    async def test_malformed_payload_is_deleted_and_treated_as_absent(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        fake_redis.values[session_key("broken")] = "{not json"

        assert await sessions.validate("broken") is None
        assert session_key("broken") not in fake_redis.values

    async def test_invalidate_removes_payload_and_index_entry(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        token = await sessions.create(user.id)

        await sessions.invalidate(token)

        assert await sessions.validate(token) is None
        assert token not in fake_redis.sets.get(user_sessions_key(user.id), set())

    async def test_invalidate_all_clears_both_backends(self, store, user, clock, fake_redis):
        sessions = make_sessions(store, clock, fake_redis)
        cached = await sessions.create(user.id)
        now = clock()
        store.create_session(
            "durable-token", user.id, created_at=now, expires_at=now + timedelta(days=1)
        )

        await sessions.invalidate_all(user.id)

        assert await sessions.validate(cached) is None
        assert await sessions.validate("durable-token") is None
        assert user_sessions_key(user.id) not in fake_redis.sets

    async def test_stale_index_entries_are_pruned(self, store, user, clock, fake_redis):
        sessions = make_sessions(store, clock, fake_redis)
        token = await sessions.create(user.id)
        fake_redis.sets[user_sessions_key(user.id)].add("gone")

        refs = await sessions.cache.list_for_user(user.id, clock())

        assert [ref.token for ref in refs] == [token]
        assert fake_redis.sets[user_sessions_key(user.id)] == {token}


class TestFallback:
    async def test_create_falls_back_to_durable_when_cache_down(self, store, user, clock):
        sessions = make_sessions(store, clock, failing_client())

        token = await sessions.create(user.id)

        assert token in store.sessions
        payload = await sessions.validate(token)
        assert payload.user_id == user.id

    async def test_validate_reads_durable_when_cache_misses(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        now = clock()
        store.create_session(
            "durable-token", user.id, created_at=now, expires_at=now + timedelta(days=1)
        )
        clock.advance(minutes=3)

        payload = await sessions.validate("durable-token")

        assert payload.user_id == user.id
        record, _ = store.get_session_with_user("durable-token")
        assert record.last_accessed == clock.now

    async def test_durable_session_past_expiry_is_absent(self, store, user, clock):
        sessions = make_sessions(store, clock)
        token = await sessions.create(user.id)

        clock.advance(seconds=TTL + 1)

        assert await sessions.validate(token) is None

    async def test_invalidate_all_still_hits_durable_when_cache_down(
        self, store, user, clock
    ):
        sessions = make_sessions(store, clock, failing_client())
        token = await sessions.create(user.id)

        await sessions.invalidate_all(user.id)

        assert token not in store.sessions

    async def test_durable_failure_in_invalidate_all_propagates(self, store, user, clock):
        durable = MagicMock()
        durable.name = "durable"
        durable.delete_all_for_user = AsyncMock(side_effect=RuntimeError("db down"))
        sessions = SessionStore(store, durable=durable, clock=clock)

        with pytest.raises(RuntimeError):
            await sessions.invalidate_all(user.id)

    async def test_durable_failure_in_invalidate_is_swallowed(self, store, user, clock):
        durable = MagicMock()
        durable.name = "durable"
        durable.delete = AsyncMock(side_effect=RuntimeError("db down"))
        sessions = SessionStore(store, durable=durable, clock=clock)

        await sessions.invalidate("some-token")

        durable.delete.assert_awaited_once_with("some-token")


class TestLifecycle:
    async def test_create_for_unknown_user_raises(self, store, clock):
        sessions = make_sessions(store, clock)
        with pytest.raises(NotFoundError):
            await sessions.create(404)

    async def test_validate_after_invalidate_is_none(self, store, user, clock):
        sessions = make_sessions(store, clock)
        token = await sessions.create(user.id)

        await sessions.invalidate(token)
        await sessions.invalidate(token)

        assert await sessions.validate(token) is None

    @pytest.mark.parametrize("token", [None, "", "unknown"])
    async def test_validate_unknown_tokens(self, store, clock, token):
        sessions = make_sessions(store, clock)
        assert await sessions.validate(token) is None

    async def test_last_accessed_never_moves_backwards(self, store, user, clock):
        sessions = make_sessions(store, clock)
        token = await sessions.create(user.id)
        clock.advance(minutes=10)
        later = await sessions.validate(token)

        clock.advance(minutes=-5)
        earlier = await sessions.validate(token)

        assert earlier.last_accessed == later.last_accessed


class TestSessionLimit:
    async def test_sixth_session_evicts_the_oldest(self, store, user, clock):
        sessions = make_sessions(store, clock, max_sessions=5)
        tokens = []
        for _ in range(6):
            tokens.append(await sessions.create(user.id))
            clock.advance(seconds=1)

        live = [t for t in tokens if await sessions.validate(t) is not None]

        assert len(live) == 5
        assert tokens[0] not in live

    async def test_limit_counts_across_backends(self, store, user, clock, fake_redis):
        sessions = make_sessions(store, clock, fake_redis, max_sessions=3)
        now = clock()
        store.create_session(
            "durable-old", user.id, created_at=now, expires_at=now + timedelta(days=1)
        )
        clock.advance(seconds=1)
        cached = []
        for _ in range(3):
            cached.append(await sessions.create(user.id))
            clock.advance(seconds=1)

        assert await sessions.validate("durable-old") is None
        live = [t for t in cached if await sessions.validate(t) is not None]
        assert len(live) == 3

    async def test_enforce_limit_returns_evicted_count(self, store, user, clock):
        sessions = make_sessions(store, clock)
        for _ in range(4):
            await sessions.create(user.id)
            clock.advance(seconds=1)

        assert await sessions.enforce_limit(user.id, max_sessions=2) == 3
        assert len(store.list_user_sessions(user.id, clock())) == 1

    async def test_explicit_zero_limit_evicts_every_session(self, store, user, clock):
        sessions = make_sessions(store, clock, max_sessions=5)
        for _ in range(2):
            await sessions.create(user.id)
            clock.advance(seconds=1)

        assert await sessions.enforce_limit(user.id, max_sessions=0) == 2
        assert store.list_user_sessions(user.id, clock()) == []


def invalidate_after_first_read(fake_redis, action):
    """Run ``action`` between a validate's cache read and its touch."""
    original_get = fake_redis.get
    fired = []

    async def get(key):
        value = await original_get(key)
        if not fired:
            fired.append(key)
            await action()
        return value

    fake_redis.get = get
    return fired


class TestInvalidationDuringValidate:
    async def test_invalidate_all_is_not_undone_by_inflight_touch(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        token = await sessions.create(user.id)
        clock.advance(minutes=5)
        fired = invalidate_after_first_read(
            fake_redis, lambda: sessions.invalidate_all(user.id)
        )

        await sessions.validate(token)

        assert fired == [session_key(token)]
        assert session_key(token) not in fake_redis.values
        assert token not in fake_redis.sets.get(user_sessions_key(user.id), set())
        assert await sessions.validate(token) is None

    async def test_logout_is_not_undone_by_inflight_touch(
        self, store, user, clock, fake_redis
    ):
        sessions = make_sessions(store, clock, fake_redis)
        token = await sessions.create(user.id)
        invalidate_after_first_read(fake_redis, lambda: sessions.invalidate(token))

        await sessions.validate(token)

        assert session_key(token) not in fake_redis.values
        assert await sessions.validate(token) is None

    async def test_refresh_of_missing_session_writes_nothing(self, fake_redis):
        cache = RedisCache("redis://fake:6379/0", client=fake_redis)

        assert await cache.refresh_session("gone", 7, "{}", TTL) is False
        assert fake_redis.values == {}
        assert user_sessions_key(7) not in fake_redis.sets
