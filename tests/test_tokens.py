"""Tests for opaque token issuing and expiry checks."""

import re
from datetime import timedelta

from gatehouse.service.tokens import TokenService, is_expired, new_opaque_token
from gatehouse.storage.memory import MemoryStore


def test_opaque_tokens_are_64_hex_and_unique():
    tokens = {new_opaque_token() for _ in range(200)}
    assert len(tokens) == 200
    assert all(re.fullmatch(r"[0-9a-f]{64}", token) for token in tokens)


def test_is_expired_boundaries(clock):
    now = clock()
    assert is_expired(None, now) is True
    assert is_expired(now, now) is True
    assert is_expired(now - timedelta(seconds=1), now) is True
    assert is_expired(now + timedelta(seconds=1), now) is False


def test_is_expired_accepts_naive_datetimes(clock):
    now = clock()
    naive_future = (now + timedelta(minutes=5)).replace(tzinfo=None)
    assert is_expired(naive_future, now) is False


def test_verification_token_expires_after_24_hours(clock):
    store = MemoryStore()
    user = store.create_user("Ann Lee", "ann@example.com", "hash")
    tokens = TokenService(store, clock=clock)

    token = tokens.issue_email_verification_token(user.id)

    stored = store.get_user_by_verification_token(token)
    assert stored.id == user.id
    assert stored.email_verification_expires == clock.now + timedelta(hours=24)


def test_reissuing_replaces_the_previous_token(clock):
    store = MemoryStore()
    user = store.create_user("Ann Lee", "ann@example.com", "hash")
    tokens = TokenService(store, clock=clock)

    first = tokens.issue_email_verification_token(user.id)
    second = tokens.issue_email_verification_token(user.id)

    assert first != second
    assert store.get_user_by_verification_token(first) is None
    assert store.get_user_by_verification_token(second).id == user.id


def test_reset_token_for_unknown_email_is_none(clock):
    store = MemoryStore()
    tokens = TokenService(store, clock=clock)
    assert tokens.issue_password_reset_token("nobody@example.com") is None


def test_reset_token_expires_after_one_hour(clock):
    store = MemoryStore()
    user = store.create_user("Ann Lee", "ann@example.com", "hash")
    tokens = TokenService(store, clock=clock)

    token = tokens.issue_password_reset_token("ANN@example.com")

    stored = store.get_user_by_reset_token(token)
    assert stored.id == user.id
    assert stored.password_reset_expires == clock.now + timedelta(hours=1)
