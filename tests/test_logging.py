"""Tests for log redaction and correlation ids."""

import contextvars

from gatehouse.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
    token_fingerprint,
)


def test_pii_keys_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "annabelle@example.com",
            "session_token": "a" * 64,
            "user_id": 7,
        },
    )
    assert event["email"] == "an***om"
    assert event["session_token"] == "aa***aa"
    assert event["user_id"] == 7
    assert event["event"] == "login_failed"


def test_token_fingerprint_is_a_short_prefix():
    assert token_fingerprint("0123456789abcdef") == "01234567"
    assert token_fingerprint(None) is None


def test_token_prefix_survives_redaction():
    token = "0123456789abcdef" * 4
    event = _redact_pii(
        None,
        "info",
        {"event": "logout", "token_prefix": token_fingerprint(token), "token": token},
    )
    assert event["token_prefix"] == "01234567"
    assert event["token"] == "01***ef"


def test_correlation_id_is_added_to_events():
    def run():
        cid = set_correlation_id("req-42")
        assert get_correlation_id() == cid == "req-42"
        return _add_correlation_id(None, "info", {"event": "x"})

    event = contextvars.copy_context().run(run)
    assert event["correlation_id"] == "req-42"


def test_generated_correlation_id():
    cid = contextvars.copy_context().run(set_correlation_id)
    assert len(cid) == 36


def test_sanitize_error_message_strips_queries_and_credentials():
    cleaned = sanitize_error_message("password=hunter2 failed at /var/lib/app/db.sqlite")
    assert "hunter2" not in cleaned
    assert "/var/lib" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 1000)) == 500
