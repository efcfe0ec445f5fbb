"""Tests for log processors and the request correlation id."""

import contextvars

from blogauth.logging import (
    _add_correlation_id,
    _mask_sensitive,
    get_correlation_id,
    set_correlation_id,
)


def test_sensitive_values_are_masked():
    event = {
        "event": "login_failed",
        "email": "alice@example.com",
        "refresh_token": "abcdef.ghijkl.mnopqr",
        "account_id": 7,
        "reason": "bad_password",
    }
    out = _mask_sensitive(None, "info", event)
    assert out["email"] == "al***om"
    assert out["refresh_token"] == "ab***qr"
    assert out["account_id"] == 7
    assert out["reason"] == "bad_password"
    assert out["event"] == "login_failed"


def test_short_and_non_string_values_left_alone():
    out = _mask_sensitive(None, "info", {"event": "x", "email_sent": True, "token": "abc"})
    assert out == {"event": "x", "email_sent": True, "token": "abc"}


def test_correlation_id_adopted_and_attached():
    def run():
        assert set_correlation_id("req-123") == "req-123"
        assert get_correlation_id() == "req-123"
        return _add_correlation_id(None, "info", {"event": "x"})

    out = contextvars.copy_context().run(run)
    assert out["correlation_id"] == "req-123"


def test_correlation_id_minted_when_missing():
    def run():
        return set_correlation_id(None), get_correlation_id()

    minted, current = contextvars.copy_context().run(run)
    assert minted and minted == current
