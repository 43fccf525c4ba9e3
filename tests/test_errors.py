from __future__ import annotations

import pytest

from inboxguard.services.errors import (
    GENERIC_ERROR_MESSAGE,
    ChannelError,
    ErrorCode,
    ItemNotFoundError,
    SettingsError,
    UnknownChannelError,
    sanitize_error_message,
    to_http_exception,
    user_message,
)


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "",
        "   ",
        'Traceback (most recent call last):\n  File "app.py", line 3',
        "TypeError: cannot read property 'id' of undefined",
        "failed (request id 3f2a9c1e-0b7d-4c55-9a61-2f1b0c9d8e7a)",
        "upstream error at Object.handler (/srv/app/route.js:12:7)",
        '{"error": "internal"}',
        "x" * 500,
    ],
)
def test_diagnostic_text_is_replaced_with_generic_message(raw):
    assert sanitize_error_message(raw) == GENERIC_ERROR_MESSAGE


def test_plain_messages_are_kept():
    assert sanitize_error_message("  Gmail is not connected  ") == "Gmail is not connected"


def test_user_message_prefers_error_detail():
    exc = ChannelError("email", "Inbox is rate limited", status_code=429)
    assert user_message(exc) == "Inbox is rate limited"
    assert user_message(RuntimeError("KeyError: 'x'")) == GENERIC_ERROR_MESSAGE


def test_channel_auth_errors_map_to_401():
    exc = ChannelError("calls", "Token expired", status_code=401)
    assert exc.code == ErrorCode.CHANNEL_AUTH
    assert to_http_exception(exc).status_code == 401
    assert to_http_exception(ChannelError("calls", "boom", status_code=500)).status_code == 502


def test_http_mapping():
    assert to_http_exception(SettingsError("daily_send_cap", "Must be >= 0")).status_code == 400
    assert to_http_exception(ItemNotFoundError("x")).status_code == 404
    http_exc = to_http_exception(UnknownChannelError("fax"))
    assert http_exc.status_code == 404
    assert http_exc.detail["error"] == "UNKNOWN_CHANNEL"
