from promptvault.logging import (
    _add_correlation_id,
    _redact_secrets,
    correlation_id_var,
    set_correlation_id,
)


def test_token_identifiers_are_masked():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "access_token_rejected",
            "jti": "3f2a9c77b1",
            "access_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "token_prefix": "abcdefgh",
            "user_id": "u-123456",
        },
    )
    assert event["event"] == "access_token_rejected"
    assert event["jti"] == "3f***b1"
    assert event["access_token"].startswith("ey***")
    assert event["token_prefix"] == "ab***gh"
    assert event["user_id"] == "u-123456"


def test_short_and_non_string_values():
    event = _redact_secrets(
        None, "info", {"event": "x", "session_id": "abc", "password_attempts": 3}
    )
    assert event["session_id"] == "***"
    assert event["password_attempts"] == 3


def test_login_identifier_and_cookie_are_masked():
    event = _redact_secrets(
        None,
        "info",
        {"event": "login_failed", "identifier": "alice@example.com", "cookie": "session_id=xyz"},
    )
    assert "alice" not in event["identifier"]
    assert event["cookie"] == "se***yz"


def test_correlation_id_added_when_set():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        cid = set_correlation_id("req-42")
        assert cid == "req-42"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
    finally:
        correlation_id_var.reset(token)
