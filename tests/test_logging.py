from unittest.mock import patch

import structlog

from chatauth.logging import _redact_pii, set_correlation_id
from chatauth.service.events import LoggingEventSink, PasswordResetRequested, SessionTerminated


def test_credentials_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_attempt",
            "email": "alice@example.com",
            "access_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "token_type": "bearer",
            "refresh_token_id": "0123456789abcdef",
        },
    )
    assert event["email"] == "al***om"
    assert event["access_token"].startswith("ey***")
    assert event["token_type"] == "bearer"
    assert event["refresh_token_id"] == "0123456789abcdef"


def test_correlation_id_bound_to_context():
    cid = set_correlation_id(None)
    assert cid
    assert structlog.contextvars.get_contextvars()["correlation_id"] == cid

    assert set_correlation_id("req-1") == "req-1"
    assert structlog.contextvars.get_contextvars() == {"correlation_id": "req-1"}
    structlog.contextvars.clear_contextvars()


def test_logging_event_sink_writes_structured_event():
    sink = LoggingEventSink()
    with patch("chatauth.service.events.logger") as mock_logger:
        sink.publish(SessionTerminated(user_id="u1", session_id="s1", reason="refresh_reuse"))
    args, kwargs = mock_logger.info.call_args
    assert args == ("auth_event",)
    assert kwargs["event_type"] == "SessionTerminated"
    assert kwargs["reason"] == "refresh_reuse"
    assert kwargs["session_id"] == "s1"


def test_reset_token_is_masked_when_event_is_logged():
    event = _redact_pii(
        None,
        "info",
        {"event": "auth_event", "reset_token": "abcdefghijklmnop", "user_id": "u1"},
    )
    assert event["reset_token"] == "ab***op"
    assert event["user_id"] == "u1"

    with patch("chatauth.service.events.logger") as mock_logger:
        LoggingEventSink().publish(
            PasswordResetRequested(user_id="u1", email="a@example.com", reset_token="t" * 43)
        )
    _, kwargs = mock_logger.info.call_args
    assert kwargs["event_type"] == "PasswordResetRequested"
