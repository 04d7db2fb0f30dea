from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from booking_reminders.notifier import (
    DisabledSmsSender,
    EmailMessage,
    HttpEmailSender,
    StubEmailSender,
    create_email_sender,
    mask_contact_target,
)


def _make_message(
    *,
    to: str = "client@example.com",
    reminder_id: int = 11,
    attempt: int = 0,
    from_name: str | None = None,
) -> EmailMessage:
    return EmailMessage(
        to=to,
        subject="Appointment Reminder",
        html="<p>See you tomorrow</p>",
        tenant_id=7,
        reminder_id=reminder_id,
        attempt=attempt,
        from_name=from_name,
    )


def _make_sender(
    *,
    base_url: str = "https://mail.bookings.test/",
    api_key: str = "test-api-key-abc123",
) -> HttpEmailSender:
    return HttpEmailSender(base_url=base_url, api_key=api_key, default_from_name="Bookings")


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-123"})
    sender = _make_sender()

    result = sender.send(_make_message())

    assert result.ok is True
    assert result.provider_message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None
    mock_urlopen.assert_called_once()

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://mail.bookings.test/v1/messages/send"
    assert request_arg.get_header("Authorization") == "Bearer test-api-key-abc123"
    assert request_arg.get_header("Content-type") == "application/json"

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["channel"] == "email"
    assert sent_body["recipient"] == "client@example.com"
    assert sent_body["subject"] == "Appointment Reminder"
    assert sent_body["html"] == "<p>See you tomorrow</p>"
    assert sent_body["from_name"] == "Bookings"
    assert sent_body["idempotency_key"] == "reminder-11-0"


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_idempotency_key_is_per_reminder_attempt(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-125"})
    sender = _make_sender()

    sender.send(_make_message(to="alice@example.com", reminder_id=21))
    sender.send(_make_message(to="bob@example.com", reminder_id=22))
    sender.send(_make_message(to="bob@example.com", reminder_id=22, attempt=1))

    keys = [json.loads(call.args[0].data.decode("utf-8"))["idempotency_key"] for call in mock_urlopen.call_args_list]
    assert keys == ["reminder-21-0", "reminder-22-0", "reminder-22-1"]


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_prefers_message_from_name(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-124"})

    _make_sender().send(_make_message(from_name="Glow Spa"))

    sent_body = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))
    assert sent_body["from_name"] == "Glow Spa"


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_http_500(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://mail.bookings.test/v1/messages/send",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send(_make_message())

    assert result.status == "failed"
    assert result.error_code == "http_500"
    assert result.error_message is not None
    assert "500" in result.error_message
    assert "c***@example.com" in result.error_message
    assert "client@example.com" not in result.error_message


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send(_make_message())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send(_make_message())

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("booking_reminders.notifier.urllib.request.urlopen")
def test_http_sender_invalid_json_response(mock_urlopen: MagicMock) -> None:
    response = _mock_response({})
    response.read.return_value = b"<html>bad gateway</html>"
    mock_urlopen.return_value = response

    result = _make_sender().send(_make_message())

    assert result.status == "failed"
    assert result.error_code == "invalid_response"


def test_http_sender_empty_base_url() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        HttpEmailSender(base_url="", api_key="test-key")


def test_http_sender_empty_api_key() -> None:
    with pytest.raises(ValueError, match="api_key must not be empty"):
        HttpEmailSender(base_url="https://mail.bookings.test", api_key="  ")


def test_stub_sender_records_and_forces_failures() -> None:
    sender = StubEmailSender(enabled=True)

    assert sender.send(_make_message()).ok is True
    failed = sender.send(_make_message(to="fail@example.com"))
    assert failed.ok is False
    assert failed.error_code == "stub_delivery_failed"
    assert [message.to for message in sender.sent] == ["client@example.com"]

    disabled = StubEmailSender(enabled=False).send(_make_message())
    assert disabled.error_code == "notifier_disabled"


def test_sms_sender_is_inert() -> None:
    result = DisabledSmsSender().send("+15555550123", "hello", tenant_id=1)

    assert result.ok is False
    assert result.error_message == "SMS disabled - skipped"


def test_create_email_sender_selects_transport() -> None:
    assert isinstance(create_email_sender(sender_type="stub", enabled=True), StubEmailSender)
    assert isinstance(create_email_sender(sender_type="http", enabled=False), StubEmailSender)
    http_sender = create_email_sender(
        sender_type="HTTP",
        enabled=True,
        base_url="https://mail.bookings.test",
        api_key="key-123",
    )
    assert isinstance(http_sender, HttpEmailSender)
    with pytest.raises(RuntimeError, match="unsupported NOTIFIER_SENDER_TYPE"):
        create_email_sender(sender_type="carrier-pigeon", enabled=True)


@pytest.mark.parametrize(
    ("target", "channel", "masked"),
    [
        ("ada@example.com", "email", "a***@example.com"),
        ("a@example.com", "email", "*@example.com"),
        ("+1 (555) 555-0123", "sms", "***0123"),
        ("abc", "email", "***"),
        ("   ", "email", "***"),
        ("someone", "in_app", "so***ne"),
    ],
)
def test_mask_contact_target(target: str, channel: str, masked: str) -> None:
    assert mask_contact_target(target, channel) == masked
