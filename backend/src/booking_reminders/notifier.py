from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

SendResultStatus = Literal["sent", "failed"]

SMS_DISABLED_ERROR_CODE = "sms_disabled"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    tenant_id: int
    reminder_id: int
    # Retry count of the reminder when this attempt was made.
    attempt: int = 0
    from_name: str | None = None

    @property
    def idempotency_key(self) -> str:
        return f"reminder-{self.reminder_id}-{self.attempt}"


@dataclass(frozen=True)
class EmailSendResult:
    status: SendResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> EmailSendResult: ...


class SmsSender(Protocol):
    def send(self, phone: str, body: str, *, tenant_id: int) -> EmailSendResult: ...


class StubEmailSender:
    """Records messages in memory; used for local runs and tests."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Email delivery is disabled",
            )

        if "fail" in message.to.lower():
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(message)
        message_id = f"stub-{message.idempotency_key}"
        return EmailSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class DisabledSmsSender:
    def send(self, phone: str, body: str, *, tenant_id: int) -> EmailSendResult:
        return EmailSendResult(
            status="failed",
            attempted_at=datetime.now(timezone.utc),
            error_code=SMS_DISABLED_ERROR_CODE,
            error_message="SMS disabled - skipped",
        )


class _EmailSendError(Exception):
    """Internal error raised when an email provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpEmailSender:
    """Delivers rendered reminder emails through the provider's HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
        default_from_name: str | None = None,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds
        self._default_from_name = default_from_name

    def send(self, message: EmailMessage) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "channel": "email",
            "recipient": message.to,
            "subject": message.subject,
            "html": message.html,
            "from_name": message.from_name or self._default_from_name or "",
            "idempotency_key": message.idempotency_key,
        }

        try:
            response_data = self._post(request_payload)
        except _EmailSendError as exc:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_contact_target(message.to, 'email')})",
            )
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, str]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _EmailSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _EmailSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _EmailSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _EmailSendError(
                error_code="invalid_response",
                message=f"Provider returned invalid JSON: {exc}",
            ) from exc


def create_email_sender(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str = "",
    api_key: str = "",
    timeout_seconds: int = 30,
    from_name: str | None = None,
) -> EmailSender:
    normalized = sender_type.strip().lower()
    if normalized == "http" and enabled:
        return HttpEmailSender(
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
            default_from_name=from_name,
        )
    if normalized in {"http", "stub"}:
        return StubEmailSender(enabled=enabled)
    raise RuntimeError(f"unsupported NOTIFIER_SENDER_TYPE: {sender_type}")


def mask_contact_target(contact_target: str, channel: str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
