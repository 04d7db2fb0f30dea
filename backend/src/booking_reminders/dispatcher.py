from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from .models import (
    INACTIVE_APPOINTMENT_STATUSES,
    AppointmentDetails,
    DispatchOutcome,
    DispatchSummary,
    ReminderRecord,
)
from .notifier import (
    SMS_DISABLED_ERROR_CODE,
    DisabledSmsSender,
    EmailMessage,
    EmailSender,
    SmsSender,
    mask_contact_target,
)
from .reminder_store import ReminderStore
from .retry_policy import closed_patch, delivered_patch, failure_patch, is_stale
from .templates import (
    FALLBACK_BODY,
    FALLBACK_SUBJECT,
    build_template_data,
    business_name_for,
    render_notification_html,
    render_template,
)
from .timing import hours_until

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_LEASE_SECONDS = 300


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderDispatcher:
    def __init__(
        self,
        *,
        store: ReminderStore,
        email_sender: EmailSender,
        sms_sender: SmsSender | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        stale_after: timedelta | None = None,
        default_timezone: str = "UTC",
        from_name: str | None = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._email_sender = email_sender
        self._sms_sender: SmsSender = sms_sender or DisabledSmsSender()
        self._batch_size = batch_size
        self._lease_seconds = lease_seconds
        self._stale_after = stale_after
        self._default_timezone = default_timezone
        self._from_name = from_name
        self._clock = clock

    def dispatch_due(self, now: datetime | None = None) -> DispatchSummary:
        tick_at = now or self._clock()
        try:
            claimed = self._store.claim_due(limit=self._batch_size, now=tick_at, lease_seconds=self._lease_seconds)
        except Exception as exc:
            logger.exception("reminder dispatch tick abandoned; store unavailable")
            return DispatchSummary(error=str(exc) or type(exc).__name__)

        summary = DispatchSummary(processed=len(claimed))
        for record in claimed:
            outcome = self._process_one(record, now=tick_at)
            if outcome == "sent":
                summary.sent += 1
            elif outcome == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1

        if claimed:
            logger.debug(
                "reminder dispatch processed=%s sent=%s failed=%s skipped=%s",
                summary.processed,
                summary.sent,
                summary.failed,
                summary.skipped,
            )
        return summary

    def _process_one(self, record: ReminderRecord, *, now: datetime) -> DispatchOutcome:
        try:
            return self._deliver(record, now=now)
        except Exception as exc:
            logger.exception("reminder dispatch error reminder_id=%s", record.reminder_id)
            error = str(exc) or type(exc).__name__
        try:
            return self._fail(record, error, now=now)
        except Exception:
            # The claim lease expires and the record is picked up again.
            logger.exception("could not record reminder failure reminder_id=%s", record.reminder_id)
            return "failed"

    def _deliver(self, record: ReminderRecord, *, now: datetime) -> DispatchOutcome:
        if is_stale(record, now=now, stale_after=self._stale_after):
            return self._close(record, "Reminder expired before delivery")

        appointment = self._store.get_appointment_with_joins(record.appointment_id)
        if appointment is None:
            return self._close(record, "Appointment not found")
        if appointment.status in INACTIVE_APPOINTMENT_STATUSES:
            return self._close(record, f"Appointment {appointment.status}")

        subject, body = self._render(record, appointment)

        if record.method == "email":
            return self._send_email(record, appointment, subject=subject, body=body, now=now)
        if record.method == "sms":
            return self._send_sms(record, appointment, body=body, now=now)

        return self._fail(record, "Unknown reminder method", now=now)

    def _render(self, record: ReminderRecord, appointment: AppointmentDetails) -> tuple[str, str]:
        setting = self._store.get_setting_for_tenant(record.tenant_id, record.reminder_type, enabled_only=False)
        subject_template = (setting.template_subject if setting else None) or FALLBACK_SUBJECT
        body_template = (setting.template_body if setting else None) or FALLBACK_BODY
        data = build_template_data(
            appointment,
            hours=hours_until(appointment.start_time, record.send_at),
            default_timezone=self._default_timezone,
        )
        return render_template(subject_template, data), render_template(body_template, data)

    def _send_email(
        self,
        record: ReminderRecord,
        appointment: AppointmentDetails,
        *,
        subject: str,
        body: str,
        now: datetime,
    ) -> DispatchOutcome:
        recipient = (appointment.email or "").strip()
        if not recipient:
            return self._fail(record, "Customer email not found", now=now)

        result = self._email_sender.send(
            EmailMessage(
                to=recipient,
                subject=subject,
                html=render_notification_html(subject, body, business_name=business_name_for(appointment)),
                tenant_id=record.tenant_id,
                reminder_id=record.reminder_id,
                attempt=record.retry_count,
                from_name=self._from_name,
            )
        )
        if result.ok:
            self._store.update_reminder(record.reminder_id, delivered_patch(now))
            return "sent"

        logger.warning(
            "reminder email failed reminder_id=%s recipient=%s error_code=%s",
            record.reminder_id,
            mask_contact_target(recipient, "email"),
            result.error_code,
        )
        return self._fail(record, result.error_message or "Failed to send email", now=now)

    def _send_sms(self, record: ReminderRecord, appointment: AppointmentDetails, *, body: str, now: datetime) -> DispatchOutcome:
        phone = (appointment.phone or "").strip()
        result = self._sms_sender.send(phone, body, tenant_id=record.tenant_id)
        if result.ok:
            self._store.update_reminder(record.reminder_id, delivered_patch(now))
            return "sent"
        # A disabled transport closes the record instead of retrying it.
        if result.error_code == SMS_DISABLED_ERROR_CODE:
            return self._close(record, result.error_message or "SMS disabled - skipped")

        logger.warning(
            "reminder sms failed reminder_id=%s recipient=%s error_code=%s",
            record.reminder_id,
            mask_contact_target(phone, "sms"),
            result.error_code,
        )
        return self._fail(record, result.error_message or "Failed to send SMS", now=now)

    def _close(self, record: ReminderRecord, reason: str) -> DispatchOutcome:
        self._store.update_reminder(record.reminder_id, closed_patch(reason))
        return "skipped"

    def _fail(self, record: ReminderRecord, error: str, *, now: datetime) -> DispatchOutcome:
        self._store.update_reminder(record.reminder_id, failure_patch(record, error=error, now=now))
        return "failed"
