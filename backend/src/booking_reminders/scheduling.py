from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from .in_app import InAppNotification, InAppNotifier
from .models import APPOINTMENT_UPCOMING, NewReminder, ReminderSetting
from .reminder_store import ReminderStore
from .templates import FALLBACK_BODY, FALLBACK_SUBJECT
from .timing import DEFAULT_FALLBACK_LABELS, calculate_send_at, resolve_timing_hours, send_at_for_hours

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS: tuple[str, ...] = ("email",)
# Channels handled outside the reminder table.
SKIPPED_CHANNELS = frozenset({"sms"})
IN_APP_CHANNEL = "in_app"


@dataclass(frozen=True)
class ScheduleOutcome:
    appointment_id: int
    ok: bool
    reminder_ids: list[int] = field(default_factory=list)
    in_app_pushed: bool = False
    skipped_channels: list[str] = field(default_factory=list)
    used_default: bool = False
    error: str | None = None

    @property
    def created_count(self) -> int:
        return len(self.reminder_ids)


def parse_channels(raw: object) -> list[str]:
    """Normalize a stored channel list; anything unusable means email only."""
    if isinstance(raw, str):
        if not raw.strip():
            return list(DEFAULT_CHANNELS)
        try:
            raw = json.loads(raw)
        except ValueError:
            return list(DEFAULT_CHANNELS)
    if not isinstance(raw, (list, tuple)):
        return list(DEFAULT_CHANNELS)

    channels: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        channel = item.strip().lower()
        if channel and channel not in channels:
            channels.append(channel)
    return channels or list(DEFAULT_CHANNELS)


class ReminderScheduler:
    def __init__(self, *, store: ReminderStore, in_app_notifier: InAppNotifier | None = None) -> None:
        self._store = store
        self._in_app_notifier = in_app_notifier

    def schedule(
        self,
        tenant_id: int,
        appointment_id: int,
        appointment_start: datetime,
        customer_id: int | None = None,
        *,
        reminder_type: str = APPOINTMENT_UPCOMING,
    ) -> ScheduleOutcome:
        try:
            setting = self._store.get_setting_for_tenant(tenant_id, reminder_type, enabled_only=True)
            if setting is None:
                return self._schedule_defaults(tenant_id, appointment_id, appointment_start, reminder_type)
            return self._schedule_from_setting(setting, appointment_id, appointment_start, customer_id)
        except Exception as exc:
            return ScheduleOutcome(appointment_id=appointment_id, ok=False, error=str(exc) or type(exc).__name__)

    def schedule_or_log(
        self,
        tenant_id: int,
        appointment_id: int,
        appointment_start: datetime,
        customer_id: int | None = None,
    ) -> ScheduleOutcome:
        outcome = self.schedule(tenant_id, appointment_id, appointment_start, customer_id)
        if not outcome.ok:
            logger.error(
                "reminder scheduling failed tenant_id=%s appointment_id=%s error=%s",
                tenant_id,
                appointment_id,
                outcome.error,
            )
        return outcome

    def _schedule_defaults(
        self,
        tenant_id: int,
        appointment_id: int,
        appointment_start: datetime,
        reminder_type: str,
    ) -> ScheduleOutcome:
        records = [
            NewReminder(
                tenant_id=tenant_id,
                appointment_id=appointment_id,
                reminder_type=reminder_type,
                send_at=calculate_send_at(appointment_start, label),
                method="email",
            )
            for label in DEFAULT_FALLBACK_LABELS
        ]
        reminder_ids = self._store.create_reminders(records)
        logger.info(
            "scheduled default reminders tenant_id=%s appointment_id=%s count=%s",
            tenant_id,
            appointment_id,
            len(reminder_ids),
        )
        return ScheduleOutcome(
            appointment_id=appointment_id,
            ok=True,
            reminder_ids=reminder_ids,
            used_default=True,
        )

    def _schedule_from_setting(
        self,
        setting: ReminderSetting,
        appointment_id: int,
        appointment_start: datetime,
        customer_id: int | None,
    ) -> ScheduleOutcome:
        channels = parse_channels(setting.channels)
        hours = resolve_timing_hours(setting)

        skipped = [channel for channel in channels if channel in SKIPPED_CHANNELS]
        for channel in skipped:
            logger.info(
                "skipping disabled reminder channel=%s tenant_id=%s appointment_id=%s",
                channel,
                setting.tenant_id,
                appointment_id,
            )
        record_channels = [
            channel for channel in channels if channel != IN_APP_CHANNEL and channel not in SKIPPED_CHANNELS
        ]

        records = [
            NewReminder(
                tenant_id=setting.tenant_id,
                appointment_id=appointment_id,
                reminder_type=setting.reminder_type,
                send_at=send_at_for_hours(appointment_start, offset),
                method=channel,
            )
            for offset in hours
            for channel in record_channels
        ]
        reminder_ids = self._store.create_reminders(records) if records else []

        in_app_pushed = False
        if IN_APP_CHANNEL in channels:
            in_app_pushed = self._push_in_app(setting, appointment_id, customer_id)

        logger.info(
            "scheduled reminders tenant_id=%s appointment_id=%s count=%s in_app=%s",
            setting.tenant_id,
            appointment_id,
            len(reminder_ids),
            in_app_pushed,
        )
        return ScheduleOutcome(
            appointment_id=appointment_id,
            ok=True,
            reminder_ids=reminder_ids,
            in_app_pushed=in_app_pushed,
            skipped_channels=skipped,
        )

    def _push_in_app(self, setting: ReminderSetting, appointment_id: int, customer_id: int | None) -> bool:
        if self._in_app_notifier is None:
            logger.warning("in-app channel requested but no notifier is configured")
            return False
        try:
            self._in_app_notifier.push(
                InAppNotification(
                    tenant_id=setting.tenant_id,
                    type="reminder",
                    category="reminder",
                    title=setting.template_subject or FALLBACK_SUBJECT,
                    message=setting.template_body or FALLBACK_BODY,
                    data={
                        "appointment_id": appointment_id,
                        "customer_id": customer_id,
                        "reminder_type": setting.reminder_type,
                    },
                    icon="calendar",
                )
            )
        except Exception:
            logger.exception(
                "in-app reminder push failed tenant_id=%s appointment_id=%s",
                setting.tenant_id,
                appointment_id,
            )
            return False
        return True
