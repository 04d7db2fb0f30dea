from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ReminderStatus = Literal["pending", "processing", "sent", "closed", "failed"]
ReminderChannel = Literal["email", "sms", "in_app"]
DispatchOutcome = Literal["sent", "failed", "skipped"]

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_CLOSED = "closed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_SENT, STATUS_CLOSED, STATUS_FAILED})
# A leased record is still actionable once its lease lapses.
ACTIONABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_PROCESSING})

APPOINTMENT_UPCOMING = "appointment_upcoming"
INACTIVE_APPOINTMENT_STATUSES = frozenset({"cancelled", "completed", "no_show"})

KNOWN_CHANNELS = frozenset({"email", "sms", "in_app"})

# Ten years; larger offsets are treated as invalid configuration.
MAX_OFFSET_HOURS = 24 * 366 * 10


@dataclass(frozen=True)
class ReminderSetting:
    setting_id: int
    tenant_id: int
    reminder_type: str
    is_enabled: bool
    hours_before: float | None
    # Either decoded lists or the raw JSON text as stored in the database.
    timing_options: list[object] | str | None
    channels: list[object] | str | None
    template_subject: str | None
    template_body: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewReminder:
    tenant_id: int
    appointment_id: int
    reminder_type: str
    send_at: datetime
    method: str


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: int
    tenant_id: int
    appointment_id: int
    reminder_type: str
    send_at: datetime
    method: str
    status: str
    retry_count: int
    next_retry_at: datetime | None
    lease_expires_at: datetime | None
    sent_at: datetime | None
    last_error_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ReminderPatch:
    """A state transition applied to one reminder record.

    ``status``, ``next_retry_at`` and ``error_message`` are always written
    (``None`` clears them) and the claim lease is always released.
    ``retry_count``, ``sent_at`` and ``last_error_at`` are only written when
    they are not ``None``.
    """

    status: str
    next_retry_at: datetime | None = None
    error_message: str | None = None
    retry_count: int | None = None
    sent_at: datetime | None = None
    last_error_at: datetime | None = None


@dataclass(frozen=True)
class AppointmentDetails:
    appointment_id: int
    tenant_id: int
    customer_id: int | None
    start_time: datetime
    status: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    service_name: str | None = None
    staff_name: str | None = None
    tenant_name: str | None = None
    tenant_settings: dict[str, object] | str | None = None
    service_id: int | None = None
    staff_id: int | None = None

    @property
    def client_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class DispatchSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None


class ReminderSettingResponse(BaseModel):
    setting_id: int
    tenant_id: int
    reminder_type: str
    is_enabled: bool
    hours_before: float | None
    timing_options: list[float] | None
    channels: list[str]
    template_subject: str | None
    template_body: str | None
    updated_at: datetime


class ReminderSettingUpdateRequest(BaseModel):
    is_enabled: bool | None = None
    hours_before: float | None = Field(default=None, ge=0)
    timing_options: list[float] | None = Field(default=None, max_length=16)
    channels: list[str] | None = Field(default=None, max_length=3)
    template_subject: str | None = Field(default=None, max_length=255)
    template_body: str | None = Field(default=None, max_length=5000)

    @field_validator("timing_options")
    @classmethod
    def _validate_timing_options(cls, value: list[float] | None) -> list[float] | None:
        if value is None:
            return None
        for item in value:
            if not math.isfinite(item) or item < 0 or item > MAX_OFFSET_HOURS:
                raise ValueError("timing_options entries must be non-negative finite numbers")
        return value

    @field_validator("channels")
    @classmethod
    def _normalize_channels(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for raw_channel in value:
            channel = str(raw_channel).strip().lower()
            if channel not in KNOWN_CHANNELS:
                raise ValueError(f"unsupported channel: {raw_channel}")
            if channel not in normalized:
                normalized.append(channel)
        return normalized


class ReminderRecordResponse(BaseModel):
    reminder_id: int
    appointment_id: int
    reminder_type: str
    method: str
    status: ReminderStatus
    send_at: datetime
    retry_count: int
    next_retry_at: datetime | None
    sent_at: datetime | None
    last_error_at: datetime | None
    error_message: str | None


class AppointmentRemindersResponse(BaseModel):
    appointment_id: int
    reminders: list[ReminderRecordResponse]


class ScheduleRequest(BaseModel):
    start_time: datetime
    customer_id: int | None = None


class RescheduleRequest(BaseModel):
    start_time: datetime


class ScheduleOutcomeResponse(BaseModel):
    appointment_id: int
    ok: bool
    created_count: int
    reminder_ids: list[int]
    in_app_pushed: bool
    skipped_channels: list[str]
    used_default: bool
    closed_count: int = 0
    error: str | None = None


class CancelResponse(BaseModel):
    appointment_id: int
    closed_count: int


class TimingPreviewItem(BaseModel):
    hours: float
    label: str
    send_at: datetime


class TimingPreviewResponse(BaseModel):
    start_time: datetime
    used_default: bool
    timings: list[TimingPreviewItem]
