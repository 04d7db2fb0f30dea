from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    ACTIONABLE_STATUSES,
    APPOINTMENT_UPCOMING,
    STATUS_CLOSED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    AppointmentDetails,
    NewReminder,
    ReminderPatch,
    ReminderRecord,
    ReminderSetting,
)
from .timing import DEFAULT_UPCOMING_HOURS

SETTING_FIELDS = frozenset(
    {"is_enabled", "hours_before", "timing_options", "channels", "template_subject", "template_body"}
)

DEFAULT_REMINDER_SETTINGS: tuple[dict[str, object], ...] = (
    {
        "reminder_type": APPOINTMENT_UPCOMING,
        "hours_before": 24,
        "timing_options": list(DEFAULT_UPCOMING_HOURS),
        "channels": ["in_app", "email"],
        "template_subject": "Appointment Reminder",
        "template_body": "Your appointment is coming up in {hours} hours.",
    },
    {
        "reminder_type": "appointment_followup",
        "hours_before": 48,
        "channels": ["in_app", "email"],
        "template_subject": "How was your visit?",
        "template_body": "We hope you enjoyed your visit! Please leave us a review.",
    },
    {
        "reminder_type": "review_request",
        "hours_before": 24,
        "channels": ["in_app"],
        "template_subject": "Share Your Experience",
        "template_body": "Please take a moment to review your recent service.",
    },
    {
        "reminder_type": "birthday",
        "hours_before": 0,
        "channels": ["in_app", "email"],
        "template_subject": "Happy Birthday!",
        "template_body": "Wishing you a wonderful birthday! Here's a special gift for you.",
    },
    {
        "reminder_type": "inactive_client",
        "hours_before": 720,
        "channels": ["in_app", "email"],
        "template_subject": "We miss you!",
        "template_body": "It's been a while since your last visit. Book now and get a special discount!",
    },
    {
        "reminder_type": "payment_due",
        "hours_before": 48,
        "channels": ["in_app", "email"],
        "template_subject": "Payment Reminder",
        "template_body": "You have an outstanding invoice. Please complete your payment.",
    },
    {
        "reminder_type": "membership_expiry",
        "hours_before": 168,
        "channels": ["in_app", "email"],
        "template_subject": "Membership Expiring Soon",
        "template_body": "Your membership is expiring in {days} days. Renew now!",
    },
    {
        "reminder_type": "package_expiry",
        "hours_before": 168,
        "channels": ["in_app"],
        "template_subject": "Package Expiring",
        "template_body": "Your package is expiring soon. Use your remaining sessions!",
    },
    {
        "reminder_type": "stock_low",
        "hours_before": 0,
        "channels": ["in_app"],
        "template_subject": "Low Stock Alert",
        "template_body": "Product {product_name} is running low on stock.",
    },
)


class ReminderSettingNotFoundError(KeyError):
    """Raised when an operation references a reminder setting that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _patch_changes(patch: ReminderPatch) -> dict[str, object]:
    changes: dict[str, object] = {
        "status": patch.status,
        "next_retry_at": _coerce_optional(patch.next_retry_at),
        "error_message": patch.error_message,
        "lease_expires_at": None,
    }
    if patch.retry_count is not None:
        changes["retry_count"] = patch.retry_count
    if patch.sent_at is not None:
        changes["sent_at"] = _coerce_utc(patch.sent_at)
    if patch.last_error_at is not None:
        changes["last_error_at"] = _coerce_utc(patch.last_error_at)
    return changes


def _is_due(record: ReminderRecord, now: datetime) -> bool:
    if record.status == STATUS_PROCESSING:
        return record.lease_expires_at is not None and record.lease_expires_at <= now
    if record.status != STATUS_PENDING or record.send_at > now:
        return False
    return record.next_retry_at is None or record.next_retry_at <= now


def _dump_json(value: object) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


class ReminderStore(Protocol):
    def reset(self) -> None: ...

    def create_reminder(self, reminder: NewReminder) -> int: ...

    def create_reminders(self, reminders: list[NewReminder]) -> list[int]: ...

    def list_due(self, *, limit: int, now: datetime) -> list[ReminderRecord]: ...

    def claim_due(self, *, limit: int, now: datetime, lease_seconds: int) -> list[ReminderRecord]: ...

    def update_reminder(self, reminder_id: int, patch: ReminderPatch) -> None: ...

    def close_pending_for_appointment(
        self,
        appointment_id: int,
        *,
        reason: str,
        tenant_id: int | None = None,
    ) -> int: ...

    def get_reminder(self, reminder_id: int) -> ReminderRecord | None: ...

    def list_reminders_for_appointment(
        self,
        appointment_id: int,
        *,
        tenant_id: int | None = None,
    ) -> list[ReminderRecord]: ...

    def save_appointment(self, appointment: AppointmentDetails) -> None: ...

    def get_appointment_with_joins(self, appointment_id: int) -> AppointmentDetails | None: ...

    def get_setting_for_tenant(
        self,
        tenant_id: int,
        reminder_type: str,
        *,
        enabled_only: bool = True,
    ) -> ReminderSetting | None: ...

    def list_settings(self, tenant_id: int) -> list[ReminderSetting]: ...

    def ensure_default_settings(self, tenant_id: int) -> list[ReminderSetting]: ...

    def save_setting(self, tenant_id: int, reminder_type: str, **values: object) -> ReminderSetting: ...

    def update_setting(self, tenant_id: int, setting_id: int, changes: dict[str, object]) -> ReminderSetting: ...


class InMemoryReminderStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._reminder_ids = count(1)
        self._setting_ids = count(1)
        self._reminders: dict[int, ReminderRecord] = {}
        self._settings: dict[int, ReminderSetting] = {}
        self._appointments: dict[int, AppointmentDetails] = {}

    def reset(self) -> None:
        with self._lock:
            self._reminder_ids = count(1)
            self._setting_ids = count(1)
            self._reminders.clear()
            self._settings.clear()
            self._appointments.clear()

    def create_reminder(self, reminder: NewReminder) -> int:
        return self.create_reminders([reminder])[0]

    def create_reminders(self, reminders: list[NewReminder]) -> list[int]:
        now = _now_utc()
        created: list[int] = []
        with self._lock:
            for reminder in reminders:
                reminder_id = next(self._reminder_ids)
                self._reminders[reminder_id] = ReminderRecord(
                    reminder_id=reminder_id,
                    tenant_id=reminder.tenant_id,
                    appointment_id=reminder.appointment_id,
                    reminder_type=reminder.reminder_type,
                    send_at=_coerce_utc(reminder.send_at),
                    method=reminder.method,
                    status=STATUS_PENDING,
                    retry_count=0,
                    next_retry_at=None,
                    lease_expires_at=None,
                    sent_at=None,
                    last_error_at=None,
                    error_message=None,
                    created_at=now,
                    updated_at=now,
                )
                created.append(reminder_id)
        return created

    def _due_locked(self, now: datetime, limit: int) -> list[ReminderRecord]:
        due = [row for row in self._reminders.values() if _is_due(row, now)]
        due.sort(key=lambda value: (value.send_at, value.reminder_id))
        return due[:limit]

    def list_due(self, *, limit: int, now: datetime) -> list[ReminderRecord]:
        with self._lock:
            return self._due_locked(_coerce_utc(now), limit)

    def claim_due(self, *, limit: int, now: datetime, lease_seconds: int) -> list[ReminderRecord]:
        normalized_now = _coerce_utc(now)
        lease_expires_at = normalized_now + timedelta(seconds=lease_seconds)
        claimed: list[ReminderRecord] = []
        with self._lock:
            for row in self._due_locked(normalized_now, limit):
                updated = ReminderRecord(
                    **{
                        **row.__dict__,
                        "status": STATUS_PROCESSING,
                        "lease_expires_at": lease_expires_at,
                        "updated_at": _now_utc(),
                    }
                )
                self._reminders[row.reminder_id] = updated
                claimed.append(updated)
        return claimed

    def update_reminder(self, reminder_id: int, patch: ReminderPatch) -> None:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None:
                return
            self._reminders[reminder_id] = ReminderRecord(
                **{**row.__dict__, **_patch_changes(patch), "updated_at": _now_utc()}
            )

    def close_pending_for_appointment(
        self,
        appointment_id: int,
        *,
        reason: str,
        tenant_id: int | None = None,
    ) -> int:
        closed = 0
        with self._lock:
            for reminder_id, row in list(self._reminders.items()):
                if row.appointment_id != appointment_id or row.status not in ACTIONABLE_STATUSES:
                    continue
                if tenant_id is not None and row.tenant_id != tenant_id:
                    continue
                self._reminders[reminder_id] = ReminderRecord(
                    **{
                        **row.__dict__,
                        "status": STATUS_CLOSED,
                        "next_retry_at": None,
                        "lease_expires_at": None,
                        "error_message": reason,
                        "updated_at": _now_utc(),
                    }
                )
                closed += 1
        return closed

    def get_reminder(self, reminder_id: int) -> ReminderRecord | None:
        return self._reminders.get(reminder_id)

    def list_reminders_for_appointment(
        self,
        appointment_id: int,
        *,
        tenant_id: int | None = None,
    ) -> list[ReminderRecord]:
        with self._lock:
            rows = [
                row
                for row in self._reminders.values()
                if row.appointment_id == appointment_id and (tenant_id is None or row.tenant_id == tenant_id)
            ]
        return sorted(rows, key=lambda value: (value.send_at, value.reminder_id))

    def save_appointment(self, appointment: AppointmentDetails) -> None:
        with self._lock:
            self._appointments[appointment.appointment_id] = AppointmentDetails(
                **{**appointment.__dict__, "start_time": _coerce_utc(appointment.start_time)}
            )

    def get_appointment_with_joins(self, appointment_id: int) -> AppointmentDetails | None:
        return self._appointments.get(appointment_id)

    def get_setting_for_tenant(
        self,
        tenant_id: int,
        reminder_type: str,
        *,
        enabled_only: bool = True,
    ) -> ReminderSetting | None:
        with self._lock:
            for row in self._settings.values():
                if row.tenant_id != tenant_id or row.reminder_type != reminder_type:
                    continue
                if enabled_only and not row.is_enabled:
                    return None
                return row
        return None

    def list_settings(self, tenant_id: int) -> list[ReminderSetting]:
        with self._lock:
            rows = [row for row in self._settings.values() if row.tenant_id == tenant_id]
        return sorted(rows, key=lambda value: value.reminder_type)

    def ensure_default_settings(self, tenant_id: int) -> list[ReminderSetting]:
        existing = self.list_settings(tenant_id)
        if not existing:
            for defaults in DEFAULT_REMINDER_SETTINGS:
                self.save_setting(tenant_id, **defaults)
            return self.list_settings(tenant_id)
        for row in existing:
            if row.reminder_type == APPOINTMENT_UPCOMING and not row.timing_options:
                self.update_setting(tenant_id, row.setting_id, {"timing_options": list(DEFAULT_UPCOMING_HOURS)})
        return self.list_settings(tenant_id)

    def save_setting(self, tenant_id: int, reminder_type: str, **values: object) -> ReminderSetting:
        unknown = set(values) - SETTING_FIELDS
        if unknown:
            raise ValueError(f"unknown reminder setting fields: {', '.join(sorted(unknown))}")
        now = _now_utc()
        with self._lock:
            current = next(
                (
                    row
                    for row in self._settings.values()
                    if row.tenant_id == tenant_id and row.reminder_type == reminder_type
                ),
                None,
            )
            if current is None:
                setting_id = next(self._setting_ids)
                current = ReminderSetting(
                    setting_id=setting_id,
                    tenant_id=tenant_id,
                    reminder_type=reminder_type,
                    is_enabled=True,
                    hours_before=None,
                    timing_options=None,
                    channels=None,
                    template_subject=None,
                    template_body=None,
                    created_at=now,
                    updated_at=now,
                )
            updated = ReminderSetting(**{**current.__dict__, **values, "updated_at": now})
            self._settings[updated.setting_id] = updated
            return updated

    def update_setting(self, tenant_id: int, setting_id: int, changes: dict[str, object]) -> ReminderSetting:
        unknown = set(changes) - SETTING_FIELDS
        if unknown:
            raise ValueError(f"unknown reminder setting fields: {', '.join(sorted(unknown))}")
        with self._lock:
            row = self._settings.get(setting_id)
            if row is None or row.tenant_id != tenant_id:
                raise ReminderSettingNotFoundError(setting_id)
            updated = ReminderSetting(**{**row.__dict__, **changes, "updated_at": _now_utc()})
            self._settings[setting_id] = updated
            return updated


class ReminderStoreBase(DeclarativeBase):
    pass


class HostTablesBase(DeclarativeBase):
    """Tables owned by the booking backend; mapped read-mostly for joins."""


class _ReminderSettingRow(ReminderStoreBase):
    __tablename__ = "reminder_settings"
    __table_args__ = (UniqueConstraint("tenant_id", "reminder_type", name="uq_reminder_settings_tenant_type"),)

    setting_id: Mapped[int] = mapped_column("id", Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    reminder_type: Mapped[str] = mapped_column(String(64), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    hours_before: Mapped[float | None] = mapped_column(Float, nullable=True)
    timing_options: Mapped[str | None] = mapped_column(Text, nullable=True)
    channels: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    template_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AppointmentReminderRow(ReminderStoreBase):
    __tablename__ = "appointment_reminders"
    __table_args__ = (Index("ix_appointment_reminders_status_send_at", "status", "send_at"),)

    reminder_id: Mapped[int] = mapped_column("id", Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    appointment_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    reminder_type: Mapped[str] = mapped_column(String(64), nullable=False)
    send_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default="email")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AppointmentRow(HostTablesBase):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    customer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    service_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    staff_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="scheduled")


class _ContactRow(HostTablesBase):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _ProductRow(HostTablesBase):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class _StaffRow(HostTablesBase):
    __tablename__ = "staff"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)


class _TenantRow(HostTablesBase):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settings: Mapped[str | None] = mapped_column(Text, nullable=True)


def _record_from_row(row: _AppointmentReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        tenant_id=row.tenant_id,
        appointment_id=row.appointment_id,
        reminder_type=row.reminder_type,
        send_at=_coerce_utc(row.send_at),
        method=row.method,
        status=row.status,
        retry_count=row.retry_count,
        next_retry_at=_coerce_optional(row.next_retry_at),
        lease_expires_at=_coerce_optional(row.lease_expires_at),
        sent_at=_coerce_optional(row.sent_at),
        last_error_at=_coerce_optional(row.last_error_at),
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _setting_from_row(row: _ReminderSettingRow) -> ReminderSetting:
    return ReminderSetting(
        setting_id=row.setting_id,
        tenant_id=row.tenant_id,
        reminder_type=row.reminder_type,
        is_enabled=row.is_enabled,
        hours_before=row.hours_before,
        timing_options=row.timing_options,
        channels=row.channels,
        template_subject=row.template_subject,
        template_body=row.template_body,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _due_clause(now: datetime):
    return or_(
        and_(
            _AppointmentReminderRow.status == STATUS_PENDING,
            _AppointmentReminderRow.send_at <= now,
            or_(
                _AppointmentReminderRow.next_retry_at.is_(None),
                _AppointmentReminderRow.next_retry_at <= now,
            ),
        ),
        and_(
            _AppointmentReminderRow.status == STATUS_PROCESSING,
            _AppointmentReminderRow.lease_expires_at <= now,
        ),
    )


class SqlAlchemyReminderStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)
            HostTablesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AppointmentReminderRow).delete()
                session.query(_ReminderSettingRow).delete()

    def create_reminder(self, reminder: NewReminder) -> int:
        return self.create_reminders([reminder])[0]

    def create_reminders(self, reminders: list[NewReminder]) -> list[int]:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                rows = [
                    _AppointmentReminderRow(
                        tenant_id=reminder.tenant_id,
                        appointment_id=reminder.appointment_id,
                        reminder_type=reminder.reminder_type,
                        send_at=_coerce_utc(reminder.send_at),
                        method=reminder.method,
                        status=STATUS_PENDING,
                        retry_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    for reminder in reminders
                ]
                session.add_all(rows)
                session.flush()
                return [row.reminder_id for row in rows]

    def list_due(self, *, limit: int, now: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_AppointmentReminderRow)
                .where(_due_clause(_coerce_utc(now)))
                .order_by(_AppointmentReminderRow.send_at.asc(), _AppointmentReminderRow.reminder_id.asc())
                .limit(limit)
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def claim_due(self, *, limit: int, now: datetime, lease_seconds: int) -> list[ReminderRecord]:
        normalized_now = _coerce_utc(now)
        lease_expires_at = normalized_now + timedelta(seconds=lease_seconds)
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_AppointmentReminderRow)
                    .where(_due_clause(normalized_now))
                    .order_by(_AppointmentReminderRow.send_at.asc(), _AppointmentReminderRow.reminder_id.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                ).scalars().all()
                claimed: list[ReminderRecord] = []
                for row in rows:
                    row.status = STATUS_PROCESSING
                    row.lease_expires_at = lease_expires_at
                    row.updated_at = _now_utc()
                    claimed.append(_record_from_row(row))
                return claimed

    def update_reminder(self, reminder_id: int, patch: ReminderPatch) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_AppointmentReminderRow, reminder_id)
                if row is None:
                    return
                for key, value in _patch_changes(patch).items():
                    setattr(row, key, value)
                row.updated_at = _now_utc()

    def close_pending_for_appointment(
        self,
        appointment_id: int,
        *,
        reason: str,
        tenant_id: int | None = None,
    ) -> int:
        statement = update(_AppointmentReminderRow).where(
            _AppointmentReminderRow.appointment_id == appointment_id,
            _AppointmentReminderRow.status.in_(sorted(ACTIONABLE_STATUSES)),
        )
        if tenant_id is not None:
            statement = statement.where(_AppointmentReminderRow.tenant_id == tenant_id)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    statement.values(
                        status=STATUS_CLOSED,
                        next_retry_at=None,
                        lease_expires_at=None,
                        error_message=reason,
                        updated_at=_now_utc(),
                    )
                )
                return result.rowcount or 0

    def get_reminder(self, reminder_id: int) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_AppointmentReminderRow, reminder_id)
            if row is None:
                return None
            return _record_from_row(row)

    def list_reminders_for_appointment(
        self,
        appointment_id: int,
        *,
        tenant_id: int | None = None,
    ) -> list[ReminderRecord]:
        query = select(_AppointmentReminderRow).where(_AppointmentReminderRow.appointment_id == appointment_id)
        if tenant_id is not None:
            query = query.where(_AppointmentReminderRow.tenant_id == tenant_id)
        with self._session() as session:
            rows = session.execute(
                query.order_by(_AppointmentReminderRow.send_at.asc(), _AppointmentReminderRow.reminder_id.asc())
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def save_appointment(self, appointment: AppointmentDetails) -> None:
        tenant_settings = appointment.tenant_settings
        with self._session() as session:
            with session.begin():
                session.merge(
                    _TenantRow(
                        id=appointment.tenant_id,
                        name=appointment.tenant_name,
                        settings=_dump_json(tenant_settings),
                    )
                )
                if appointment.customer_id is not None:
                    session.merge(
                        _ContactRow(
                            id=appointment.customer_id,
                            first_name=appointment.first_name,
                            last_name=appointment.last_name,
                            email=appointment.email,
                            phone=appointment.phone,
                        )
                    )
                if appointment.service_id is not None and appointment.service_name:
                    session.merge(_ProductRow(id=appointment.service_id, name=appointment.service_name))
                if appointment.staff_id is not None and appointment.staff_name:
                    session.merge(_StaffRow(id=appointment.staff_id, full_name=appointment.staff_name))
                session.merge(
                    _AppointmentRow(
                        id=appointment.appointment_id,
                        tenant_id=appointment.tenant_id,
                        customer_id=appointment.customer_id,
                        service_id=appointment.service_id,
                        staff_id=appointment.staff_id,
                        start_time=_coerce_utc(appointment.start_time),
                        status=appointment.status,
                    )
                )

    def get_appointment_with_joins(self, appointment_id: int) -> AppointmentDetails | None:
        query = (
            select(_AppointmentRow, _ContactRow, _ProductRow, _StaffRow, _TenantRow)
            .outerjoin(_ContactRow, _ContactRow.id == _AppointmentRow.customer_id)
            .outerjoin(_ProductRow, _ProductRow.id == _AppointmentRow.service_id)
            .outerjoin(_StaffRow, _StaffRow.id == _AppointmentRow.staff_id)
            .outerjoin(_TenantRow, _TenantRow.id == _AppointmentRow.tenant_id)
            .where(_AppointmentRow.id == appointment_id)
        )
        with self._session() as session:
            result = session.execute(query).first()
            if result is None:
                return None
            appointment, contact, product, staff, tenant = result
            return AppointmentDetails(
                appointment_id=appointment.id,
                tenant_id=appointment.tenant_id,
                customer_id=appointment.customer_id,
                start_time=_coerce_utc(appointment.start_time),
                status=appointment.status,
                first_name=contact.first_name if contact is not None else None,
                last_name=contact.last_name if contact is not None else None,
                email=contact.email if contact is not None else None,
                phone=contact.phone if contact is not None else None,
                service_name=product.name if product is not None else None,
                staff_name=staff.full_name if staff is not None else None,
                tenant_name=tenant.name if tenant is not None else None,
                tenant_settings=tenant.settings if tenant is not None else None,
                service_id=appointment.service_id,
                staff_id=appointment.staff_id,
            )

    def get_setting_for_tenant(
        self,
        tenant_id: int,
        reminder_type: str,
        *,
        enabled_only: bool = True,
    ) -> ReminderSetting | None:
        query = select(_ReminderSettingRow).where(
            _ReminderSettingRow.tenant_id == tenant_id,
            _ReminderSettingRow.reminder_type == reminder_type,
        )
        if enabled_only:
            query = query.where(_ReminderSettingRow.is_enabled.is_(True))
        with self._session() as session:
            row = session.execute(query.limit(1)).scalar_one_or_none()
            if row is None:
                return None
            return _setting_from_row(row)

    def list_settings(self, tenant_id: int) -> list[ReminderSetting]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderSettingRow)
                .where(_ReminderSettingRow.tenant_id == tenant_id)
                .order_by(_ReminderSettingRow.reminder_type.asc())
            ).scalars()
            return [_setting_from_row(row) for row in rows]

    def ensure_default_settings(self, tenant_id: int) -> list[ReminderSetting]:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_ReminderSettingRow).where(_ReminderSettingRow.tenant_id == tenant_id)
                ).scalars().all()
                if not rows:
                    for defaults in DEFAULT_REMINDER_SETTINGS:
                        session.add(
                            _ReminderSettingRow(
                                tenant_id=tenant_id,
                                reminder_type=str(defaults["reminder_type"]),
                                is_enabled=True,
                                hours_before=defaults.get("hours_before"),
                                timing_options=_dump_json(defaults.get("timing_options")),
                                channels=_dump_json(defaults.get("channels")),
                                template_subject=defaults.get("template_subject"),
                                template_body=defaults.get("template_body"),
                                created_at=now,
                                updated_at=now,
                            )
                        )
                for row in rows:
                    if row.reminder_type == APPOINTMENT_UPCOMING and not row.timing_options:
                        row.timing_options = _dump_json(list(DEFAULT_UPCOMING_HOURS))
                        row.updated_at = now
        return self.list_settings(tenant_id)

    def save_setting(self, tenant_id: int, reminder_type: str, **values: object) -> ReminderSetting:
        unknown = set(values) - SETTING_FIELDS
        if unknown:
            raise ValueError(f"unknown reminder setting fields: {', '.join(sorted(unknown))}")
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_ReminderSettingRow).where(
                        _ReminderSettingRow.tenant_id == tenant_id,
                        _ReminderSettingRow.reminder_type == reminder_type,
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = _ReminderSettingRow(
                        tenant_id=tenant_id,
                        reminder_type=reminder_type,
                        is_enabled=True,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                self._apply_setting_changes(row, values, now=now)
                session.flush()
                return _setting_from_row(row)

    def update_setting(self, tenant_id: int, setting_id: int, changes: dict[str, object]) -> ReminderSetting:
        unknown = set(changes) - SETTING_FIELDS
        if unknown:
            raise ValueError(f"unknown reminder setting fields: {', '.join(sorted(unknown))}")
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderSettingRow, setting_id)
                if row is None or row.tenant_id != tenant_id:
                    raise ReminderSettingNotFoundError(setting_id)
                self._apply_setting_changes(row, changes, now=_now_utc())
                return _setting_from_row(row)

    @staticmethod
    def _apply_setting_changes(row: _ReminderSettingRow, changes: dict[str, object], *, now: datetime) -> None:
        for key, value in changes.items():
            if key in {"timing_options", "channels"}:
                value = _dump_json(value)
            setattr(row, key, value)
        row.updated_at = now


def create_reminder_store(*, backend: str, database_url: str) -> ReminderStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderStore(database_url)
    if normalized == "inmemory":
        return InMemoryReminderStore()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
