from __future__ import annotations

import hmac
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request

from .config import get_settings
from .engine import ReminderEngine, create_reminder_engine
from .lifecycle import AppointmentNotFoundError
from .models import (
    APPOINTMENT_UPCOMING,
    AppointmentRemindersResponse,
    CancelResponse,
    DispatchSummary,
    ReminderRecord,
    ReminderRecordResponse,
    ReminderSetting,
    ReminderSettingResponse,
    ReminderSettingUpdateRequest,
    RescheduleRequest,
    ScheduleOutcomeResponse,
    ScheduleRequest,
    TimingPreviewItem,
    TimingPreviewResponse,
)
from .reminder_store import ReminderSettingNotFoundError
from .scheduling import ScheduleOutcome, parse_channels
from .timing import (
    DEFAULT_UPCOMING_HOURS,
    get_timing_label_from_hours,
    parse_timing_options,
    resolve_timing_hours,
    send_at_for_hours,
)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])
engine: ReminderEngine = create_reminder_engine(_settings)


def reset_runtime_state_for_tests() -> None:
    engine.store.reset()


def _require_tenant(request: Request) -> int:
    raw = request.headers.get("X-Tenant-ID", "").strip()
    if not raw:
        raise HTTPException(400, "X-Tenant-ID header required")
    try:
        tenant_id = int(raw)
    except ValueError as exc:
        raise HTTPException(400, "X-Tenant-ID must be an integer") from exc
    if tenant_id < 1:
        raise HTTPException(400, "X-Tenant-ID must be positive")
    return tenant_id


def _require_admin(request: Request) -> None:
    expected = _settings.admin_api_key.strip()
    provided = request.headers.get("X-Admin-Key", "").strip()
    if not expected or not provided:
        raise HTTPException(401, "admin key required")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid admin key")


def _setting_response(setting: ReminderSetting) -> ReminderSettingResponse:
    return ReminderSettingResponse(
        setting_id=setting.setting_id,
        tenant_id=setting.tenant_id,
        reminder_type=setting.reminder_type,
        is_enabled=setting.is_enabled,
        hours_before=setting.hours_before,
        timing_options=parse_timing_options(setting.timing_options),
        channels=parse_channels(setting.channels),
        template_subject=setting.template_subject,
        template_body=setting.template_body,
        updated_at=setting.updated_at,
    )


def _record_response(record: ReminderRecord) -> ReminderRecordResponse:
    return ReminderRecordResponse(
        reminder_id=record.reminder_id,
        appointment_id=record.appointment_id,
        reminder_type=record.reminder_type,
        method=record.method,
        status=record.status,  # type: ignore[arg-type]
        send_at=record.send_at,
        retry_count=record.retry_count,
        next_retry_at=record.next_retry_at,
        sent_at=record.sent_at,
        last_error_at=record.last_error_at,
        error_message=record.error_message,
    )


def _outcome_response(outcome: ScheduleOutcome, *, closed_count: int = 0) -> ScheduleOutcomeResponse:
    return ScheduleOutcomeResponse(
        appointment_id=outcome.appointment_id,
        ok=outcome.ok,
        created_count=outcome.created_count,
        reminder_ids=outcome.reminder_ids,
        in_app_pushed=outcome.in_app_pushed,
        skipped_channels=outcome.skipped_channels,
        used_default=outcome.used_default,
        closed_count=closed_count,
        error=outcome.error,
    )


@router.get("/settings", response_model=list[ReminderSettingResponse])
def list_reminder_settings(request: Request) -> list[ReminderSettingResponse]:
    tenant_id = _require_tenant(request)
    return [_setting_response(setting) for setting in engine.store.ensure_default_settings(tenant_id)]


@router.patch("/settings/{setting_id}", response_model=ReminderSettingResponse)
def update_reminder_setting(
    setting_id: int,
    payload: ReminderSettingUpdateRequest,
    request: Request,
) -> ReminderSettingResponse:
    tenant_id = _require_tenant(request)
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "no fields to update")
    try:
        setting = engine.store.update_setting(tenant_id, setting_id, changes)
    except ReminderSettingNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder setting not found: {setting_id}") from exc
    return _setting_response(setting)


@router.post("/process", response_model=DispatchSummary)
def process_due_reminders(request: Request) -> DispatchSummary:
    _require_admin(request)
    return engine.dispatcher.dispatch_due()


@router.post("/appointments/{appointment_id}/schedule", response_model=ScheduleOutcomeResponse)
def schedule_appointment_reminders(
    appointment_id: int,
    payload: ScheduleRequest,
    request: Request,
) -> ScheduleOutcomeResponse:
    tenant_id = _require_tenant(request)
    outcome = engine.lifecycle.on_created(tenant_id, appointment_id, payload.start_time, payload.customer_id)
    return _outcome_response(outcome)


@router.post("/appointments/{appointment_id}/cancel", response_model=CancelResponse)
def cancel_appointment_reminders(appointment_id: int, request: Request) -> CancelResponse:
    tenant_id = _require_tenant(request)
    closed = engine.lifecycle.cancel(appointment_id, tenant_id=tenant_id)
    return CancelResponse(appointment_id=appointment_id, closed_count=closed)


@router.post("/appointments/{appointment_id}/reschedule", response_model=ScheduleOutcomeResponse)
def reschedule_appointment_reminders(
    appointment_id: int,
    payload: RescheduleRequest,
    request: Request,
) -> ScheduleOutcomeResponse:
    tenant_id = _require_tenant(request)
    try:
        closed, outcome = engine.lifecycle.reschedule(tenant_id, appointment_id, payload.start_time)
    except AppointmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"appointment not found: {appointment_id}") from exc
    return _outcome_response(outcome, closed_count=closed)


@router.get("/appointments/{appointment_id}", response_model=AppointmentRemindersResponse)
def get_appointment_reminders(appointment_id: int, request: Request) -> AppointmentRemindersResponse:
    tenant_id = _require_tenant(request)
    records = engine.store.list_reminders_for_appointment(appointment_id, tenant_id=tenant_id)
    return AppointmentRemindersResponse(
        appointment_id=appointment_id,
        reminders=[_record_response(record) for record in records],
    )


@router.get("/timing-preview", response_model=TimingPreviewResponse)
def preview_reminder_timings(
    request: Request,
    start: datetime = Query(..., description="Appointment start time (ISO 8601)"),
) -> TimingPreviewResponse:
    tenant_id = _require_tenant(request)
    setting = engine.store.get_setting_for_tenant(tenant_id, APPOINTMENT_UPCOMING, enabled_only=True)
    hours = resolve_timing_hours(setting) if setting is not None else list(DEFAULT_UPCOMING_HOURS)
    timings = [
        TimingPreviewItem(
            hours=offset,
            label=get_timing_label_from_hours(offset),
            send_at=send_at_for_hours(start, offset),
        )
        for offset in hours
    ]
    return TimingPreviewResponse(start_time=start, used_default=setting is None, timings=timings)
