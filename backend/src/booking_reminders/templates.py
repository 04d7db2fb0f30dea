from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import AppointmentDetails

FALLBACK_SUBJECT = "Appointment Reminder"
FALLBACK_BODY = "Your appointment is coming up soon."

DEFAULT_CLIENT_NAME = "Valued Client"
DEFAULT_SERVICE_NAME = "your service"
DEFAULT_STAFF_NAME = "our team"
DEFAULT_BUSINESS_NAME = "our business"
DEFAULT_HOURS = "24"
DEFAULT_DAYS = "7"

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_]+)\}")


@dataclass(frozen=True)
class TemplateData:
    client_name: str | None = None
    first_name: str | None = None
    service_name: str | None = None
    appointment_date: str | None = None
    appointment_time: str | None = None
    staff_name: str | None = None
    business_name: str | None = None
    hours: str | None = None
    days: str | None = None


def _placeholder_values(data: TemplateData) -> dict[str, str]:
    client_name = data.client_name or DEFAULT_CLIENT_NAME
    first_name = data.first_name
    if not first_name and data.client_name:
        first_name = data.client_name.split()[0]
    business_name = data.business_name or DEFAULT_BUSINESS_NAME
    return {
        "client_name": client_name,
        "first_name": first_name or DEFAULT_CLIENT_NAME,
        "customer_name": client_name,
        "service_name": data.service_name or DEFAULT_SERVICE_NAME,
        "appointment_date": data.appointment_date or "",
        "appointment_time": data.appointment_time or "",
        "staff_name": data.staff_name or DEFAULT_STAFF_NAME,
        "business_name": business_name,
        "company_name": business_name,
        "hours": data.hours or DEFAULT_HOURS,
        "days": data.days or DEFAULT_DAYS,
    }


def render_template(template: str | None, data: TemplateData) -> str:
    """Substitute the known placeholders in ``template``.

    Placeholder names are matched case-insensitively. Unknown placeholders
    are left exactly as written.
    """
    if not template:
        return ""
    values = _placeholder_values(data)

    def _replace(match: re.Match[str]) -> str:
        return values.get(match.group(1).lower(), match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, template)


def _tenant_settings(raw: dict[str, object] | str | None) -> dict[str, object]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}


def _zone(name: str | None, default_timezone: str) -> ZoneInfo | timezone:
    for candidate in (name, default_timezone):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return timezone.utc


def format_appointment_datetime(start_time: datetime, tz_name: str | None, *, default_timezone: str = "UTC") -> tuple[str, str]:
    """Return ``("Tuesday, June 10, 2025", "3:00 PM")`` in the tenant's zone."""
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)
    local = start_time.astimezone(_zone(tz_name, default_timezone))
    date_str = f"{local:%A}, {local:%B} {local.day}, {local.year}"
    hour = local.hour % 12 or 12
    time_str = f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"
    return date_str, time_str


def _format_number(value: float) -> str:
    rounded = round(value, 1)
    if rounded == int(rounded):
        return str(int(rounded))
    return str(rounded)


def business_name_for(appointment: AppointmentDetails) -> str:
    settings = _tenant_settings(appointment.tenant_settings)
    company_name = settings.get("company_name")
    if isinstance(company_name, str) and company_name.strip():
        return company_name.strip()
    return appointment.tenant_name or DEFAULT_BUSINESS_NAME


def build_template_data(
    appointment: AppointmentDetails,
    *,
    hours: float | None = None,
    default_timezone: str = "UTC",
) -> TemplateData:
    settings = _tenant_settings(appointment.tenant_settings)
    tz_name = settings.get("timezone")
    date_str, time_str = format_appointment_datetime(
        appointment.start_time,
        tz_name if isinstance(tz_name, str) else None,
        default_timezone=default_timezone,
    )
    client_name = appointment.client_name or None
    return TemplateData(
        client_name=client_name,
        first_name=appointment.first_name or None,
        service_name=appointment.service_name,
        appointment_date=date_str,
        appointment_time=time_str,
        staff_name=appointment.staff_name,
        business_name=business_name_for(appointment),
        hours=_format_number(hours) if hours is not None else None,
        days=str(int(hours // 24)) if hours is not None else None,
    )


def render_notification_html(title: str, body: str, *, business_name: str | None = None) -> str:
    escaped_title = html.escape(title)
    escaped_body = html.escape(body).replace("\n", "<br>")
    footer = html.escape(business_name or DEFAULT_BUSINESS_NAME)
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #111827;">{escaped_title}</h2>'
        f'<p style="color: #374151; line-height: 1.6;">{escaped_body}</p>'
        '<hr style="border: none; border-top: 1px solid #e5e7eb;">'
        f'<p style="color: #9ca3af; font-size: 12px;">Sent by {footer}</p>'
        "</div>"
    )
