"""Turn tenant reminder settings into concrete send times.

Offsets are hours before the appointment start. Every computation is plain
subtraction on UTC instants, so calendar quirks (DST changes, month ends)
never shift a reminder.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime, timedelta, timezone
from numbers import Real

from .models import APPOINTMENT_UPCOMING, MAX_OFFSET_HOURS, ReminderSetting

DEFAULT_TIMING_LABEL = "24h"
TIMING_LABELS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "2h": timedelta(hours=2),
    "30m": timedelta(minutes=30),
}
DEFAULT_FALLBACK_LABELS: tuple[str, ...] = ("24h", "2h", "30m")
DEFAULT_UPCOMING_HOURS: tuple[float, ...] = (24.0, 2.0, 0.5)
DEFAULT_HOURS: tuple[float, ...] = (24.0,)

_RAW_TIMING_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([hm])\s*$", re.IGNORECASE)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_offset(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    number = float(value)
    if not math.isfinite(number) or number < 0 or number > MAX_OFFSET_HOURS:
        return None
    return number


def _subtract(appointment_start: datetime, delta: timedelta) -> datetime:
    start = _coerce_utc(appointment_start)
    try:
        return start - delta
    except OverflowError:
        pass
    try:
        return start - TIMING_LABELS[DEFAULT_TIMING_LABEL]
    except OverflowError:
        return start


def parse_timing_options(raw: object) -> list[float] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    parsed: list[float] = []
    for item in raw:
        offset = _as_offset(item)
        if offset is None:
            return None
        parsed.append(offset)
    return parsed


def resolve_timing_hours(setting: ReminderSetting) -> list[float]:
    """Return the hour offsets for ``setting``, farthest-out first."""
    options = parse_timing_options(setting.timing_options)
    if options:
        return sorted(set(options), reverse=True)

    hours_before = _as_offset(setting.hours_before)
    if hours_before is not None:
        return [hours_before]

    if setting.reminder_type == APPOINTMENT_UPCOMING:
        return list(DEFAULT_UPCOMING_HOURS)
    return list(DEFAULT_HOURS)


def _timing_delta(timing: str | float | int) -> timedelta:
    if not isinstance(timing, bool) and isinstance(timing, Real):
        offset = _as_offset(timing)
        return timedelta(hours=offset) if offset is not None else TIMING_LABELS[DEFAULT_TIMING_LABEL]

    normalized = str(timing).strip().lower()
    if normalized in TIMING_LABELS:
        return TIMING_LABELS[normalized]

    match = _RAW_TIMING_RE.match(normalized)
    if match is None:
        return TIMING_LABELS[DEFAULT_TIMING_LABEL]
    amount = float(match.group(1))
    hours = _as_offset(amount / 60 if match.group(2).lower() == "m" else amount)
    if hours is None:
        return TIMING_LABELS[DEFAULT_TIMING_LABEL]
    return timedelta(hours=hours)


def calculate_send_at(appointment_start: datetime, timing: str | float | int) -> datetime:
    """Subtract ``timing`` from the appointment start.

    Accepts the canonical labels (``24h``, ``2h``, ``30m``), raw
    ``<number>h`` / ``<number>m`` strings or a bare number of hours.
    Anything unparseable or out of range schedules at the 24 hour offset.
    """
    return _subtract(appointment_start, _timing_delta(timing))


def send_at_for_hours(appointment_start: datetime, hours: float) -> datetime:
    offset = _as_offset(hours)
    if offset is None:
        return _subtract(appointment_start, TIMING_LABELS[DEFAULT_TIMING_LABEL])
    return _subtract(appointment_start, timedelta(hours=offset))


def get_timing_label_from_hours(hours: float) -> str:
    if hours >= 1:
        return f"{round(hours)}h"
    return f"{round(hours * 60)}m"


def hours_until(appointment_start: datetime, send_at: datetime) -> float:
    delta = _coerce_utc(appointment_start) - _coerce_utc(send_at)
    return max(delta.total_seconds() / 3600, 0.0)
