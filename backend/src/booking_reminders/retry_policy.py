from __future__ import annotations

from datetime import datetime, timedelta

from .models import (
    STATUS_CLOSED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
    ReminderPatch,
    ReminderRecord,
)

MAX_SEND_ATTEMPTS = 3
# Delay before the 1st, 2nd and 3rd-or-later retry; saturates at the last entry.
BACKOFF_SCHEDULE: tuple[timedelta, ...] = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=60),
)


def backoff_for(retry_count: int) -> timedelta:
    index = min(max(retry_count, 1), len(BACKOFF_SCHEDULE)) - 1
    return BACKOFF_SCHEDULE[index]


def failure_patch(record: ReminderRecord, *, error: str, now: datetime) -> ReminderPatch:
    retry_count = record.retry_count + 1
    if retry_count >= MAX_SEND_ATTEMPTS:
        return ReminderPatch(
            status=STATUS_FAILED,
            retry_count=retry_count,
            next_retry_at=None,
            last_error_at=now,
            error_message=error,
        )
    return ReminderPatch(
        status=STATUS_PENDING,
        retry_count=retry_count,
        next_retry_at=now + backoff_for(retry_count),
        last_error_at=now,
        error_message=error,
    )


def delivered_patch(now: datetime) -> ReminderPatch:
    return ReminderPatch(status=STATUS_SENT, sent_at=now, next_retry_at=None, error_message=None)


def closed_patch(reason: str) -> ReminderPatch:
    return ReminderPatch(status=STATUS_CLOSED, next_retry_at=None, error_message=reason)


def is_stale(record: ReminderRecord, *, now: datetime, stale_after: timedelta | None) -> bool:
    if stale_after is None:
        return False
    return record.send_at + stale_after < now
