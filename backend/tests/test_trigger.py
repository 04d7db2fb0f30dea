from __future__ import annotations

import logging

import pytest

from booking_reminders.models import DispatchSummary
from booking_reminders.trigger import JOB_ID, DispatchTrigger


class _FakeDispatcher:
    def __init__(self, summary: DispatchSummary | None = None, error: Exception | None = None) -> None:
        self.summary = summary or DispatchSummary()
        self.error = error
        self.calls = 0

    def dispatch_due(self) -> DispatchSummary:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.summary


def test_run_tick_returns_dispatch_summary(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = _FakeDispatcher(DispatchSummary(processed=3, sent=2, failed=1))
    trigger = DispatchTrigger(dispatcher=dispatcher)  # type: ignore[arg-type]

    with caplog.at_level(logging.INFO, logger="booking_reminders.trigger"):
        summary = trigger.run_tick()

    assert dispatcher.calls == 1
    assert (summary.processed, summary.sent, summary.failed) == (3, 2, 1)
    assert "processed=3 sent=2 failed=1 skipped=0" in caplog.text


def test_run_tick_never_raises() -> None:
    trigger = DispatchTrigger(dispatcher=_FakeDispatcher(error=RuntimeError("boom")))  # type: ignore[arg-type]

    summary = trigger.run_tick()

    assert summary.processed == 0
    assert summary.error == "boom"


def test_run_tick_logs_abandoned_ticks(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = _FakeDispatcher(DispatchSummary(error="could not connect to server"))
    trigger = DispatchTrigger(dispatcher=dispatcher)  # type: ignore[arg-type]

    with caplog.at_level(logging.ERROR, logger="booking_reminders.trigger"):
        trigger.run_tick()

    assert "could not connect to server" in caplog.text


def test_start_registers_a_single_non_overlapping_job() -> None:
    trigger = DispatchTrigger(dispatcher=_FakeDispatcher(), interval_seconds=3600)  # type: ignore[arg-type]

    trigger.start()
    try:
        trigger.start()
        assert trigger.is_running is True
        jobs = trigger._scheduler.get_jobs()
        assert [job.id for job in jobs] == [JOB_ID]
        assert jobs[0].max_instances == 1
        assert jobs[0].coalesce is True
    finally:
        trigger.stop()

    assert trigger.is_running is False
    trigger.stop()


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        DispatchTrigger(dispatcher=_FakeDispatcher(), interval_seconds=0)  # type: ignore[arg-type]
