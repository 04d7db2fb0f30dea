from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .dispatcher import ReminderDispatcher
from .models import DispatchSummary

logger = logging.getLogger(__name__)

JOB_ID = "dispatch_due_reminders"


class DispatchTrigger:
    """Runs one dispatch tick on a fixed interval in a background thread.

    A tick that overruns the interval is never overlapped by the next one;
    missed runs are coalesced into a single tick.
    """

    def __init__(self, *, dispatcher: ReminderDispatcher, interval_seconds: int = 60) -> None:
        if interval_seconds < 1:
            raise ValueError("interval_seconds must be at least 1")
        self._dispatcher = dispatcher
        self._interval_seconds = interval_seconds
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._is_started = False

    @property
    def is_running(self) -> bool:
        return self._is_started

    def start(self) -> None:
        if self._is_started:
            logger.warning("reminder dispatch trigger is already started")
            return
        self._scheduler.add_job(
            self.run_tick,
            IntervalTrigger(seconds=self._interval_seconds),
            id=JOB_ID,
            name="Dispatch due appointment reminders",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._is_started = True
        logger.info("reminder dispatch trigger started interval_seconds=%s", self._interval_seconds)

    def stop(self) -> None:
        if not self._is_started:
            return
        self._scheduler.shutdown(wait=True)
        self._is_started = False
        logger.info("reminder dispatch trigger stopped")

    def run_tick(self) -> DispatchSummary:
        try:
            summary = self._dispatcher.dispatch_due()
        except Exception as exc:
            logger.exception("reminder dispatch tick failed")
            return DispatchSummary(error=str(exc) or type(exc).__name__)
        if summary.error:
            logger.error("reminder dispatch tick abandoned: %s", summary.error)
        elif summary.processed:
            logger.info(
                "reminder dispatch tick processed=%s sent=%s failed=%s skipped=%s",
                summary.processed,
                summary.sent,
                summary.failed,
                summary.skipped,
            )
        return summary
