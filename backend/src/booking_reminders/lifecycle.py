from __future__ import annotations

import logging
from datetime import datetime

from .reminder_store import ReminderStore
from .scheduling import ReminderScheduler, ScheduleOutcome

logger = logging.getLogger(__name__)

CANCEL_REASON = "Appointment cancelled"


class AppointmentNotFoundError(KeyError):
    """Raised when a lifecycle hook targets an appointment the store does not know."""


class ReminderLifecycle:
    def __init__(self, *, store: ReminderStore, scheduler: ReminderScheduler) -> None:
        self._store = store
        self._scheduler = scheduler

    def on_created(
        self,
        tenant_id: int,
        appointment_id: int,
        appointment_start: datetime,
        customer_id: int | None = None,
    ) -> ScheduleOutcome:
        return self._scheduler.schedule_or_log(tenant_id, appointment_id, appointment_start, customer_id)

    def cancel(self, appointment_id: int, *, tenant_id: int | None = None) -> int:
        closed = self._store.close_pending_for_appointment(appointment_id, reason=CANCEL_REASON, tenant_id=tenant_id)
        if closed:
            logger.info("closed pending reminders appointment_id=%s count=%s", appointment_id, closed)
        return closed

    def reschedule(self, tenant_id: int, appointment_id: int, new_start: datetime) -> tuple[int, ScheduleOutcome]:
        """Drop every pending reminder and plan a fresh set against ``new_start``.

        Returns the number of closed records and the new schedule outcome.
        Raises ``AppointmentNotFoundError`` when the appointment is unknown;
        the pending records are closed before the lookup either way.
        """
        closed = self.cancel(appointment_id, tenant_id=tenant_id)
        appointment = self._store.get_appointment_with_joins(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        outcome = self._scheduler.schedule(tenant_id, appointment_id, new_start, appointment.customer_id)
        if not outcome.ok:
            logger.error(
                "reminder rescheduling failed tenant_id=%s appointment_id=%s error=%s",
                tenant_id,
                appointment_id,
                outcome.error,
            )
        return closed, outcome
