from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .dispatcher import ReminderDispatcher
from .in_app import InAppNotifier, create_in_app_notifier
from .lifecycle import ReminderLifecycle
from .notifier import DisabledSmsSender, EmailSender, SmsSender, create_email_sender
from .reminder_store import ReminderStore, create_reminder_store
from .scheduling import ReminderScheduler


@dataclass(frozen=True)
class ReminderEngine:
    store: ReminderStore
    email_sender: EmailSender
    sms_sender: SmsSender
    in_app_notifier: InAppNotifier
    scheduler: ReminderScheduler
    dispatcher: ReminderDispatcher
    lifecycle: ReminderLifecycle


def create_reminder_engine(
    settings: Settings,
    *,
    store: ReminderStore | None = None,
    email_sender: EmailSender | None = None,
    sms_sender: SmsSender | None = None,
    in_app_notifier: InAppNotifier | None = None,
) -> ReminderEngine:
    if store is None:
        store = create_reminder_store(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        )
    if email_sender is None:
        email_sender = create_email_sender(
            sender_type=settings.notifier_sender_type,
            enabled=settings.notifier_enabled,
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
            from_name=settings.notifier_from_name,
        )
    if sms_sender is None:
        sms_sender = DisabledSmsSender()
    if in_app_notifier is None:
        in_app_notifier = create_in_app_notifier(
            backend=settings.reminder_store_backend,
            database_url=settings.database_url,
        )

    scheduler = ReminderScheduler(store=store, in_app_notifier=in_app_notifier)
    dispatcher = ReminderDispatcher(
        store=store,
        email_sender=email_sender,
        sms_sender=sms_sender,
        batch_size=settings.dispatch_batch_size,
        lease_seconds=settings.claim_lease_seconds,
        stale_after=settings.stale_after,
        default_timezone=settings.default_timezone,
        from_name=settings.notifier_from_name,
    )
    return ReminderEngine(
        store=store,
        email_sender=email_sender,
        sms_sender=sms_sender,
        in_app_notifier=in_app_notifier,
        scheduler=scheduler,
        dispatcher=dispatcher,
        lifecycle=ReminderLifecycle(store=store, scheduler=scheduler),
    )
