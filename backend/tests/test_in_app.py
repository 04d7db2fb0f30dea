from __future__ import annotations

from pathlib import Path

import pytest

from booking_reminders.in_app import (
    InAppNotification,
    InMemoryInAppNotifier,
    SqlAlchemyInAppNotifier,
    create_in_app_notifier,
)


def test_in_memory_notifier_assigns_ids() -> None:
    notifier = InMemoryInAppNotifier()

    first = notifier.push(InAppNotification(tenant_id=1, title="Appointment Reminder"))
    second = notifier.push(InAppNotification(tenant_id=1, title="Appointment Reminder", user_id=42))

    assert (first, second) == (1, 2)
    assert [stored.is_read for stored in notifier.notifications] == [False, False]
    assert notifier.notifications[1].notification.user_id == 42


def test_blank_title_is_rejected() -> None:
    with pytest.raises(ValueError):
        InMemoryInAppNotifier().push(InAppNotification(tenant_id=1, title="  "))


def test_sql_notifier_persists_rows(tmp_path: Path) -> None:
    database_url = f"sqlite:///{tmp_path / 'notifications.db'}"
    notifier = SqlAlchemyInAppNotifier(database_url)

    notification_id = notifier.push(
        InAppNotification(
            tenant_id=3,
            title="Appointment Reminder",
            message="See you tomorrow",
            type="reminder",
            category="reminder",
            data={"appointment_id": 10},
            icon="calendar",
        )
    )

    assert notification_id == 1
    reopened = SqlAlchemyInAppNotifier(database_url)
    assert reopened.push(InAppNotification(tenant_id=4, title="Appointment Reminder")) == 2


def test_create_in_app_notifier_backends(tmp_path: Path) -> None:
    assert isinstance(create_in_app_notifier(backend="inmemory", database_url=""), InMemoryInAppNotifier)
    sql_notifier = create_in_app_notifier(backend="postgres", database_url=f"sqlite:///{tmp_path / 'n.db'}")
    assert isinstance(sql_notifier, SqlAlchemyInAppNotifier)
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_in_app_notifier(backend="postgres", database_url="")
