from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from booking_reminders import api as api_module
from booking_reminders.engine import create_reminder_engine
from booking_reminders.in_app import InMemoryInAppNotifier
from booking_reminders.main import create_app
from booking_reminders.models import APPOINTMENT_UPCOMING, AppointmentDetails
from booking_reminders.notifier import DisabledSmsSender, StubEmailSender
from booking_reminders.reminder_store import InMemoryReminderStore

PREFIX = "/api/v1/reminders"
TENANT = {"X-Tenant-ID": "1"}
ADMIN = {"X-Admin-Key": "test-admin-key"}


def _client() -> TestClient:
    api_module._settings = replace(api_module._settings, admin_api_key="test-admin-key")
    api_module.engine = create_reminder_engine(
        api_module._settings,
        store=InMemoryReminderStore(),
        email_sender=StubEmailSender(enabled=True),
        in_app_notifier=InMemoryInAppNotifier(),
    )
    return TestClient(create_app())


def _save_appointment(start: datetime, *, status: str = "scheduled") -> None:
    api_module.engine.store.save_appointment(
        AppointmentDetails(
            appointment_id=10,
            tenant_id=1,
            customer_id=42,
            start_time=start,
            status=status,
            first_name="Ada",
            last_name="Lovelace",
            email="ada@example.com",
            service_name="Facial",
            tenant_settings={"company_name": "Glow Spa"},
        )
    )


def test_engine_defaults_to_the_disabled_sms_transport() -> None:
    engine = create_reminder_engine(
        api_module._settings,
        store=InMemoryReminderStore(),
        email_sender=StubEmailSender(enabled=True),
        in_app_notifier=InMemoryInAppNotifier(),
    )

    assert isinstance(engine.sms_sender, DisabledSmsSender)


def test_settings_are_seeded_on_first_read() -> None:
    client = _client()

    response = client.get(f"{PREFIX}/settings", headers=TENANT)

    assert response.status_code == 200
    settings = response.json()
    assert len(settings) == 9
    upcoming = next(row for row in settings if row["reminder_type"] == APPOINTMENT_UPCOMING)
    assert upcoming["timing_options"] == [24.0, 2.0, 0.5]
    assert upcoming["channels"] == ["in_app", "email"]
    assert len(client.get(f"{PREFIX}/settings", headers=TENANT).json()) == 9


def test_tenant_header_is_required() -> None:
    client = _client()

    assert client.get(f"{PREFIX}/settings").status_code == 400
    assert client.get(f"{PREFIX}/settings", headers={"X-Tenant-ID": "abc"}).status_code == 400
    assert client.get(f"{PREFIX}/settings", headers={"X-Tenant-ID": "0"}).status_code == 400


def test_update_setting() -> None:
    client = _client()
    settings = client.get(f"{PREFIX}/settings", headers=TENANT).json()
    upcoming = next(row for row in settings if row["reminder_type"] == APPOINTMENT_UPCOMING)

    response = client.patch(
        f"{PREFIX}/settings/{upcoming['setting_id']}",
        headers=TENANT,
        json={"timing_options": [6, 1], "channels": ["EMAIL", "email"], "template_subject": "See you soon"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["timing_options"] == [6.0, 1.0]
    assert body["channels"] == ["email"]
    assert body["template_subject"] == "See you soon"
    assert body["is_enabled"] is True


def test_update_setting_rejects_bad_requests() -> None:
    client = _client()
    settings = client.get(f"{PREFIX}/settings", headers=TENANT).json()
    setting_id = settings[0]["setting_id"]

    assert client.patch(f"{PREFIX}/settings/{setting_id}", headers=TENANT, json={}).status_code == 400
    assert (
        client.patch(f"{PREFIX}/settings/{setting_id}", headers=TENANT, json={"channels": ["pager"]}).status_code
        == 422
    )
    assert (
        client.patch(f"{PREFIX}/settings/{setting_id}", headers=TENANT, json={"timing_options": [-1]}).status_code
        == 422
    )
    assert (
        client.patch(f"{PREFIX}/settings/{setting_id}", headers=TENANT, json={"timing_options": [1e12]}).status_code
        == 422
    )
    other_tenant = client.patch(
        f"{PREFIX}/settings/{setting_id}",
        headers={"X-Tenant-ID": "2"},
        json={"is_enabled": False},
    )
    assert other_tenant.status_code == 404
    assert client.patch(f"{PREFIX}/settings/9999", headers=TENANT, json={"is_enabled": False}).status_code == 404


def test_process_requires_admin_key() -> None:
    client = _client()

    assert client.post(f"{PREFIX}/process").status_code == 401
    assert client.post(f"{PREFIX}/process", headers={"X-Admin-Key": "wrong"}).status_code == 401


def test_schedule_then_process_delivers_due_reminders() -> None:
    client = _client()
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    _save_appointment(start)

    scheduled = client.post(
        f"{PREFIX}/appointments/10/schedule",
        headers=TENANT,
        json={"start_time": start.isoformat(), "customer_id": 42},
    )
    assert scheduled.status_code == 200
    outcome = scheduled.json()
    assert outcome["ok"] is True
    assert outcome["used_default"] is True
    assert outcome["created_count"] == 3

    processed = client.post(f"{PREFIX}/process", headers=ADMIN)
    assert processed.status_code == 200
    assert processed.json() == {"processed": 2, "sent": 2, "failed": 0, "skipped": 0, "error": None}
    sender = api_module.engine.email_sender
    assert isinstance(sender, StubEmailSender)
    assert [message.to for message in sender.sent] == ["ada@example.com", "ada@example.com"]

    reminders = client.get(f"{PREFIX}/appointments/10", headers=TENANT).json()["reminders"]
    assert [row["status"] for row in reminders] == ["sent", "sent", "pending"]


def test_cancel_closes_pending_reminders() -> None:
    client = _client()
    start = datetime.now(timezone.utc) + timedelta(days=3)
    client.post(f"{PREFIX}/appointments/10/schedule", headers=TENANT, json={"start_time": start.isoformat()})

    first = client.post(f"{PREFIX}/appointments/10/cancel", headers=TENANT)
    second = client.post(f"{PREFIX}/appointments/10/cancel", headers=TENANT)

    assert first.json() == {"appointment_id": 10, "closed_count": 3}
    assert second.json() == {"appointment_id": 10, "closed_count": 0}
    reminders = client.get(f"{PREFIX}/appointments/10", headers=TENANT).json()["reminders"]
    assert {row["status"] for row in reminders} == {"closed"}
    assert {row["error_message"] for row in reminders} == {"Appointment cancelled"}


def test_reschedule_replaces_pending_reminders() -> None:
    client = _client()
    start = datetime.now(timezone.utc) + timedelta(days=3)
    new_start = start + timedelta(days=2)
    _save_appointment(start)
    client.post(f"{PREFIX}/appointments/10/schedule", headers=TENANT, json={"start_time": start.isoformat()})

    response = client.post(
        f"{PREFIX}/appointments/10/reschedule",
        headers=TENANT,
        json={"start_time": new_start.isoformat()},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["closed_count"] == 3
    assert body["created_count"] == 3
    reminders = client.get(f"{PREFIX}/appointments/10", headers=TENANT).json()["reminders"]
    assert sorted(row["status"] for row in reminders) == ["closed"] * 3 + ["pending"] * 3


def test_reschedule_unknown_appointment_returns_404() -> None:
    client = _client()
    start = datetime.now(timezone.utc) + timedelta(days=3)

    response = client.post(
        f"{PREFIX}/appointments/77/reschedule",
        headers=TENANT,
        json={"start_time": start.isoformat()},
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "appointment not found: 77"


def test_reminders_are_scoped_to_tenant() -> None:
    client = _client()
    start = datetime.now(timezone.utc) + timedelta(days=3)
    client.post(f"{PREFIX}/appointments/10/schedule", headers=TENANT, json={"start_time": start.isoformat()})

    other = client.get(f"{PREFIX}/appointments/10", headers={"X-Tenant-ID": "2"})

    assert other.status_code == 200
    assert other.json() == {"appointment_id": 10, "reminders": []}


def test_timing_preview_uses_defaults_then_tenant_setting() -> None:
    client = _client()

    preview = client.get(f"{PREFIX}/timing-preview", headers=TENANT, params={"start": "2026-05-01T15:00:00Z"})
    assert preview.status_code == 200
    body = preview.json()
    assert body["used_default"] is True
    assert [item["label"] for item in body["timings"]] == ["24h", "2h", "30m"]

    api_module.engine.store.save_setting(1, APPOINTMENT_UPCOMING, timing_options=[1, 48])
    custom = client.get(f"{PREFIX}/timing-preview", headers=TENANT, params={"start": "2026-05-01T15:00:00Z"}).json()
    assert custom["used_default"] is False
    assert [item["label"] for item in custom["timings"]] == ["48h", "1h"]
    assert datetime.fromisoformat(custom["timings"][1]["send_at"].replace("Z", "+00:00")) == datetime(
        2026, 5, 1, 14, 0, tzinfo=timezone.utc
    )
