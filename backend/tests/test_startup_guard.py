from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

from booking_reminders.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "REMINDERS_APP_NAME": None,
        "REMINDERS_ADMIN_API_KEY": "prod-admin-key-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "REMINDER_STORE_BACKEND": "inmemory",
        "DATABASE_URL": None,
        "NOTIFIER_ENABLED": "false",
        "NOTIFIER_SENDER_TYPE": "stub",
        "REMINDER_DISPATCH_TRIGGER_ENABLED": None,
    }


def test_create_app_starts_with_stub_delivery() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Booking Reminders"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_postgres_has_no_database_url() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "REMINDER_STORE_BACKEND": "postgres"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "DATABASE_URL is required" in message
        assert "REMINDER_STORE_BACKEND=inmemory" in message
    finally:
        _restore_env(previous)


def test_create_app_warn_mode_only_logs(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "REMINDERS_ADMIN_API_KEY": None,
        }
    )
    try:
        create_app()
        assert "REMINDERS_ADMIN_API_KEY is empty" in caplog.text
    finally:
        _restore_env(previous)


def test_lifespan_starts_and_stops_the_dispatch_trigger() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "REMINDER_DISPATCH_TRIGGER_ENABLED": "true",
            "REMINDER_DISPATCH_INTERVAL_SECONDS": "3600",
        }
    )
    try:
        app = create_app()
        with TestClient(app):
            trigger = app.state.dispatch_trigger
            assert trigger is not None
            assert trigger.is_running is True
        assert trigger.is_running is False
    finally:
        _restore_env(previous)
