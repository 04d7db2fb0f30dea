from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Booking Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    notifier_from_name: str = "Bookings"
    dispatch_batch_size: int = 50
    dispatch_interval_seconds: int = 60
    dispatch_trigger_enabled: bool = False
    claim_lease_seconds: int = 300
    # 0 disables the staleness ceiling.
    stale_after_hours: float = 0.0
    default_timezone: str = "UTC"
    admin_api_key: str = ""
    cors_allow_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"

    @property
    def stale_after(self) -> timedelta | None:
        if self.stale_after_hours <= 0:
            return None
        return timedelta(hours=self.stale_after_hours)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Booking Reminders"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30, minimum=1),
        notifier_from_name=os.getenv("NOTIFIER_FROM_NAME", "Bookings"),
        dispatch_batch_size=_as_int(os.getenv("REMINDER_DISPATCH_BATCH_SIZE"), 50, minimum=1),
        dispatch_interval_seconds=_as_int(os.getenv("REMINDER_DISPATCH_INTERVAL_SECONDS"), 60, minimum=1),
        dispatch_trigger_enabled=_as_bool(os.getenv("REMINDER_DISPATCH_TRIGGER_ENABLED"), False),
        claim_lease_seconds=_as_int(os.getenv("REMINDER_CLAIM_LEASE_SECONDS"), 300, minimum=1),
        stale_after_hours=max(_as_float(os.getenv("REMINDER_STALE_AFTER_HOURS"), 0.0), 0.0),
        default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
        admin_api_key=os.getenv("REMINDERS_ADMIN_API_KEY", ""),
        cors_allow_origins=_as_csv_tuple(os.getenv("CORS_ALLOW_ORIGINS"), ("http://localhost:3000",)),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.reminder_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.notifier_enabled and settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if _is_placeholder(settings.notifier_api_key, defaults={"dev-notifier-key"}):
            issues.append("NOTIFIER_API_KEY is empty or uses a placeholder value")
    if _is_placeholder(
        settings.admin_api_key,
        defaults={"dev-admin-key", "change-me-in-production"},
    ):
        issues.append("REMINDERS_ADMIN_API_KEY is empty or uses a development placeholder")
    return tuple(issues)
