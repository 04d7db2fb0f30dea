from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


@dataclass(frozen=True)
class InAppNotification:
    tenant_id: int
    title: str
    message: str = ""
    user_id: int | None = None
    type: str = "general"
    category: str = "info"
    data: dict[str, object] = field(default_factory=dict)
    link: str | None = None
    icon: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class StoredNotification:
    notification_id: int
    notification: InAppNotification
    is_read: bool
    created_at: datetime


class InAppNotifier(Protocol):
    def push(self, notification: InAppNotification) -> int: ...


class InMemoryInAppNotifier:
    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = count(1)
        self.notifications: list[StoredNotification] = []

    def push(self, notification: InAppNotification) -> int:
        if not notification.title.strip():
            raise ValueError("notification title must not be empty")
        with self._lock:
            notification_id = next(self._ids)
            self.notifications.append(
                StoredNotification(
                    notification_id=notification_id,
                    notification=notification,
                    is_read=False,
                    created_at=datetime.now(timezone.utc),
                )
            )
            return notification_id


class InAppNotificationsBase(DeclarativeBase):
    pass


class _NotificationRow(InAppNotificationsBase):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    category: Mapped[str] = mapped_column(String(30), nullable=False, default="info")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[str | None] = mapped_column(Text, nullable=True)
    link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    icon: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyInAppNotifier:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for the SQL notification center")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            InAppNotificationsBase.metadata.create_all(self._engine)

    def push(self, notification: InAppNotification) -> int:
        if not notification.title.strip():
            raise ValueError("notification title must not be empty")
        with self._session_factory() as session:
            with session.begin():
                row = _NotificationRow(
                    tenant_id=notification.tenant_id,
                    user_id=notification.user_id,
                    type=notification.type,
                    category=notification.category,
                    title=notification.title,
                    message=notification.message,
                    data=json.dumps(notification.data, default=str) if notification.data else None,
                    link=notification.link,
                    icon=notification.icon,
                    expires_at=notification.expires_at,
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                return row.id


def create_in_app_notifier(*, backend: str, database_url: str) -> InAppNotifier:
    if backend.strip().lower() == "postgres":
        return SqlAlchemyInAppNotifier(database_url)
    return InMemoryInAppNotifier()
