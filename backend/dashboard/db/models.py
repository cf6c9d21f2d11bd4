"""SQLAlchemy ORM models for the dashboard data store."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import CITEXT, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .base import Base


class UserRole(str, enum.Enum):
    """Role associated with a user account."""

    ADMIN = "admin"
    POWERUSER = "poweruser"
    USER = "user"


ROLE_CAPABILITIES: dict[UserRole, frozenset[str]] = {
    UserRole.ADMIN: frozenset(
        {
            "dashboard.view",
            "settings.manage",
            "users.view",
            "users.manage",
            "security.manage",
            "sso.manage",
        }
    ),
    UserRole.POWERUSER: frozenset({"dashboard.view", "settings.manage", "users.view"}),
    UserRole.USER: frozenset({"dashboard.view"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (SQLite drops tzinfo)."""

    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


JSON_DOCUMENT = JSON().with_variant(JSONB(), "postgresql")


class CaseInsensitiveText(TypeDecorator):
    """Case-insensitive text compatible with SQLite and PostgreSQL CITEXT."""

    impl = String
    cache_ok = True

    def __init__(self, length: int = 320) -> None:
        super().__init__(length)
        self.length = length

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(CITEXT())
        return dialect.type_descriptor(String(self.length))


class User(Base):
    """Dashboard account with its credential and lockout state."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("sso_provider", "sso_id", name="uq_users_sso_identity"),
        CheckConstraint(
            "password_hash IS NOT NULL OR (sso_provider IS NOT NULL AND sso_id IS NOT NULL)",
            name="auth_method",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(CaseInsensitiveText(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(CaseInsensitiveText(), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    avatar: Mapped[Optional[str]] = mapped_column(String(16))
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=lambda enum_cls: [item.value for item in enum_cls]),
        nullable=False,
        default=UserRole.USER,
        server_default=UserRole.USER.value,
    )
    active: Mapped[bool] = mapped_column(
        "is_active", Boolean, nullable=False, default=True, server_default=text("true")
    )
    failed_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_failed_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    login_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    sso_provider: Mapped[Optional[str]] = mapped_column(String(512))
    sso_id: Mapped[Optional[str]] = mapped_column(String(255))
    groups: Mapped[List[str]] = mapped_column(JSON_DOCUMENT, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def permissions(self) -> list[str]:
        return sorted(ROLE_CAPABILITIES.get(UserRole(self.role), frozenset()))

    @property
    def shown_name(self) -> str:
        return self.display_name or self.name or self.username


class Setting(Base):
    """System-wide (``user_id`` NULL) or per-user key/value entry."""

    __tablename__ = "settings"
    __table_args__ = (
        UniqueConstraint("user_id", "key", name="uq_settings_user_id_key"),
        Index("ix_settings_key", "key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )


class ActivityLog(Base):
    """Security relevant event recorded for auditing."""

    __tablename__ = "activity_log"
    __table_args__ = (
        Index("ix_activity_log_user_id", "user_id"),
        Index("ix_activity_log_action", "action"),
        Index("ix_activity_log_occurred_at", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
    metadata_json: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON_DOCUMENT, nullable=False, default=dict
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


__all__ = [
    "ActivityLog",
    "CaseInsensitiveText",
    "ROLE_CAPABILITIES",
    "Setting",
    "User",
    "UserRole",
    "ensure_aware",
    "utcnow",
]
