"""Utilities for recording audit trail events."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ActivityLog, utcnow
from .logging import get_logger
from .settings_store import SettingsStore


logger = get_logger("dashboard.audit")

AUDIT_LOGGING_KEY = "audit-logging"


async def audit_logging_enabled(session: AsyncSession) -> bool:
    raw = await SettingsStore(session).get_system(AUDIT_LOGGING_KEY)
    if raw is None:
        return True
    return raw.strip().lower() not in {"false", "0", "off", "no"}


async def record_audit_event(
    session: AsyncSession,
    *,
    action: str,
    user_id: int | None = None,
    details: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> ActivityLog | None:
    """Persist a new activity log entry using the provided SQLAlchemy session.

    Returns ``None`` without writing when the ``audit-logging`` system setting
    is switched off. The entry is flushed, not committed, so it shares the
    caller's transaction.
    """

    logger.info("audit_event", action=action, user_id=user_id, ip_address=ip_address)
    if not await audit_logging_enabled(session):
        return None

    entry = ActivityLog(
        action=action,
        user_id=user_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent[:255] if user_agent else None,
        occurred_at=occurred_at or utcnow(),
        metadata_json=dict(metadata or {}),
    )
    session.add(entry)
    await session.flush()
    return entry


__all__ = ["AUDIT_LOGGING_KEY", "audit_logging_enabled", "record_audit_event"]
