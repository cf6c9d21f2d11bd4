"""Key/value settings with system and per-user scopes."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Setting, ensure_aware, utcnow


class SettingsStore:
    """Read and write :class:`Setting` rows.

    A row with ``user_id`` NULL is system-wide. When a user id is supplied to
    :meth:`get` the user's own value takes precedence over the system value.
    Writes flush but never commit so callers can group several writes into
    one transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _row(self, key: str, user_id: int | None, *, reload: bool = False) -> Setting | None:
        stmt = select(Setting).where(Setting.key == key)
        if user_id is None:
            stmt = stmt.where(Setting.user_id.is_(None))
        else:
            stmt = stmt.where(Setting.user_id == user_id)
        stmt = stmt.order_by(Setting.updated_at.desc()).limit(1)
        if reload:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get_system(self, key: str) -> str | None:
        row = await self._row(key, None)
        return row.value if row is not None else None

    async def get_user(self, key: str, user_id: int) -> str | None:
        row = await self._row(key, user_id)
        return row.value if row is not None else None

    async def get(self, key: str, user_id: int | None = None) -> str | None:
        if user_id is not None:
            row = await self._row(key, user_id)
            if row is not None:
                return row.value
        return await self.get_system(key)

    async def many(self, keys: Iterable[str], user_id: int | None = None) -> dict[str, str]:
        """Return the values present for ``keys`` in a single scope."""

        wanted = list(keys)
        if not wanted:
            return {}
        stmt = select(Setting).where(Setting.key.in_(wanted))
        if user_id is None:
            stmt = stmt.where(Setting.user_id.is_(None))
        else:
            stmt = stmt.where(Setting.user_id == user_id)
        result = await self._session.execute(stmt.order_by(Setting.updated_at))
        return {row.key: row.value for row in result.scalars() if row.value is not None}

    async def updated_at(self, key: str, user_id: int | None = None) -> datetime | None:
        row = await self._row(key, user_id)
        if row is None:
            return None
        return ensure_aware(row.updated_at)

    async def set(
        self,
        key: str,
        value: str | bool | int | float | None,
        *,
        user_id: int | None = None,
        category: str | None = None,
    ) -> Setting:
        if isinstance(value, bool):
            stored = "true" if value else "false"
        elif value is None:
            stored = None
        else:
            stored = str(value)

        row = await self._row(key, user_id)
        now = utcnow()
        if row is None:
            row = Setting(
                user_id=user_id,
                key=key,
                value=stored,
                category=category,
                created_at=now,
                updated_at=now,
            )
            self._session.add(row)
        else:
            row.value = stored
            row.updated_at = now
            if category is not None:
                row.category = category
        await self._session.flush()
        return row

    async def replace(self, key: str, expected: str, value: str, *, user_id: int | None = None) -> bool:
        """Write ``value`` only if the stored value is still ``expected``.

        The comparison and the write are one UPDATE statement, so of two
        callers that read the same ``expected`` value only one succeeds.
        """

        stmt = update(Setting).where(Setting.key == key, Setting.value == expected)
        if user_id is None:
            stmt = stmt.where(Setting.user_id.is_(None))
        else:
            stmt = stmt.where(Setting.user_id == user_id)
        stmt = stmt.values(value=value, updated_at=utcnow()).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        await self._row(key, user_id, reload=True)
        return result.rowcount == 1

    async def delete(self, *keys: str, user_id: int | None = None) -> None:
        if not keys:
            return
        stmt = delete(Setting).where(Setting.key.in_(keys))
        if user_id is None:
            stmt = stmt.where(Setting.user_id.is_(None))
        else:
            stmt = stmt.where(Setting.user_id == user_id)
        await self._session.execute(stmt)
        await self._session.flush()

    async def users_with(self, key: str, value: str) -> list[int]:
        """Return ids of users holding ``key`` set to ``value``."""

        stmt = select(Setting.user_id).where(
            Setting.key == key,
            Setting.value == value,
            Setting.user_id.is_not(None),
        )
        result = await self._session.execute(stmt)
        return [int(user_id) for user_id in result.scalars()]


__all__ = ["SettingsStore"]
