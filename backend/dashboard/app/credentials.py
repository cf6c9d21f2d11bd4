"""Persistent user records and lockout counters."""
from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User, UserRole, utcnow
from .errors import AccountConflict, UserNotFound
from .logging import get_logger


logger = get_logger("dashboard.credentials")

_UPDATABLE_FIELDS = frozenset(
    {
        "username",
        "email",
        "name",
        "display_name",
        "avatar",
        "password_hash",
        "role",
        "active",
        "groups",
        "last_login_at",
        "sso_provider",
        "sso_id",
    }
)


def normalise_identifier(value: str) -> str:
    """Usernames and e-mails are stored and compared lowercase."""

    return value.strip().lower()


class CredentialStore:
    """Repository over :class:`User` rows.

    Every lookup lowercases its input and every write stores lowercase
    usernames and e-mails, so uniqueness and lookups agree. Operations that
    target a user id raise :class:`UserNotFound` when the row is absent.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(User))
        return int(result.scalar_one())

    async def get_by_id(self, user_id: int) -> User | None:
        result = await self._session.execute(select(User).where(User.id == user_id))
        return result.scalars().first()

    async def require(self, user_id: int) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user

    async def get_by_identifier(self, identifier: str) -> User | None:
        """Resolve ``identifier`` as either a username or an e-mail address."""

        candidate = normalise_identifier(identifier)
        if not candidate:
            return None
        stmt = select(User).where(
            or_(func.lower(User.username) == candidate, func.lower(User.email) == candidate)
        )
        result = await self._session.execute(stmt.order_by(User.id))
        return result.scalars().first()

    async def get_by_external_identity(self, issuer: str, subject: str) -> User | None:
        stmt = select(User).where(User.sso_provider == issuer, User.sso_id == subject)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def username_exists(self, username: str) -> bool:
        stmt = select(User.id).where(func.lower(User.username) == normalise_identifier(username))
        result = await self._session.execute(stmt.limit(1))
        return result.first() is not None

    async def email_exists(self, email: str) -> bool:
        stmt = select(User.id).where(func.lower(User.email) == normalise_identifier(email))
        result = await self._session.execute(stmt.limit(1))
        return result.first() is not None

    async def list_by_ids(self, user_ids: Iterable[int]) -> list[User]:
        ids = list(user_ids)
        if not ids:
            return []
        result = await self._session.execute(select(User).where(User.id.in_(ids)).order_by(User.id))
        return list(result.scalars())

    async def create_user(
        self,
        *,
        username: str,
        email: str,
        password_hash: str | None = None,
        role: UserRole = UserRole.USER,
        name: str | None = None,
        display_name: str | None = None,
        avatar: str | None = None,
        groups: Iterable[str] = (),
        sso_provider: str | None = None,
        sso_id: str | None = None,
        active: bool = True,
    ) -> User:
        if not password_hash and not (sso_provider and sso_id):
            raise ValueError("A user needs a password hash or an external identity")

        username = normalise_identifier(username)
        email = normalise_identifier(email)
        if await self.username_exists(username) or await self.email_exists(email):
            raise AccountConflict()
        if sso_provider and sso_id and await self.get_by_external_identity(sso_provider, sso_id):
            raise AccountConflict()

        now = utcnow()
        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            role=UserRole(role),
            name=name,
            display_name=display_name,
            avatar=avatar,
            groups=list(groups),
            sso_provider=sso_provider,
            sso_id=sso_id,
            active=active,
            created_at=now,
            updated_at=now,
        )
        self._session.add(user)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            await self._session.rollback()
            logger.warning("user_create_conflict", username=username)
            raise AccountConflict() from exc
        return user

    async def update(self, user_id: int, **fields: Any) -> User:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported user fields: {sorted(unknown)}")
        user = await self.require(user_id)
        for name, value in fields.items():
            if name in {"username", "email"} and isinstance(value, str):
                value = normalise_identifier(value)
            if name == "role":
                value = UserRole(value)
            setattr(user, name, value)
        if not user.password_hash and not (user.sso_provider and user.sso_id):
            raise ValueError("A user needs a password hash or an external identity")
        try:
            await self._session.flush()
        except IntegrityError as exc:
            await self._session.rollback()
            raise AccountConflict() from exc
        return user

    async def _reload(self, user_id: int) -> User:
        # bulk UPDATEs bypass the identity map, so pull the row back in
        user = await self._session.get(User, user_id)
        if user is None:
            raise UserNotFound()
        await self._session.refresh(user)
        return user

    async def record_failed_attempt(self, user_id: int) -> int:
        """Increment the failure counter in one statement and return its new value."""

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(failed_attempts=User.failed_attempts + 1, last_failed_attempt=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise UserNotFound()
        user = await self._reload(user_id)
        return user.failed_attempts

    async def reset_failed_attempts(self, user_id: int) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(failed_attempts=0, last_failed_attempt=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise UserNotFound()
        await self._reload(user_id)

    async def record_login(self, user_id: int) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(last_login_at=utcnow(), login_count=User.login_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise UserNotFound()
        await self._reload(user_id)


__all__ = ["CredentialStore", "normalise_identifier"]
