"""Security policy answers backed by system settings."""
from __future__ import annotations

import enum
import ipaddress
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User, UserRole, ensure_aware, utcnow
from .config import settings
from .credentials import CredentialStore
from .errors import WeakPassword
from .logging import get_logger
from .settings_store import SettingsStore


logger = get_logger("dashboard.policy")

T = TypeVar("T", bool, int, float, str)

MAX_LOGIN_ATTEMPTS = "max-login-attempts"
LOCKOUT_DURATION = "lockout-duration"
PASSWORD_POLICY = "password-policy"
SESSION_TIMEOUT = "session-timeout"
ENFORCE_2FA_ALL_USERS = "enforce-2fa-all-users"
ENFORCE_2FA_ADMINS_ONLY = "enforce-2fa-admins-only"
TWOFA_GRACE_PERIOD = "twofa-grace-period"
FORCED_ENROLLMENT = "2faEnrollmentRequired"
IP_WHITELIST = "ip-whitelist"
ALLOWED_IPS = "allowed-ips"

DEFAULT_MAX_LOGIN_ATTEMPTS = 5
DEFAULT_LOCKOUT_DURATION = 3_600
DEFAULT_GRACE_PERIOD_DAYS = 7
MIN_PASSWORD_LENGTH = 8

_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def coerce_setting(raw: str | None, default: T) -> T:
    """Convert a stored string to the type of ``default``, falling back to it."""

    if raw is None:
        return default
    cleaned = raw.strip()
    if isinstance(default, bool):
        lowered = cleaned.lower()
        if lowered in _TRUE_VALUES:
            return True  # type: ignore[return-value]
        if lowered in _FALSE_VALUES:
            return False  # type: ignore[return-value]
        return default
    if isinstance(default, int):
        try:
            return int(float(cleaned))  # type: ignore[return-value]
        except ValueError:
            return default
    if isinstance(default, float):
        try:
            return float(cleaned)  # type: ignore[return-value]
        except ValueError:
            return default
    return cleaned  # type: ignore[return-value]


class EnforcementMode(str, enum.Enum):
    """Which users must have a second factor configured."""

    NONE = "none"
    ADMINS_ONLY = "admins-only"
    ALL_USERS = "all-users"


@dataclass(frozen=True, slots=True)
class LockoutStatus:
    """Lockout state of an account at evaluation time."""

    locked: bool
    failures: int
    remaining_seconds: int = 0
    locked_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class TwoFactorRequirement:
    """Outcome of the enforcement policy for a single user."""

    required: bool
    enrolled: bool
    forced: bool
    grace_period_days: int

    @property
    def must_enroll(self) -> bool:
        return self.required and not self.enrolled


@dataclass(frozen=True, slots=True)
class EnforcementStatus:
    mode: EnforcementMode
    grace_period_days: int
    enabled_at: datetime | None


def _parse_network(entry: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
    try:
        return ipaddress.ip_network(entry, strict=False)
    except ValueError:
        logger.warning("allowed_ip_entry_invalid", entry=entry)
        return None


def _parse_address(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        parsed = ipaddress.ip_address(address.strip())
    except ValueError:
        return None
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return parsed.ipv4_mapped
    return parsed


class PolicyEvaluator:
    """Answer policy questions from the system-wide settings.

    Values are read on every call and never cached, so a change made by an
    administrator applies to the very next request.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = SettingsStore(session)
        self._credentials = CredentialStore(session)
        self._clock = clock

    async def value(self, key: str, default: T, *, user_id: int | None = None) -> T:
        raw = await self._settings.get(key, user_id=user_id)
        return coerce_setting(raw, default)

    async def session_timeout(self) -> int:
        timeout = await self.value(SESSION_TIMEOUT, settings.auth.session_ttl_seconds)
        return max(int(timeout), 60)

    async def password_issues(self, password: str) -> list[str]:
        """Return the list of policy violations, empty when acceptable."""

        if not await self.value(PASSWORD_POLICY, True):
            return []
        issues: list[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            issues.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not re.search(r"[A-Z]", password):
            issues.append("Must contain uppercase letters")
        if not re.search(r"[a-z]", password):
            issues.append("Must contain lowercase letters")
        if not re.search(r"[0-9]", password):
            issues.append("Must contain numbers")
        if not _SPECIAL_CHARACTERS.search(password):
            issues.append("Must contain special characters")
        return issues

    async def check_password(self, password: str) -> None:
        issues = await self.password_issues(password)
        if issues:
            raise WeakPassword(issues)

    async def lockout_status(self, user: User) -> LockoutStatus:
        """Evaluate lockout; an expired window resets the counters as a side effect."""

        max_attempts = await self.value(MAX_LOGIN_ATTEMPTS, DEFAULT_MAX_LOGIN_ATTEMPTS)
        duration = await self.value(LOCKOUT_DURATION, DEFAULT_LOCKOUT_DURATION)
        failures = int(user.failed_attempts or 0)
        if failures < max_attempts:
            return LockoutStatus(locked=False, failures=failures)

        if user.last_failed_attempt is not None:
            last_failed = ensure_aware(user.last_failed_attempt)
            elapsed = (self._clock() - last_failed).total_seconds()
            if elapsed < duration:
                remaining = math.ceil(duration - elapsed)
                return LockoutStatus(
                    locked=True,
                    failures=failures,
                    remaining_seconds=remaining,
                    locked_until=last_failed + timedelta(seconds=duration),
                )

        await self._credentials.reset_failed_attempts(user.id)
        logger.info("lockout_expired", user_id=user.id, failures=failures)
        return LockoutStatus(locked=False, failures=0)

    async def enforcement_status(self) -> EnforcementStatus:
        values = await self._settings.many([ENFORCE_2FA_ALL_USERS, ENFORCE_2FA_ADMINS_ONLY, TWOFA_GRACE_PERIOD])
        all_users = coerce_setting(values.get(ENFORCE_2FA_ALL_USERS), False)
        admins_only = coerce_setting(values.get(ENFORCE_2FA_ADMINS_ONLY), False)
        grace = coerce_setting(values.get(TWOFA_GRACE_PERIOD), DEFAULT_GRACE_PERIOD_DAYS)
        if all_users:
            mode = EnforcementMode.ALL_USERS
            enabled_at = await self._settings.updated_at(ENFORCE_2FA_ALL_USERS)
        elif admins_only:
            mode = EnforcementMode.ADMINS_ONLY
            enabled_at = await self._settings.updated_at(ENFORCE_2FA_ADMINS_ONLY)
        else:
            mode = EnforcementMode.NONE
            enabled_at = None
        return EnforcementStatus(mode=mode, grace_period_days=max(int(grace), 0), enabled_at=enabled_at)

    async def two_factor_requirement(self, user: User, *, enrolled: bool) -> TwoFactorRequirement:
        status = await self.enforcement_status()
        if status.mode is EnforcementMode.ALL_USERS:
            required = True
        elif status.mode is EnforcementMode.ADMINS_ONLY:
            required = UserRole(user.role) == UserRole.ADMIN
        else:
            required = False

        if not required or enrolled:
            return TwoFactorRequirement(
                required=required,
                enrolled=enrolled,
                forced=False,
                grace_period_days=status.grace_period_days,
            )

        predates_policy = (
            status.enabled_at is not None
            and ensure_aware(user.created_at) < status.enabled_at
        )
        flagged = await self.value(FORCED_ENROLLMENT, False, user_id=user.id)
        forced = predates_policy or flagged
        return TwoFactorRequirement(
            required=True,
            enrolled=False,
            forced=forced,
            grace_period_days=0 if forced else status.grace_period_days,
        )

    async def ip_allowed(self, address: str | None) -> bool:
        if not await self.value(IP_WHITELIST, False):
            return True
        raw = await self._settings.get_system(ALLOWED_IPS)
        entries = [item.strip() for item in (raw or "").split(",") if item.strip()]
        if not entries:
            return True
        client = _parse_address(address) if address else None
        if client is None:
            return False
        for entry in entries:
            network = _parse_network(entry)
            if network is not None and client.version == network.version and client in network:
                return True
        return False


__all__ = [
    "ALLOWED_IPS",
    "ENFORCE_2FA_ADMINS_ONLY",
    "ENFORCE_2FA_ALL_USERS",
    "EnforcementMode",
    "EnforcementStatus",
    "FORCED_ENROLLMENT",
    "IP_WHITELIST",
    "LOCKOUT_DURATION",
    "LockoutStatus",
    "MAX_LOGIN_ATTEMPTS",
    "PASSWORD_POLICY",
    "PolicyEvaluator",
    "SESSION_TIMEOUT",
    "TWOFA_GRACE_PERIOD",
    "TwoFactorRequirement",
    "coerce_setting",
]
