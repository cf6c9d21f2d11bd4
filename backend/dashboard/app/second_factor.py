"""TOTP enrollment, verification and single-use backup codes."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import Callable

import pyotp
import qrcode
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import utcnow
from .config import settings
from .errors import InvalidCode, TwoFactorNotEnrolled
from .logging import get_logger
from .settings_store import SettingsStore
from .storage import CacheBackend


logger = get_logger("dashboard.second_factor")

TWOFA_ENABLED = "twofa_enabled"
TWOFA_SECRET = "twofa_secret"
TWOFA_BACKUP_CODES = "twofa_backup_codes"
_CATEGORY = "security"

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 10


def clean_code(code: str) -> str:
    return "".join(ch for ch in (code or "").strip() if ch.isalnum()).upper()


def generate_backup_code() -> str:
    return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(clean_code(code).encode("utf-8")).hexdigest()


def qr_data_url(uri: str) -> str:
    """Render ``uri`` as a PNG QR code embedded in a data URL."""

    image = qrcode.make(uri)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


@dataclass(frozen=True)
class EnrollmentMaterial:
    """Everything the user needs to configure an authenticator app.

    ``backup_codes`` are the only plaintext copies; they are never stored.
    """

    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: list[str]


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int


class SecondFactorManager:
    """Manage the per-user second factor.

    Enrollment happens in two steps. :meth:`begin_enrollment` keeps the
    candidate secret in the cache only; :meth:`confirm_enrollment` persists
    the enabled flag, the secret and the backup code hashes together once the
    user proves possession with a valid code.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: CacheBackend,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._settings = SettingsStore(session)
        self._cache = cache
        self._clock = clock

    def _pending_key(self, user_id: int) -> str:
        return f"{settings.auth.cache_namespace}:2fa:pending:{user_id}"

    def _totp_matches(self, secret: str, code: str) -> bool:
        cleaned = clean_code(code)
        if len(cleaned) != 6 or not cleaned.isdigit():
            return False
        totp = pyotp.TOTP(secret)
        return bool(
            totp.verify(cleaned, for_time=self._clock(), valid_window=settings.auth.totp_valid_window)
        )

    async def is_enrolled(self, user_id: int) -> bool:
        enabled = await self._settings.get_user(TWOFA_ENABLED, user_id)
        secret = await self._settings.get_user(TWOFA_SECRET, user_id)
        return enabled == "true" and bool(secret)

    async def _backup_codes(self, user_id: int) -> tuple[str | None, list[str]]:
        """Return the stored backup code row value and the hashes it holds."""

        raw = await self._settings.get_user(TWOFA_BACKUP_CODES, user_id)
        if not raw:
            return raw, []
        try:
            hashes = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("backup_codes_unreadable", user_id=user_id)
            return raw, []
        return raw, [str(item) for item in hashes] if isinstance(hashes, list) else []

    async def _stored_hashes(self, user_id: int) -> list[str]:
        _, hashes = await self._backup_codes(user_id)
        return hashes

    async def status(self, user_id: int) -> TwoFactorStatus:
        enabled = await self.is_enrolled(user_id)
        remaining = len(await self._stored_hashes(user_id)) if enabled else 0
        return TwoFactorStatus(enabled=enabled, backup_codes_remaining=remaining)

    async def begin_enrollment(self, user_id: int, label: str) -> EnrollmentMaterial:
        """Generate a fresh secret and backup codes, replacing any pending attempt."""

        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=settings.auth.totp_issuer)
        codes = [generate_backup_code() for _ in range(settings.auth.backup_code_count)]
        pending = {"secret": secret, "backup_codes": [hash_backup_code(code) for code in codes]}
        await self._cache.set(
            self._pending_key(user_id),
            json.dumps(pending).encode("utf-8"),
            ttl=settings.auth.enrollment_token_ttl_seconds,
        )
        logger.info("2fa_enrollment_started", user_id=user_id)
        return EnrollmentMaterial(secret=secret, otpauth_uri=uri, qr_code=qr_data_url(uri), backup_codes=codes)

    async def confirm_enrollment(self, user_id: int, code: str) -> None:
        raw = await self._cache.get(self._pending_key(user_id))
        if raw is None:
            raise InvalidCode("No enrollment in progress. Start the setup again.")
        pending = json.loads(raw)
        if not self._totp_matches(pending["secret"], code):
            logger.info("2fa_enrollment_code_rejected", user_id=user_id)
            raise InvalidCode()

        await self._settings.set(TWOFA_SECRET, pending["secret"], user_id=user_id, category=_CATEGORY)
        await self._settings.set(
            TWOFA_BACKUP_CODES,
            json.dumps(pending["backup_codes"]),
            user_id=user_id,
            category=_CATEGORY,
        )
        await self._settings.set(TWOFA_ENABLED, True, user_id=user_id, category=_CATEGORY)
        await self._cache.delete(self._pending_key(user_id))
        logger.info("2fa_enrollment_confirmed", user_id=user_id)

    async def verify_login(self, user_id: int, code: str) -> str:
        """Check ``code`` as a TOTP or an unused backup code.

        Returns ``"totp"`` or ``"backup_code"``. A backup code that matches is
        removed with a conditional write; if another request changed the
        stored codes first, the code counts as already used.
        """

        if not await self.is_enrolled(user_id):
            raise TwoFactorNotEnrolled()
        secret = await self._settings.get_user(TWOFA_SECRET, user_id) or ""
        raw, hashes = await self._backup_codes(user_id)

        totp_ok = self._totp_matches(secret, code)
        candidate = hash_backup_code(code)
        matched: int | None = None
        for index, stored in enumerate(hashes):
            if hmac.compare_digest(stored, candidate) and matched is None:
                matched = index

        if totp_ok:
            return "totp"
        if matched is not None and raw is not None:
            remaining = hashes[:matched] + hashes[matched + 1:]
            consumed = await self._settings.replace(
                TWOFA_BACKUP_CODES,
                raw,
                json.dumps(remaining),
                user_id=user_id,
            )
            if not consumed:
                logger.warning("backup_code_already_consumed", user_id=user_id)
                raise InvalidCode()
            logger.info("backup_code_consumed", user_id=user_id, remaining=len(remaining))
            return "backup_code"
        raise InvalidCode()

    async def disable(self, user_id: int) -> None:
        await self._settings.delete(TWOFA_ENABLED, TWOFA_SECRET, TWOFA_BACKUP_CODES, user_id=user_id)
        await self._cache.delete(self._pending_key(user_id))
        logger.info("2fa_disabled", user_id=user_id)


__all__ = [
    "BACKUP_CODE_ALPHABET",
    "EnrollmentMaterial",
    "SecondFactorManager",
    "TWOFA_BACKUP_CODES",
    "TWOFA_ENABLED",
    "TWOFA_SECRET",
    "TwoFactorStatus",
    "clean_code",
    "generate_backup_code",
    "hash_backup_code",
    "qr_data_url",
]
