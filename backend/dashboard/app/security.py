"""Password hashing and signed token helpers for the dashboard API."""
from __future__ import annotations

import enum
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Final

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from jwt import InvalidTokenError

from ..db.models import User, utcnow
from .config import settings
from .errors import TokenExpired, TokenInvalid

_PASSWORD_HASHER: Final[PasswordHasher] = PasswordHasher()

# Compared against when the identifier is unknown so both paths hash once.
_DUMMY_HASH: Final[str] = _PASSWORD_HASHER.hash(secrets.token_urlsafe(16))


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(stored_hash: str | None, candidate: str) -> bool:
    """Verify a plaintext password against the stored hash.

    A missing hash (SSO-only account) still runs one verification so the
    call takes the same time as a wrong password.
    """

    try:
        return _PASSWORD_HASHER.verify(stored_hash or _DUMMY_HASH, candidate) and bool(stored_hash)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


class TokenPurpose(str, enum.Enum):
    """Marker embedded in every token to scope where it may be presented."""

    SESSION = "session"
    ENROLLMENT = "2fa-enrollment"
    VERIFICATION = "2fa-verification"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    purpose: TokenPurpose
    expires_at: datetime
    expires_in: int


@dataclass(frozen=True)
class TokenClaims:
    """Validated token payload."""

    user_id: int
    purpose: TokenPurpose
    token_id: str
    issued_at: datetime
    expires_at: datetime
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> str | None:
        value = self.claims.get("email")
        return value if isinstance(value, str) else None


class TokenIssuer:
    """Mint and validate HMAC signed JWTs.

    Validation is a pure signature and expiry check; whether the embedded
    user still exists is for the caller to establish.
    """

    def __init__(
        self,
        *,
        secret: str | None = None,
        algorithm: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = secret or settings.auth.jwt_secret
        self._algorithm = algorithm or settings.auth.jwt_algorithm
        self._clock = clock

    def _encode(self, claims: dict[str, Any], *, purpose: TokenPurpose, ttl_seconds: int) -> IssuedToken:
        now = self._clock()
        expires_at = now + timedelta(seconds=int(ttl_seconds))
        token_id = secrets.token_urlsafe(16)
        payload: dict[str, Any] = {
            **claims,
            "purpose": purpose.value,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return IssuedToken(
            token=token,
            token_id=token_id,
            purpose=purpose,
            expires_at=expires_at,
            expires_in=int(ttl_seconds),
        )

    def issue_session(self, user: User, *, ttl_seconds: int) -> IssuedToken:
        """Full bearer token carrying the identity and role of ``user``."""

        return self._encode(
            {
                "sub": str(user.id),
                "id": user.id,
                "username": user.username,
                "name": user.name,
                "displayName": user.shown_name,
                "email": user.email,
                "role": getattr(user.role, "value", user.role),
            },
            purpose=TokenPurpose.SESSION,
            ttl_seconds=ttl_seconds,
        )

    def issue_enrollment(self, *, user_id: int, email: str, ttl_seconds: int | None = None) -> IssuedToken:
        return self._encode(
            {"sub": str(user_id), "id": user_id, "email": email},
            purpose=TokenPurpose.ENROLLMENT,
            ttl_seconds=ttl_seconds or settings.auth.enrollment_token_ttl_seconds,
        )

    def issue_verification(self, *, user_id: int, email: str, ttl_seconds: int | None = None) -> IssuedToken:
        return self._encode(
            {"sub": str(user_id), "id": user_id, "email": email},
            purpose=TokenPurpose.VERIFICATION,
            ttl_seconds=ttl_seconds or settings.auth.verification_token_ttl_seconds,
        )

    def validate(self, token: str, *, purpose: TokenPurpose | None = None) -> TokenClaims:
        """Decode ``token``; raise :class:`TokenExpired` or :class:`TokenInvalid`."""

        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except InvalidTokenError as exc:
            raise TokenInvalid() from exc

        try:
            token_purpose = TokenPurpose(payload.get("purpose"))
            user_id = int(payload["sub"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if purpose is not None and token_purpose is not purpose:
            raise TokenInvalid()

        return TokenClaims(
            user_id=user_id,
            purpose=token_purpose,
            token_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            claims=dict(payload),
        )


__all__ = [
    "IssuedToken",
    "TokenClaims",
    "TokenIssuer",
    "TokenPurpose",
    "hash_password",
    "verify_password",
]
