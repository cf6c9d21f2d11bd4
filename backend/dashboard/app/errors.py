"""Typed authentication outcomes surfaced to the routing layer."""
from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for expected authentication and authorization failures.

    ``code`` is a stable machine readable identifier and ``message`` the
    user-facing, actionable text. Subclasses add public fields through
    :meth:`details`; nothing internal is exposed beyond those.
    """

    code = "auth_error"
    message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.message
        super().__init__(self.message)

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "detail": self.message}
        payload.update(self.details())
        return payload


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username, email or password"


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is temporarily locked. Try again later."

    def __init__(self, remaining_seconds: int, message: str | None = None) -> None:
        self.remaining_seconds = max(int(remaining_seconds), 0)
        super().__init__(message)

    @property
    def minutes_remaining(self) -> int:
        return -(-self.remaining_seconds // 60)

    def details(self) -> dict[str, Any]:
        return {
            "remainingSeconds": self.remaining_seconds,
            "minutesRemaining": self.minutes_remaining,
        }


class AccountDisabled(AuthError):
    code = "account_disabled"
    message = "Account is disabled. Contact an administrator."


class EnrollmentRequired(AuthError):
    code = "enrollment_required"
    message = "Two-factor authentication is required for your account"

    def __init__(
        self,
        *,
        token: str,
        forced: bool,
        grace_period_days: int,
        user_id: int,
        message: str | None = None,
    ) -> None:
        self.token = token
        self.forced = forced
        self.grace_period_days = grace_period_days
        self.user_id = user_id
        if message is None:
            if forced:
                message = "Your administrator requires two-factor authentication. Complete enrollment to continue."
            else:
                message = (
                    "Two-factor authentication is required. "
                    f"You have a {grace_period_days}-day grace period to set it up."
                )
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {
            "tempToken": self.token,
            "enrollmentRequired": self.forced,
            "gracePeriodDays": self.grace_period_days,
            "userId": self.user_id,
        }


class SecondFactorRequired(AuthError):
    code = "second_factor_required"
    message = "Enter the code from your authenticator app or a backup code"

    def __init__(self, *, token: str, expires_in: int, user_id: int) -> None:
        self.token = token
        self.expires_in = expires_in
        self.user_id = user_id
        super().__init__()

    def details(self) -> dict[str, Any]:
        return {
            "requiresTwoFactor": True,
            "temporaryToken": self.token,
            "expiresIn": self.expires_in,
            "userId": self.user_id,
        }


class InvalidCode(AuthError):
    code = "invalid_code"
    message = "Invalid verification code"


class TwoFactorNotEnrolled(AuthError):
    code = "2fa_not_enrolled"
    message = "Two-factor authentication is not enabled for this account"


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired. Sign in again."


class TokenInvalid(AuthError):
    code = "token_invalid"
    message = "Token is invalid. Sign in again."


class UserNotFound(AuthError):
    code = "user_not_found"
    message = "Account no longer exists. Contact an administrator."


class IPNotAllowed(AuthError):
    code = "ip_not_allowed"
    message = "Access from your network location is not allowed"


class PermissionDenied(AuthError):
    code = "permission_denied"
    message = "You do not have permission to perform this action"


class ConfigurationError(AuthError):
    code = "configuration_error"
    message = "Single sign-on is not available. Contact an administrator."


class AccountConflict(AuthError):
    code = "account_conflict"
    message = "An account with these details already exists"


class SetupAlreadyCompleted(AuthError):
    code = "setup_completed"
    message = "System is already initialized"


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password does not meet the security policy"

    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__()

    def details(self) -> dict[str, Any]:
        return {"issues": self.issues}


__all__ = [
    "AccountConflict",
    "AccountDisabled",
    "AccountLocked",
    "AuthError",
    "ConfigurationError",
    "EnrollmentRequired",
    "IPNotAllowed",
    "InvalidCode",
    "InvalidCredentials",
    "PermissionDenied",
    "SecondFactorRequired",
    "SetupAlreadyCompleted",
    "TokenExpired",
    "TokenInvalid",
    "TwoFactorNotEnrolled",
    "UserNotFound",
    "WeakPassword",
]
