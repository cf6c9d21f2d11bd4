"""Authentication flows composed from the credential, policy and token services."""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User, UserRole, utcnow
from .audit import record_audit_event
from .config import settings
from .credentials import CredentialStore, normalise_identifier
from .errors import (
    AccountConflict,
    AccountDisabled,
    AccountLocked,
    AuthError,
    ConfigurationError,
    EnrollmentRequired,
    InvalidCredentials,
    IPNotAllowed,
    PermissionDenied,
    SecondFactorRequired,
    SetupAlreadyCompleted,
    TokenInvalid,
    TwoFactorNotEnrolled,
)
from .federation import AuthorizationRequest, BridgeState, IdentityFederationBridge, ProviderConfig
from .logging import get_logger
from .policy import (
    DEFAULT_MAX_LOGIN_ATTEMPTS,
    FORCED_ENROLLMENT,
    MAX_LOGIN_ATTEMPTS,
    EnforcementMode,
    PolicyEvaluator,
)
from .second_factor import TWOFA_ENABLED, EnrollmentMaterial, SecondFactorManager
from .security import TokenClaims, TokenIssuer, TokenPurpose, hash_password, verify_password
from .settings_store import SettingsStore
from .storage import CacheBackend


logger = get_logger("dashboard.orchestrator")

SSO_CONFIG_KEY = "sso-config"
_MASKED_SECRET = "********"


@dataclass(frozen=True)
class AuthenticatedSession:
    """A freshly issued session token and the account it belongs to."""

    token: str
    expires_in: int
    expires_at: datetime
    user: User


@dataclass(frozen=True)
class EnrollmentPrincipal:
    """Caller allowed to manage their own second factor."""

    user_id: int
    email: str
    via_enrollment_token: bool


@dataclass(frozen=True)
class TwoFactorDetails:
    user_id: int
    enabled: bool
    backup_codes_remaining: int
    required: bool
    forced_enrollment: bool
    grace_period_days: int


@dataclass(frozen=True)
class EnforcementOverview:
    mode: EnforcementMode
    grace_period_days: int
    enabled_at: datetime | None
    enrolled_users: int
    grace_period_expires: datetime | None


@dataclass(frozen=True)
class SsoStatus:
    state: BridgeState
    enabled: bool
    issuer_url: str | None


class AuthenticationOrchestrator:
    """Turn credentials, second factors and federated assertions into sessions.

    Every operation is request scoped: it works on the given SQLAlchemy
    session, commits once its writes form a complete unit and surfaces
    expected failures as :class:`AuthError` subclasses. Nothing here knows
    about HTTP.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        cache: CacheBackend,
        bridge: IdentityFederationBridge,
        issuer: TokenIssuer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._cache = cache
        self._bridge = bridge
        self._clock = clock
        self._issuer = issuer or TokenIssuer(clock=clock)
        self._store = CredentialStore(session)
        self._settings = SettingsStore(session)
        self._policy = PolicyEvaluator(session, clock=clock)
        self._factors = SecondFactorManager(session, cache, clock=clock)

    @property
    def credentials(self) -> CredentialStore:
        return self._store

    @property
    def policy(self) -> PolicyEvaluator:
        return self._policy

    @property
    def second_factor(self) -> SecondFactorManager:
        return self._factors

    @property
    def tokens(self) -> TokenIssuer:
        return self._issuer

    async def _audit(self, action: str, **kwargs: Any) -> None:
        await record_audit_event(self._session, action=action, **kwargs)

    async def _fail(self, error: AuthError) -> AuthError:
        """Commit what was recorded so far and hand back ``error`` for raising."""

        await self._session.commit()
        return error

    async def _open_session(
        self,
        user: User,
        *,
        action: str,
        ttl_seconds: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: str | None = None,
        metadata: dict[str, Any] | None = None,
        record_login: bool = True,
    ) -> AuthenticatedSession:
        ttl = ttl_seconds if ttl_seconds is not None else await self._policy.session_timeout()
        if record_login:
            await self._store.record_login(user.id)
        issued = self._issuer.issue_session(user, ttl_seconds=ttl)
        await self._audit(
            action,
            user_id=user.id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata,
        )
        await self._session.commit()
        return AuthenticatedSession(
            token=issued.token,
            expires_in=issued.expires_in,
            expires_at=issued.expires_at,
            user=user,
        )

    # -- initial setup -------------------------------------------------

    async def setup_status(self) -> bool:
        """Return ``True`` once at least one account exists."""

        return await self._store.count() > 0

    async def setup_first_admin(
        self,
        *,
        email: str,
        password: str,
        name: str | None = None,
        ip_address: str | None = None,
    ) -> User:
        if await self.setup_status():
            raise SetupAlreadyCompleted()
        await self._policy.check_password(password)
        email = normalise_identifier(email)
        display = (name or "").strip() or "Administrator"
        user = await self._store.create_user(
            username=email.split("@", 1)[0],
            email=email,
            password_hash=hash_password(password),
            role=UserRole.ADMIN,
            name=display,
            display_name=display,
        )
        await self._audit("setup", user_id=user.id, details="Initial administrator created", ip_address=ip_address)
        await self._session.commit()
        logger.info("setup_completed", user_id=user.id)
        return user

    # -- password login ------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthenticatedSession:
        """Run the password step of the login state machine.

        Returns a session when no second factor is involved. Otherwise raises
        :class:`SecondFactorRequired` or :class:`EnrollmentRequired` carrying
        the matching pending token. Lockout is evaluated before the password
        is compared.
        """

        context = {"ip_address": ip_address, "user_agent": user_agent}
        user = await self._store.get_by_identifier(identifier or "")
        if user is None:
            verify_password(None, password or "")
            logger.info("login_rejected", reason="unknown_identifier")
            await self._audit("login_failed", details="Unknown identifier", **context)
            raise await self._fail(InvalidCredentials())

        lockout = await self._policy.lockout_status(user)
        if lockout.locked:
            logger.warning("login_rejected", reason="locked", user_id=user.id)
            await self._audit(
                "login_failed",
                user_id=user.id,
                details="Account locked",
                metadata={"remaining_seconds": lockout.remaining_seconds},
                **context,
            )
            raise await self._fail(AccountLocked(lockout.remaining_seconds))

        if not verify_password(user.password_hash, password or ""):
            failures = await self._store.record_failed_attempt(user.id)
            threshold = await self._policy.value(MAX_LOGIN_ATTEMPTS, DEFAULT_MAX_LOGIN_ATTEMPTS)
            logger.info("login_rejected", reason="bad_password", user_id=user.id, failures=failures)
            await self._audit(
                "login_failed",
                user_id=user.id,
                details="Invalid password",
                metadata={"failed_attempts": failures},
                **context,
            )
            if failures >= threshold:
                await self._audit("account_locked", user_id=user.id, details=f"Locked after {failures} failed attempts", **context)
            raise await self._fail(InvalidCredentials())

        if lockout.failures:
            await self._store.reset_failed_attempts(user.id)

        if not user.active:
            logger.info("login_rejected", reason="disabled", user_id=user.id)
            await self._audit("login_failed", user_id=user.id, details="Account disabled", **context)
            raise await self._fail(AccountDisabled())

        enrolled = await self._factors.is_enrolled(user.id)
        requirement = await self._policy.two_factor_requirement(user, enrolled=enrolled)
        if requirement.must_enroll:
            pending = self._issuer.issue_enrollment(user_id=user.id, email=user.email)
            logger.info("login_enrollment_required", user_id=user.id, forced=requirement.forced)
            raise await self._fail(
                EnrollmentRequired(
                    token=pending.token,
                    forced=requirement.forced,
                    grace_period_days=requirement.grace_period_days,
                    user_id=user.id,
                )
            )
        if enrolled:
            pending = self._issuer.issue_verification(user_id=user.id, email=user.email)
            logger.info("login_second_factor_required", user_id=user.id)
            raise await self._fail(
                SecondFactorRequired(token=pending.token, expires_in=pending.expires_in, user_id=user.id)
            )

        return await self._open_session(user, action="login", details="Password login", **context)

    def _consumed_key(self, token_id: str) -> str:
        return f"{settings.auth.cache_namespace}:2fa:consumed:{token_id}"

    async def complete_second_factor(
        self,
        token: str,
        code: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthenticatedSession:
        """Exchange a verification token and a valid code for a session, once.

        The token id is claimed before the code is checked, so concurrent
        exchanges of one token cannot both succeed. A rejected code releases
        the claim and the user may try another code.
        """

        claims = self._issuer.validate(token, purpose=TokenPurpose.VERIFICATION)
        consumed_key = self._consumed_key(claims.token_id)
        remaining = int((claims.expires_at - self._clock()).total_seconds())
        if not await self._cache.add(consumed_key, b"1", ttl=max(remaining, 1)):
            logger.warning("verification_token_replayed", user_id=claims.user_id)
            raise TokenInvalid("This sign-in step was already completed. Sign in again.")

        try:
            user = await self._store.require(claims.user_id)
            if not user.active:
                raise AccountDisabled()
            method = await self._factors.verify_login(user.id, code)
        except AuthError:
            await self._cache.delete(consumed_key)
            raise
        return await self._open_session(
            user,
            action="login_2fa",
            details="Two-factor login",
            metadata={"method": method},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- per-request authorization -------------------------------------

    async def authorize(self, token: str, *, ip_address: str | None = None) -> User:
        """Resolve a session token to a live, active account."""

        claims = self._issuer.validate(token, purpose=TokenPurpose.SESSION)
        user = await self._store.require(claims.user_id)
        if not user.active:
            raise AccountDisabled()
        if not await self._policy.ip_allowed(ip_address):
            logger.warning("request_rejected", reason="ip_not_allowed", user_id=user.id, ip_address=ip_address)
            raise IPNotAllowed()
        return user

    async def authorize_enrollment(self, token: str, *, ip_address: str | None = None) -> EnrollmentPrincipal:
        """Resolve a token allowed to manage enrollment.

        An enrollment token is honoured only while the account is active, not
        yet enrolled and still required to enroll by current policy. A session
        token goes through full authorization.
        """

        claims: TokenClaims = self._issuer.validate(token)
        if claims.purpose is TokenPurpose.ENROLLMENT:
            user = await self._store.require(claims.user_id)
            if not user.active:
                raise AccountDisabled()
            if await self._factors.is_enrolled(user.id):
                logger.warning("enrollment_token_rejected", reason="already_enrolled", user_id=user.id)
                raise TokenInvalid("Two-factor authentication is already set up. Sign in again.")
            requirement = await self._policy.two_factor_requirement(user, enrolled=False)
            if not requirement.required:
                logger.warning("enrollment_token_rejected", reason="not_required", user_id=user.id)
                raise TokenInvalid("Enrollment is no longer required. Sign in again.")
            return EnrollmentPrincipal(user_id=user.id, email=user.email, via_enrollment_token=True)
        if claims.purpose is not TokenPurpose.SESSION:
            raise TokenInvalid()
        user = await self.authorize(token, ip_address=ip_address)
        return EnrollmentPrincipal(user_id=user.id, email=user.email, via_enrollment_token=False)

    @staticmethod
    def require_role(user: User, *roles: UserRole) -> User:
        if UserRole(user.role) not in roles:
            raise PermissionDenied()
        return user

    async def refresh(self, user: User, *, ip_address: str | None = None) -> AuthenticatedSession:
        return await self._open_session(
            user,
            action="token_refresh",
            ttl_seconds=settings.auth.refresh_ttl_seconds,
            ip_address=ip_address,
            record_login=False,
        )

    async def logout(self, user: User, *, ip_address: str | None = None, user_agent: str | None = None) -> None:
        await self._audit("logout", user_id=user.id, ip_address=ip_address, user_agent=user_agent)
        await self._session.commit()

    async def change_password(
        self,
        user: User,
        *,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
    ) -> None:
        if not verify_password(user.password_hash, current_password or ""):
            raise InvalidCredentials("Current password is incorrect")
        await self._policy.check_password(new_password)
        await self._store.update(user.id, password_hash=hash_password(new_password))
        await self._audit("password_change", user_id=user.id, ip_address=ip_address)
        await self._session.commit()

    # -- second factor management --------------------------------------

    async def begin_enrollment(self, principal: EnrollmentPrincipal) -> EnrollmentMaterial:
        return await self._factors.begin_enrollment(principal.user_id, principal.email or str(principal.user_id))

    async def confirm_enrollment(
        self,
        principal: EnrollmentPrincipal,
        code: str,
        *,
        ip_address: str | None = None,
    ) -> None:
        await self._factors.confirm_enrollment(principal.user_id, code)
        await self._settings.delete(FORCED_ENROLLMENT, user_id=principal.user_id)
        await self._audit("2fa_enabled", user_id=principal.user_id, ip_address=ip_address)
        await self._session.commit()

    async def disable_two_factor(
        self,
        user: User,
        *,
        password: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Remove the caller's second factor; the password is checked when the account has one."""

        if user.password_hash and not verify_password(user.password_hash, password or ""):
            raise InvalidCredentials("Password is incorrect")
        if not await self._factors.is_enrolled(user.id):
            raise TwoFactorNotEnrolled()
        await self._factors.disable(user.id)
        await self._audit("2fa_disabled", user_id=user.id, ip_address=ip_address)
        await self._session.commit()

    async def two_factor_details(self, user: User) -> TwoFactorDetails:
        status = await self._factors.status(user.id)
        requirement = await self._policy.two_factor_requirement(user, enrolled=status.enabled)
        flagged = await self._settings.get_user(FORCED_ENROLLMENT, user.id)
        return TwoFactorDetails(
            user_id=user.id,
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
            required=requirement.required,
            forced_enrollment=flagged == "true",
            grace_period_days=requirement.grace_period_days,
        )

    async def user_two_factor_details(self, admin: User, user_id: int) -> TwoFactorDetails:
        self.require_role(admin, UserRole.ADMIN)
        return await self.two_factor_details(await self._store.require(user_id))

    async def enforcement_overview(self, admin: User) -> EnforcementOverview:
        self.require_role(admin, UserRole.ADMIN)
        status = await self._policy.enforcement_status()
        enrolled = await self._settings.users_with(TWOFA_ENABLED, "true")
        expires = None
        if status.mode is not EnforcementMode.NONE and status.grace_period_days > 0:
            expires = self._clock() + timedelta(days=status.grace_period_days)
        return EnforcementOverview(
            mode=status.mode,
            grace_period_days=status.grace_period_days,
            enabled_at=status.enabled_at,
            enrolled_users=len(enrolled),
            grace_period_expires=expires,
        )

    async def admin_reset_two_factor(self, admin: User, user_id: int, *, ip_address: str | None = None) -> None:
        self.require_role(admin, UserRole.ADMIN)
        target = await self._store.require(user_id)
        await self._factors.disable(target.id)
        await self._audit(
            "2fa_reset",
            user_id=admin.id,
            details=f"Reset two-factor authentication for user {target.id}",
            metadata={"target_user_id": target.id},
            ip_address=ip_address,
        )
        await self._session.commit()

    async def force_enrollment(
        self,
        admin: User,
        user_id: int,
        *,
        required: bool = True,
        ip_address: str | None = None,
    ) -> None:
        """Set or clear the per-user immediate enrollment flag."""

        self.require_role(admin, UserRole.ADMIN)
        target = await self._store.require(user_id)
        if required:
            await self._settings.set(FORCED_ENROLLMENT, True, user_id=target.id, category="security")
        else:
            await self._settings.delete(FORCED_ENROLLMENT, user_id=target.id)
        await self._audit(
            "2fa_force_enroll",
            user_id=admin.id,
            details=f"{'Required' if required else 'Cleared'} immediate enrollment for user {target.id}",
            metadata={"target_user_id": target.id, "required": required},
            ip_address=ip_address,
        )
        await self._session.commit()

    # -- single sign-on ------------------------------------------------

    def sso_status(self) -> SsoStatus:
        config = self._bridge.config
        return SsoStatus(
            state=self._bridge.state,
            enabled=config.enabled and self._bridge.ready,
            issuer_url=config.issuer_url or None,
        )

    def sso_config(self, admin: User) -> dict[str, Any]:
        self.require_role(admin, UserRole.ADMIN)
        return self._bridge.config.masked()

    async def update_sso_config(
        self,
        admin: User,
        changes: dict[str, Any],
        *,
        ip_address: str | None = None,
    ) -> SsoStatus:
        """Persist a new provider configuration and rediscover it.

        A masked or empty client secret keeps the stored one.
        """

        self.require_role(admin, UserRole.ADMIN)
        config = ProviderConfig.from_mapping(changes)
        if config.client_secret in ("", _MASKED_SECRET):
            config = replace(config, client_secret=self._bridge.config.client_secret)

        await self._settings.set(SSO_CONFIG_KEY, json.dumps(config.to_mapping()), category="sso")
        await self._audit(
            "sso_config_updated",
            user_id=admin.id,
            details=f"SSO {'enabled' if config.enabled else 'disabled'}",
            metadata={"issuer_url": config.issuer_url, "enabled": config.enabled},
            ip_address=ip_address,
        )
        await self._session.commit()
        await self._bridge.configure(config)
        return self.sso_status()

    async def load_sso_config(self) -> SsoStatus:
        """Configure the bridge from the stored setting, falling back to environment settings."""

        raw = await self._settings.get_system(SSO_CONFIG_KEY)
        config = ProviderConfig.from_settings(settings.sso)
        if raw:
            try:
                config = ProviderConfig.from_mapping(json.loads(raw))
            except (json.JSONDecodeError, TypeError, AttributeError):
                logger.warning("sso_config_unreadable")
        try:
            await self._bridge.configure(config)
        except ConfigurationError:
            logger.warning("sso_config_load_failed", issuer=config.issuer_url)
        return self.sso_status()

    async def begin_sso_login(self) -> AuthorizationRequest:
        if not self._bridge.config.enabled:
            raise ConfigurationError("Single sign-on is not enabled")
        return await self._bridge.begin_login()

    async def discard_sso_login(self, attempt_id: str | None) -> None:
        await self._bridge.discard_login(attempt_id)

    async def complete_sso_login(
        self,
        code: str | None,
        state: str | None,
        *,
        attempt_id: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthenticatedSession:
        """Finish the login attempt ``attempt_id`` started in this browser.

        The IP allowlist is checked before the provider is contacted or any
        account is created or updated.
        """

        context = {"ip_address": ip_address, "user_agent": user_agent}
        if not await self._policy.ip_allowed(ip_address):
            await self._bridge.discard_login(attempt_id)
            logger.warning("sso_login_rejected", reason="ip_not_allowed", ip_address=ip_address)
            await self._audit(
                "sso_login_failed",
                details="IP address not allowed",
                metadata={"error": IPNotAllowed.code},
                **context,
            )
            raise await self._fail(IPNotAllowed())

        try:
            identity = await self._bridge.complete_callback(code, state, attempt_id=attempt_id)
            user, created = await self._bridge.link_account(self._store, identity)
        except (ConfigurationError, TokenInvalid, AccountConflict) as exc:
            await self._audit(
                "sso_login_failed",
                details=exc.message,
                metadata={"error": exc.code},
                **context,
            )
            raise await self._fail(exc)

        return await self._open_session(
            user,
            action="sso_signup" if created else "sso_login",
            details=f"{'New SSO user' if created else 'SSO login'} via {self._bridge.issuer}",
            metadata={"issuer": self._bridge.issuer},
            record_login=False,
            **context,
        )


__all__ = [
    "AuthenticatedSession",
    "AuthenticationOrchestrator",
    "EnforcementOverview",
    "EnrollmentPrincipal",
    "SSO_CONFIG_KEY",
    "SsoStatus",
    "TwoFactorDetails",
]
