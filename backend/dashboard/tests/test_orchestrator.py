from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pyotp
import pytest

from backend.dashboard.app.errors import (
    AccountDisabled,
    AccountLocked,
    ConfigurationError,
    EnrollmentRequired,
    InvalidCode,
    InvalidCredentials,
    IPNotAllowed,
    PermissionDenied,
    SecondFactorRequired,
    SetupAlreadyCompleted,
    TokenInvalid,
    TwoFactorNotEnrolled,
    UserNotFound,
    WeakPassword,
)
from backend.dashboard.app.federation import BridgeState, IdentityFederationBridge
from backend.dashboard.app.orchestrator import (
    SSO_CONFIG_KEY,
    AuthenticatedSession,
    AuthenticationOrchestrator,
    EnrollmentPrincipal,
)
from backend.dashboard.app.policy import (
    ALLOWED_IPS,
    DEFAULT_LOCKOUT_DURATION,
    ENFORCE_2FA_ALL_USERS,
    FORCED_ENROLLMENT,
    IP_WHITELIST,
    EnforcementMode,
)
from backend.dashboard.app.security import TokenIssuer, TokenPurpose
from backend.dashboard.app.settings_store import SettingsStore
from backend.dashboard.db.base import create_session
from backend.dashboard.db.models import UserRole, utcnow

from .utils import (
    DEFAULT_PASSWORD,
    FakeIdentityProvider,
    audit_actions,
    create_user,
    provider_settings,
    query_params,
)


async def _enroll(orchestrator, user, clock) -> tuple[str, list[str]]:
    principal = EnrollmentPrincipal(user_id=user.id, email=user.email, via_enrollment_token=False)
    material = await orchestrator.begin_enrollment(principal)
    await orchestrator.confirm_enrollment(principal, pyotp.TOTP(material.secret).at(clock()))
    return material.secret, material.backup_codes


@pytest.mark.asyncio
async def test_first_admin_setup_runs_once(orchestrator, db_session):
    assert not await orchestrator.setup_status()

    admin = await orchestrator.setup_first_admin(email="Owner@Example.com", password=DEFAULT_PASSWORD, name="Owner")

    assert admin.role == UserRole.ADMIN
    assert admin.username == "owner"
    assert admin.email == "owner@example.com"
    assert await orchestrator.setup_status()
    assert await audit_actions(db_session, user_id=admin.id) == ["setup"]
    with pytest.raises(SetupAlreadyCompleted):
        await orchestrator.setup_first_admin(email="second@example.com", password=DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_first_admin_setup_enforces_password_policy(orchestrator):
    with pytest.raises(WeakPassword) as excinfo:
        await orchestrator.setup_first_admin(email="owner@example.com", password="short")

    assert excinfo.value.issues
    assert not await orchestrator.setup_status()


@pytest.mark.asyncio
async def test_password_login_issues_session(orchestrator, db_session):
    user = await create_user(db_session, email="hana@example.com", username="hana")

    session = await orchestrator.login("HANA@example.com", DEFAULT_PASSWORD, ip_address="10.0.0.1")

    claims = orchestrator.tokens.validate(session.token, purpose=TokenPurpose.SESSION)
    assert claims.user_id == user.id
    assert session.expires_in == 3_600
    assert session.user.login_count == 1
    assert await orchestrator.authorize(session.token) is not None
    assert await audit_actions(db_session, user_id=user.id) == ["login"]


@pytest.mark.asyncio
async def test_unknown_user_and_wrong_password_look_identical(orchestrator, db_session):
    await create_user(db_session, email="ian@example.com", username="ian")

    with pytest.raises(InvalidCredentials) as unknown:
        await orchestrator.login("nobody", DEFAULT_PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        await orchestrator.login("ian", "not-the-password")

    assert unknown.value.to_dict() == wrong.value.to_dict()
    assert await audit_actions(db_session) == ["login_failed", "login_failed"]


@pytest.mark.asyncio
async def test_lockout_blocks_correct_password_until_it_expires(orchestrator, db_session, clock):
    user = await create_user(db_session, email="jay@example.com", username="jay")

    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            await orchestrator.login("jay", "bad-password")
    assert "account_locked" in await audit_actions(db_session, user_id=user.id)

    with pytest.raises(AccountLocked) as excinfo:
        await orchestrator.login("jay", DEFAULT_PASSWORD)
    assert excinfo.value.remaining_seconds > 0
    assert excinfo.value.minutes_remaining >= 1

    clock.advance(DEFAULT_LOCKOUT_DURATION + 100)
    session = await orchestrator.login("jay", DEFAULT_PASSWORD)

    assert session.user.id == user.id
    assert session.user.failed_attempts == 0


@pytest.mark.asyncio
async def test_successful_login_resets_failure_counter(orchestrator, db_session):
    user = await create_user(db_session, email="kim@example.com", username="kim")

    for _ in range(3):
        with pytest.raises(InvalidCredentials):
            await orchestrator.login("kim", "bad-password")
    await orchestrator.login("kim", DEFAULT_PASSWORD)
    await db_session.refresh(user)

    assert user.failed_attempts == 0


@pytest.mark.asyncio
async def test_disabled_account_is_rejected_after_password_check(orchestrator, db_session):
    await create_user(db_session, email="lee@example.com", username="lee", active=False)

    with pytest.raises(InvalidCredentials):
        await orchestrator.login("lee", "bad-password")
    with pytest.raises(AccountDisabled):
        await orchestrator.login("lee", DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_session_for_deleted_user_is_rejected(orchestrator, db_session):
    user = await create_user(db_session, email="max@example.com", username="max")
    session = await orchestrator.login("max", DEFAULT_PASSWORD)

    await db_session.delete(user)
    await db_session.commit()

    with pytest.raises(UserNotFound):
        await orchestrator.authorize(session.token)


@pytest.mark.asyncio
async def test_session_rejected_when_account_disabled_later(orchestrator, db_session):
    user = await create_user(db_session, email="ned@example.com", username="ned")
    session = await orchestrator.login("ned", DEFAULT_PASSWORD)

    await orchestrator.credentials.update(user.id, active=False)
    await db_session.commit()

    with pytest.raises(AccountDisabled):
        await orchestrator.authorize(session.token)


@pytest.mark.asyncio
async def test_ip_allowlist_applies_to_every_request(orchestrator, db_session):
    await create_user(db_session, email="oli@example.com", username="oli")
    session = await orchestrator.login("oli", DEFAULT_PASSWORD)
    store = SettingsStore(db_session)
    await store.set(IP_WHITELIST, True)
    await store.set(ALLOWED_IPS, "10.0.0.0/8")
    await db_session.commit()

    assert await orchestrator.authorize(session.token, ip_address="10.1.1.1")
    with pytest.raises(IPNotAllowed):
        await orchestrator.authorize(session.token, ip_address="192.0.2.10")


@pytest.mark.asyncio
async def test_second_factor_login_and_single_use_token(orchestrator, db_session, clock):
    user = await create_user(db_session, email="pat@example.com", username="pat")
    secret, _ = await _enroll(orchestrator, user, clock)

    with pytest.raises(SecondFactorRequired) as excinfo:
        await orchestrator.login("pat", DEFAULT_PASSWORD)
    pending = excinfo.value.token
    assert excinfo.value.expires_in == 300
    with pytest.raises(TokenInvalid):
        await orchestrator.authorize(pending)

    with pytest.raises(InvalidCode):
        await orchestrator.complete_second_factor(pending, "not-a-code")

    code = pyotp.TOTP(secret).at(clock())
    session = await orchestrator.complete_second_factor(pending, code)
    assert session.user.id == user.id
    assert "login_2fa" in await audit_actions(db_session, user_id=user.id)

    with pytest.raises(TokenInvalid):
        await orchestrator.complete_second_factor(pending, code)


@pytest.mark.asyncio
async def test_concurrent_second_factor_exchanges_open_one_session(orchestrator, db_session, cache, bridge, clock):
    user = await create_user(db_session, email="pia@example.com", username="pia")
    _, codes = await _enroll(orchestrator, user, clock)
    with pytest.raises(SecondFactorRequired) as excinfo:
        await orchestrator.login("pia", DEFAULT_PASSWORD)
    pending = excinfo.value.token

    other_session = create_session()
    try:
        other = AuthenticationOrchestrator(
            other_session,
            cache=cache,
            bridge=bridge,
            issuer=TokenIssuer(clock=clock),
            clock=clock,
        )
        results = await asyncio.gather(
            orchestrator.complete_second_factor(pending, codes[0]),
            other.complete_second_factor(pending, codes[0]),
            return_exceptions=True,
        )
    finally:
        await other_session.close()

    assert sum(isinstance(result, AuthenticatedSession) for result in results) == 1
    assert sum(isinstance(result, TokenInvalid) for result in results) == 1
    assert (await orchestrator.two_factor_details(user)).backup_codes_remaining == 9


@pytest.mark.asyncio
async def test_rejected_code_keeps_verification_token_usable(orchestrator, db_session, clock):
    user = await create_user(db_session, email="pax@example.com", username="pax")
    secret, _ = await _enroll(orchestrator, user, clock)
    with pytest.raises(SecondFactorRequired) as excinfo:
        await orchestrator.login("pax", DEFAULT_PASSWORD)

    with pytest.raises(InvalidCode):
        await orchestrator.complete_second_factor(excinfo.value.token, "BADCODE123")
    session = await orchestrator.complete_second_factor(excinfo.value.token, pyotp.TOTP(secret).at(clock()))

    assert session.user.id == user.id


@pytest.mark.asyncio
async def test_second_factor_login_with_backup_code(orchestrator, db_session, clock):
    user = await create_user(db_session, email="quinn@example.com", username="quinn")
    _, codes = await _enroll(orchestrator, user, clock)

    with pytest.raises(SecondFactorRequired) as excinfo:
        await orchestrator.login("quinn", DEFAULT_PASSWORD)
    await orchestrator.complete_second_factor(excinfo.value.token, codes[0])

    details = await orchestrator.two_factor_details(user)
    assert details.enabled
    assert details.backup_codes_remaining == 9


@pytest.mark.asyncio
async def test_session_token_cannot_complete_second_factor(orchestrator, db_session):
    await create_user(db_session, email="rae@example.com", username="rae")
    session = await orchestrator.login("rae", DEFAULT_PASSWORD)

    with pytest.raises(TokenInvalid):
        await orchestrator.complete_second_factor(session.token, "123456")


@pytest.mark.asyncio
async def test_forced_enrollment_for_accounts_predating_policy(orchestrator, db_session, clock):
    user = await create_user(
        db_session,
        email="sam@example.com",
        username="sam",
        created_at=utcnow() - timedelta(days=10),
    )
    await SettingsStore(db_session).set(ENFORCE_2FA_ALL_USERS, True)
    await db_session.commit()

    with pytest.raises(EnrollmentRequired) as excinfo:
        await orchestrator.login("sam", DEFAULT_PASSWORD)
    required = excinfo.value
    assert required.forced
    assert required.to_dict()["tempToken"] == required.token

    with pytest.raises(TokenInvalid):
        await orchestrator.authorize(required.token)
    principal = await orchestrator.authorize_enrollment(required.token)
    assert principal.via_enrollment_token
    assert principal.user_id == user.id

    material = await orchestrator.begin_enrollment(principal)
    await orchestrator.confirm_enrollment(principal, pyotp.TOTP(material.secret).at(clock()))

    with pytest.raises(SecondFactorRequired):
        await orchestrator.login("sam", DEFAULT_PASSWORD)


@pytest.mark.asyncio
async def test_enrollment_token_stops_working_once_enrolled(orchestrator, db_session, clock):
    await create_user(db_session, email="sol@example.com", username="sol", created_at=utcnow() - timedelta(days=10))
    await SettingsStore(db_session).set(ENFORCE_2FA_ALL_USERS, True)
    await db_session.commit()
    with pytest.raises(EnrollmentRequired) as excinfo:
        await orchestrator.login("sol", DEFAULT_PASSWORD)
    enrollment_token = excinfo.value.token

    principal = await orchestrator.authorize_enrollment(enrollment_token)
    material = await orchestrator.begin_enrollment(principal)
    await orchestrator.confirm_enrollment(principal, pyotp.TOTP(material.secret).at(clock()))

    with pytest.raises(TokenInvalid):
        await orchestrator.authorize_enrollment(enrollment_token)
    with pytest.raises(SecondFactorRequired) as challenge:
        await orchestrator.login("sol", DEFAULT_PASSWORD)
    session = await orchestrator.complete_second_factor(challenge.value.token, pyotp.TOTP(material.secret).at(clock()))
    assert session.user.username == "sol"


@pytest.mark.asyncio
async def test_enrollment_token_follows_current_policy(orchestrator, db_session):
    await create_user(db_session, email="una@example.com", username="una", created_at=utcnow() - timedelta(days=10))
    store = SettingsStore(db_session)
    await store.set(ENFORCE_2FA_ALL_USERS, True)
    await db_session.commit()
    with pytest.raises(EnrollmentRequired) as excinfo:
        await orchestrator.login("una", DEFAULT_PASSWORD)

    await store.set(ENFORCE_2FA_ALL_USERS, False)
    await db_session.commit()

    with pytest.raises(TokenInvalid):
        await orchestrator.authorize_enrollment(excinfo.value.token)


@pytest.mark.asyncio
async def test_new_accounts_get_grace_period(orchestrator, db_session):
    await SettingsStore(db_session).set(ENFORCE_2FA_ALL_USERS, True)
    await db_session.commit()
    await create_user(
        db_session,
        email="tia@example.com",
        username="tia",
        created_at=utcnow() + timedelta(seconds=5),
    )

    with pytest.raises(EnrollmentRequired) as excinfo:
        await orchestrator.login("tia", DEFAULT_PASSWORD)

    assert not excinfo.value.forced
    assert excinfo.value.grace_period_days == 7


@pytest.mark.asyncio
async def test_refresh_and_logout(orchestrator, db_session):
    user = await create_user(db_session, email="uma@example.com", username="uma")
    session = await orchestrator.login("uma", DEFAULT_PASSWORD)

    refreshed = await orchestrator.refresh(session.user)
    await orchestrator.logout(session.user)

    assert refreshed.expires_in == 86_400
    assert refreshed.token != session.token
    assert refreshed.user.login_count == 1
    assert await audit_actions(db_session, user_id=user.id) == ["login", "token_refresh", "logout"]


@pytest.mark.asyncio
async def test_change_password(orchestrator, db_session):
    user = await create_user(db_session, email="val@example.com", username="val")

    with pytest.raises(InvalidCredentials):
        await orchestrator.change_password(user, current_password="wrong", new_password="N3w$ecret!")
    with pytest.raises(WeakPassword):
        await orchestrator.change_password(user, current_password=DEFAULT_PASSWORD, new_password="weak")

    await orchestrator.change_password(user, current_password=DEFAULT_PASSWORD, new_password="N3w$ecret!")

    with pytest.raises(InvalidCredentials):
        await orchestrator.login("val", DEFAULT_PASSWORD)
    assert (await orchestrator.login("val", "N3w$ecret!")).user.id == user.id


@pytest.mark.asyncio
async def test_disable_two_factor_requires_password(orchestrator, db_session, clock):
    user = await create_user(db_session, email="wes@example.com", username="wes")

    with pytest.raises(TwoFactorNotEnrolled):
        await orchestrator.disable_two_factor(user, password=DEFAULT_PASSWORD)

    await _enroll(orchestrator, user, clock)
    with pytest.raises(InvalidCredentials):
        await orchestrator.disable_two_factor(user, password="wrong")

    await orchestrator.disable_two_factor(user, password=DEFAULT_PASSWORD)
    assert not (await orchestrator.two_factor_details(user)).enabled
    assert (await orchestrator.login("wes", DEFAULT_PASSWORD)).user.id == user.id


@pytest.mark.asyncio
async def test_admin_two_factor_management(orchestrator, db_session, clock):
    admin = await create_user(db_session, email="boss@example.com", username="boss", role=UserRole.ADMIN)
    member = await create_user(db_session, email="xena@example.com", username="xena")
    await _enroll(orchestrator, member, clock)

    with pytest.raises(PermissionDenied):
        await orchestrator.admin_reset_two_factor(member, admin.id)
    with pytest.raises(PermissionDenied):
        await orchestrator.enforcement_overview(member)

    overview = await orchestrator.enforcement_overview(admin)
    assert overview.mode is EnforcementMode.NONE
    assert overview.enrolled_users == 1

    await orchestrator.force_enrollment(admin, member.id)
    assert (await orchestrator.user_two_factor_details(admin, member.id)).forced_enrollment

    await orchestrator.admin_reset_two_factor(admin, member.id)
    details = await orchestrator.user_two_factor_details(admin, member.id)
    assert not details.enabled
    assert details.backup_codes_remaining == 0

    await orchestrator.force_enrollment(admin, member.id, required=False)
    assert await SettingsStore(db_session).get_user(FORCED_ENROLLMENT, member.id) is None
    with pytest.raises(UserNotFound):
        await orchestrator.force_enrollment(admin, 9_999)
    assert "2fa_reset" in await audit_actions(db_session, user_id=admin.id)


@pytest.mark.asyncio
async def test_enrollment_clears_forced_flag(orchestrator, db_session, clock):
    admin = await create_user(db_session, email="chief@example.com", username="chief", role=UserRole.ADMIN)
    member = await create_user(db_session, email="yara@example.com", username="yara")
    await orchestrator.force_enrollment(admin, member.id)

    await _enroll(orchestrator, member, clock)

    assert not (await orchestrator.two_factor_details(member)).forced_enrollment


@pytest.mark.asyncio
async def test_sso_configuration_and_login(orchestrator, db_session, bridge):
    admin = await create_user(db_session, email="root@example.com", username="root", role=UserRole.ADMIN)

    with pytest.raises(ConfigurationError):
        await orchestrator.begin_sso_login()

    status = await orchestrator.update_sso_config(admin, provider_settings())
    assert status.state is BridgeState.READY
    assert status.enabled
    assert orchestrator.sso_config(admin)["client_secret"] == "********"

    await orchestrator.update_sso_config(admin, provider_settings(client_secret="********", scopes="openid email"))
    assert bridge.config.client_secret == "provider-secret"
    assert bridge.config.scopes == "openid email"
    stored = json.loads(await SettingsStore(db_session).get_system(SSO_CONFIG_KEY))
    assert stored["client_secret"] == "provider-secret"

    attempt = await orchestrator.begin_sso_login()
    session = await orchestrator.complete_sso_login(
        "auth-code", query_params(attempt.url)["state"], attempt_id=attempt.attempt_id
    )
    assert session.user.username == "alice"
    assert session.user.sso_provider == bridge.issuer
    assert "sso_signup" in await audit_actions(db_session, user_id=session.user.id)

    attempt = await orchestrator.begin_sso_login()
    again = await orchestrator.complete_sso_login("auth-code", attempt.state, attempt_id=attempt.attempt_id)
    assert again.user.id == session.user.id
    assert "sso_login" in await audit_actions(db_session, user_id=session.user.id)


@pytest.mark.asyncio
async def test_sso_callback_with_unknown_state_is_audited(orchestrator, db_session):
    admin = await create_user(db_session, email="root@example.com", username="root", role=UserRole.ADMIN)
    await orchestrator.update_sso_config(admin, provider_settings())

    with pytest.raises(TokenInvalid):
        await orchestrator.complete_sso_login("auth-code", "forged-state", attempt_id="forged-attempt")

    assert "sso_login_failed" in await audit_actions(db_session)


@pytest.mark.asyncio
async def test_sso_login_from_blocked_address_touches_no_account(orchestrator, db_session, provider):
    admin = await create_user(db_session, email="root@example.com", username="root", role=UserRole.ADMIN)
    await orchestrator.update_sso_config(admin, provider_settings())
    store = SettingsStore(db_session)
    await store.set(IP_WHITELIST, True)
    await store.set(ALLOWED_IPS, "10.0.0.0/8")
    await db_session.commit()
    attempt = await orchestrator.begin_sso_login()

    with pytest.raises(IPNotAllowed):
        await orchestrator.complete_sso_login(
            "auth-code", attempt.state, attempt_id=attempt.attempt_id, ip_address="192.0.2.10"
        )

    assert provider.token_requests == []
    assert await orchestrator.credentials.get_by_identifier("alice") is None
    with pytest.raises(TokenInvalid):
        await orchestrator.complete_sso_login(
            "auth-code", attempt.state, attempt_id=attempt.attempt_id, ip_address="10.1.1.1"
        )
    assert "sso_login_failed" in await audit_actions(db_session)


@pytest.mark.asyncio
async def test_sso_config_requires_admin(orchestrator, db_session):
    member = await create_user(db_session, email="zed@example.com", username="zed")

    with pytest.raises(PermissionDenied):
        orchestrator.sso_config(member)
    with pytest.raises(PermissionDenied):
        await orchestrator.update_sso_config(member, provider_settings())


@pytest.mark.asyncio
async def test_load_sso_config_from_stored_setting(orchestrator, db_session, bridge):
    await SettingsStore(db_session).set(SSO_CONFIG_KEY, json.dumps(provider_settings()), category="sso")
    await db_session.commit()

    status = await orchestrator.load_sso_config()

    assert status.state is BridgeState.READY
    assert bridge.config.client_id == "dashboard"


@pytest.mark.asyncio
async def test_load_sso_config_survives_discovery_failure(db_session, cache):
    failing = FakeIdentityProvider(discovery_status=503)
    bridge = IdentityFederationBridge(cache, transport=failing.transport)
    await SettingsStore(db_session).set(SSO_CONFIG_KEY, json.dumps(provider_settings()), category="sso")
    await db_session.commit()

    status = await AuthenticationOrchestrator(db_session, cache=cache, bridge=bridge).load_sso_config()

    assert status.state is BridgeState.UNCONFIGURED
    assert not status.enabled
