from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from backend.dashboard.app.federation import ProviderConfig
from backend.dashboard.db.models import UserRole

from .utils import DEFAULT_PASSWORD, ISSUER, create_user, provider_settings, query_params


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="https://testserver")


async def _admin_token(client: AsyncClient, db_session) -> str:
    await create_user(db_session, email="root@example.com", username="root", role=UserRole.ADMIN)
    response = await client.post("/api/auth/login", json={"identifier": "root", "password": DEFAULT_PASSWORD})
    return response.json()["accessToken"]


@pytest.mark.asyncio
async def test_status_when_unconfigured(app):
    async with _client(app) as client:
        status_response = await client.get("/api/sso/status")
        login = await client.get("/api/sso/login")

    assert status_response.json() == {"state": "unconfigured", "enabled": False, "issuerUrl": None}
    assert login.status_code == 503
    assert login.json()["error"] == "configuration_error"


@pytest.mark.asyncio
async def test_admin_configures_provider(app, db_session, bridge):
    async with _client(app) as client:
        token = await _admin_token(client, db_session)
        headers = {"Authorization": f"Bearer {token}"}
        updated = await client.put(
            "/api/sso/config",
            json={
                "enabled": True,
                "issuerUrl": ISSUER,
                "clientId": "dashboard",
                "clientSecret": "provider-secret",
                "redirectUri": "https://dashboard.example.com/api/sso/callback",
            },
            headers=headers,
        )
        config = await client.get("/api/sso/config", headers=headers)
        status_response = await client.get("/api/sso/status")

    assert updated.status_code == 200
    assert updated.json()["state"] == "ready"
    assert config.json()["clientSecret"] == "********"
    assert status_response.json()["enabled"] is True
    assert bridge.config.client_secret == "provider-secret"


@pytest.mark.asyncio
async def test_config_routes_reject_non_admins(app, db_session):
    await create_user(db_session, email="pam@example.com", username="pam")

    async with _client(app) as client:
        login = await client.post("/api/auth/login", json={"identifier": "pam", "password": DEFAULT_PASSWORD})
        response = await client.get(
            "/api/sso/config",
            headers={"Authorization": f"Bearer {login.json()['accessToken']}"},
        )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_login_and_callback_exchange(app, bridge, provider):
    provider.claims = {
        "sub": "kc-42",
        "email": "lin@example.com",
        "name": "Lin Admin",
        "realm_access": {"roles": ["platform-admin"]},
    }
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as client:
        login = await client.get("/api/sso/login")
        state = query_params(login.json()["authUrl"])["state"]
        callback = await client.post("/api/sso/callback", json={"code": "auth-code", "state": state})
        replay = await client.post("/api/sso/callback", json={"code": "auth-code", "state": state})

    assert login.status_code == 200
    assert callback.status_code == 200
    user = callback.json()["user"]
    assert user["username"] == "lin"
    assert user["role"] == "admin"
    assert user["ssoProvider"] == bridge.issuer
    assert replay.status_code == 401


@pytest.mark.asyncio
async def test_login_redirects_when_asked(app, bridge):
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as client:
        response = await client.get("/api/sso/login", params={"redirect": "true"})

    assert response.status_code == 302
    assert response.headers["location"].startswith(bridge.metadata.authorization_endpoint)


@pytest.mark.asyncio
async def test_browser_callback_redirects_with_token(app, bridge):
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as client:
        login = await client.get("/api/sso/login")
        state = query_params(login.json()["authUrl"])["state"]
        success = await client.get("/api/sso/callback", params={"code": "auth-code", "state": state})
        replay = await client.get("/api/sso/callback", params={"code": "auth-code", "state": state})
        denied = await client.get("/api/sso/callback", params={"error": "access_denied"})

    assert success.status_code == 302
    assert query_params(success.headers["location"])["sso_token"]
    assert replay.status_code == 302
    assert query_params(replay.headers["location"]) == {"error": "token_invalid"}
    assert query_params(denied.headers["location"]) == {"error": "sso_denied"}


@pytest.mark.asyncio
async def test_login_sets_attempt_cookie(app, bridge):
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as client:
        login = await client.get("/api/sso/login")
        redirect = await client.get("/api/sso/login", params={"redirect": "true"})

    for response in (login, redirect):
        cookie = response.headers["set-cookie"]
        assert cookie.startswith("ssoAttempt=")
        assert "HttpOnly" in cookie
        assert "SameSite=lax" in cookie
        assert "Secure" in cookie


@pytest.mark.asyncio
async def test_callback_from_another_browser_is_rejected(app, bridge, provider):
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as victim, _client(app) as attacker:
        login = await attacker.get("/api/sso/login")
        state = query_params(login.json()["authUrl"])["state"]

        planted = await victim.get("/api/sso/callback", params={"code": "attacker-code", "state": state})
        posted = await victim.post("/api/sso/callback", json={"code": "attacker-code", "state": state})

        own_login = await victim.get("/api/sso/login")
        own_state = query_params(own_login.json()["authUrl"])["state"]
        own = await victim.post("/api/sso/callback", json={"code": "auth-code", "state": own_state})

    assert planted.status_code == 302
    assert query_params(planted.headers["location"]) == {"error": "token_invalid"}
    assert posted.status_code == 401
    assert [request["code"] for request in provider.token_requests] == [["auth-code"]]
    assert own.status_code == 200
    assert "ssoAttempt" not in victim.cookies


@pytest.mark.asyncio
async def test_callback_returns_directory_addresses_unchanged(app, bridge, provider):
    provider.claims = {"sub": "kc-7", "email": "ops@intranet.local", "name": "Ops Desk"}
    await bridge.configure(ProviderConfig.from_mapping(provider_settings()))

    async with _client(app) as client:
        login = await client.get("/api/sso/login")
        state = query_params(login.json()["authUrl"])["state"]
        callback = await client.post("/api/sso/callback", json={"code": "auth-code", "state": state})

    assert callback.status_code == 200
    assert callback.json()["user"]["email"] == "ops@intranet.local"
