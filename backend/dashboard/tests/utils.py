"""Testing utilities for dashboard tests."""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qs

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.dashboard.app.security import hash_password
from backend.dashboard.db.models import ActivityLog, User, UserRole, utcnow

DEFAULT_PASSWORD = "Sup3r$ecret!"
ISSUER = "https://idp.example.com/realms/dashboard"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    username: str,
    password: str | None = DEFAULT_PASSWORD,
    role: UserRole = UserRole.USER,
    name: str | None = None,
    active: bool = True,
    sso_provider: str | None = None,
    sso_id: str | None = None,
    created_at: datetime | None = None,
) -> User:
    """Create a user with the specified role for integration tests."""

    now = created_at or utcnow()
    user = User(
        email=email,
        username=username,
        name=name,
        password_hash=hash_password(password) if password else None,
        role=role,
        active=active,
        groups=[],
        sso_provider=sso_provider,
        sso_id=sso_id,
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def audit_actions(session: AsyncSession, *, user_id: int | None = None) -> list[str]:
    stmt = select(ActivityLog).order_by(ActivityLog.id)
    if user_id is not None:
        stmt = stmt.where(ActivityLog.user_id == user_id)
    result = await session.execute(stmt)
    return [entry.action for entry in result.scalars()]


class FakeIdentityProvider:
    """Answer discovery, token and userinfo requests like a minimal OIDC provider."""

    def __init__(
        self,
        claims: dict[str, Any] | None = None,
        *,
        issuer: str = ISSUER,
        discovery_status: int = 200,
        token_status: int = 200,
    ) -> None:
        self.issuer = issuer
        self.claims: dict[str, Any] = claims or {
            "sub": "subject-1",
            "email": "alice@example.com",
            "name": "Alice Liddell",
            "groups": ["staff"],
        }
        self.discovery_status = discovery_status
        self.token_status = token_status
        self.token_requests: list[dict[str, list[str]]] = []
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(
                self.discovery_status,
                json={
                    "issuer": self.issuer,
                    "authorization_endpoint": f"{self.issuer}/protocol/openid-connect/auth",
                    "token_endpoint": f"{self.issuer}/protocol/openid-connect/token",
                    "userinfo_endpoint": f"{self.issuer}/protocol/openid-connect/userinfo",
                },
            )
        if path.endswith("/token"):
            self.token_requests.append(parse_qs(request.content.decode("utf-8")))
            if self.token_status >= 400:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access-token", "token_type": "Bearer"})
        if path.endswith("/userinfo"):
            if request.headers.get("Authorization") != "Bearer provider-access-token":
                return httpx.Response(401, content=json.dumps({"error": "invalid_token"}))
            return httpx.Response(200, json=self.claims)
        return httpx.Response(404)


def provider_settings(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "enabled": True,
        "issuer_url": ISSUER,
        "client_id": "dashboard",
        "client_secret": "provider-secret",
        "redirect_uri": "https://dashboard.example.com/api/sso/callback",
        "scopes": "openid profile email",
        "use_pkce": True,
    }
    data.update(overrides)
    return data


def query_params(url: str) -> dict[str, str]:
    parsed = httpx.URL(url)
    return {key: value for key, value in parsed.params.items()}
