"""Common FastAPI dependency helpers."""
from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User, UserRole
from ..db.session import get_session
from .config import settings
from .errors import TokenInvalid
from .federation import IdentityFederationBridge
from .orchestrator import AuthenticationOrchestrator, EnrollmentPrincipal
from .security import TokenIssuer
from .storage import CacheBackend, build_cache


_bearer_scheme = HTTPBearer(auto_error=False)

_cache = build_cache(settings.redis_url)
_bridge = IdentityFederationBridge(_cache)
_issuer = TokenIssuer()


def get_cache() -> CacheBackend:
    """Return the shared cache used for pending authentication state."""

    return _cache


def get_bridge() -> IdentityFederationBridge:
    return _bridge


def get_token_issuer() -> TokenIssuer:
    return _issuer


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        if candidate:
            return candidate
    client = request.client
    if client and client.host:
        return client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


async def get_orchestrator(
    db: AsyncSession = Depends(get_session),
    cache: CacheBackend = Depends(get_cache),
    bridge: IdentityFederationBridge = Depends(get_bridge),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> AuthenticationOrchestrator:
    return AuthenticationOrchestrator(db, cache=cache, bridge=bridge, issuer=issuer)


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise TokenInvalid("Not authenticated")
    return credentials.credentials


async def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    return _bearer_token(credentials)


async def get_current_user(
    request: Request,
    token: str = Depends(get_bearer_token),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> User:
    """Resolve the bearer token against the live account store."""

    return await orchestrator.authorize(token, ip_address=client_ip(request))


async def get_enrollment_principal(
    request: Request,
    token: str = Depends(get_bearer_token),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> EnrollmentPrincipal:
    return await orchestrator.authorize_enrollment(token, ip_address=client_ip(request))


def require_roles(*roles: UserRole) -> Callable[..., Awaitable[User]]:
    """Build a dependency that admits only users holding one of ``roles``."""

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        return AuthenticationOrchestrator.require_role(user, *roles)

    return _dependency


get_admin_user = require_roles(UserRole.ADMIN)


__all__ = [
    "client_ip",
    "get_admin_user",
    "get_bearer_token",
    "get_bridge",
    "get_cache",
    "get_current_user",
    "get_enrollment_principal",
    "get_orchestrator",
    "get_session",
    "get_token_issuer",
    "require_roles",
    "user_agent",
]
