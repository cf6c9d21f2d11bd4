"""OpenID Connect federation with an external identity provider."""
from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import json
import re
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import urlencode

import httpx

from ..db.models import User, UserRole
from .config import SsoSettings, settings
from .credentials import CredentialStore
from .errors import ConfigurationError, TokenInvalid
from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("dashboard.federation")

_USERNAME_SANITISER = re.compile(r"[^a-z0-9._-]")


class BridgeState(str, enum.Enum):
    UNCONFIGURED = "unconfigured"
    DISCOVERING = "discovering"
    READY = "ready"


@dataclass(frozen=True)
class ProviderConfig:
    """Connection details for the single active identity provider."""

    enabled: bool = False
    issuer_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    scopes: str = "openid profile email"
    use_pkce: bool = True

    @classmethod
    def from_settings(cls, source: SsoSettings) -> "ProviderConfig":
        return cls(
            enabled=source.enabled,
            issuer_url=source.issuer_url or "",
            client_id=source.client_id or "",
            client_secret=source.client_secret or "",
            redirect_uri=source.redirect_uri or "",
            scopes=source.scopes,
            use_pkce=source.use_pkce,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        """Accept both the stored snake_case form and the camelCase API form."""

        def pick(snake: str, camel: str, default: Any) -> Any:
            if snake in data and data[snake] is not None:
                return data[snake]
            if camel in data and data[camel] is not None:
                return data[camel]
            return default

        return cls(
            enabled=bool(pick("enabled", "enabled", False)),
            issuer_url=str(pick("issuer_url", "issuerUrl", "")).strip(),
            client_id=str(pick("client_id", "clientId", "")).strip(),
            client_secret=str(pick("client_secret", "clientSecret", "")).strip(),
            redirect_uri=str(pick("redirect_uri", "redirectUri", "")).strip(),
            scopes=str(pick("scopes", "scopes", "openid profile email")).strip() or "openid profile email",
            use_pkce=bool(pick("use_pkce", "usePkce", True)),
        )

    @property
    def complete(self) -> bool:
        return bool(self.enabled and self.issuer_url and self.client_id and self.redirect_uri)

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)

    def masked(self) -> dict[str, Any]:
        data = self.to_mapping()
        data["client_secret"] = "********" if self.client_secret else ""
        return data


@dataclass(frozen=True)
class ProviderMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str


@dataclass(frozen=True)
class AuthorizationRequest:
    """Provider redirect for one login attempt.

    ``attempt_id`` stays with the browser that started the attempt (the
    routes keep it in an HttpOnly cookie); the callback must present it
    together with the matching ``state``.
    """

    url: str
    state: str
    attempt_id: str


@dataclass(frozen=True)
class FederatedIdentity:
    """Provider-neutral view of the claims returned by the identity provider."""

    subject: str
    email: str
    display_name: str
    groups: list[str] = field(default_factory=list)
    picture: str | None = None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if isinstance(item, (str, int)) and str(item).strip()]


def extract_groups(claims: Mapping[str, Any]) -> list[str]:
    """Read group membership from the shapes used by common providers.

    Supported, in order: a flat ``groups`` list, Keycloak style
    ``realm_access.roles`` and per-client ``resource_access.<client>.roles``.
    """

    groups = _string_list(claims.get("groups"))
    if groups:
        return groups

    realm_access = claims.get("realm_access")
    if isinstance(realm_access, Mapping):
        roles = _string_list(realm_access.get("roles"))
        if roles:
            return roles

    resource_access = claims.get("resource_access")
    if isinstance(resource_access, Mapping):
        collected = _string_list(resource_access.get("roles"))
        for client, entry in resource_access.items():
            if isinstance(entry, Mapping):
                collected.extend(f"{client}:{role}" for role in _string_list(entry.get("roles")))
        return collected
    return []


def normalize_claims(claims: Mapping[str, Any]) -> FederatedIdentity:
    subject = str(claims.get("sub") or "").strip()
    email = str(claims.get("email") or "").strip().lower()
    if not subject or not email:
        raise ConfigurationError("Identity provider did not return a subject and an e-mail address")
    display_name = str(
        claims.get("name") or claims.get("preferred_username") or email
    ).strip()
    picture = claims.get("picture")
    return FederatedIdentity(
        subject=subject,
        email=email,
        display_name=display_name,
        groups=extract_groups(claims),
        picture=picture if isinstance(picture, str) else None,
    )


def map_role(
    groups: Iterable[str],
    admin_groups: Iterable[str] | None = None,
    poweruser_groups: Iterable[str] | None = None,
) -> UserRole:
    """Pick the local role whose configured names appear inside a group name."""

    admin = [name.lower() for name in (admin_groups if admin_groups is not None else settings.sso.admin_groups)]
    power = [
        name.lower() for name in (poweruser_groups if poweruser_groups is not None else settings.sso.poweruser_groups)
    ]
    lowered = [group.lower() for group in groups]
    if any(candidate in group for group in lowered for candidate in admin):
        return UserRole.ADMIN
    if any(candidate in group for group in lowered for candidate in power):
        return UserRole.POWERUSER
    return UserRole.USER


def avatar_initials(display_name: str) -> str:
    parts = [part for part in display_name.split() if part]
    return "".join(part[0] for part in parts).upper()[:2] or "?"


def username_base(email: str) -> str:
    local = email.split("@", 1)[0].lower()
    return _USERNAME_SANITISER.sub("", local) or "user"


def _pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class IdentityFederationBridge:
    """Single-provider OIDC client.

    Provider configuration is swapped as a whole by :meth:`configure`. Each
    pending login attempt lives in the cache under its own attempt id, with
    its ``state`` and PKCE verifier, so concurrent logins never share them.
    """

    def __init__(
        self,
        cache: CacheBackend,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self._cache = cache
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.sso.http_timeout_seconds
        self._state = BridgeState.UNCONFIGURED
        self._config = ProviderConfig()
        self._metadata: ProviderMetadata | None = None

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def metadata(self) -> ProviderMetadata | None:
        return self._metadata

    @property
    def issuer(self) -> str:
        return self._config.issuer_url

    @property
    def ready(self) -> bool:
        return self._state is BridgeState.READY and self._metadata is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _attempt_key(self, attempt_id: str) -> str:
        return f"{settings.auth.cache_namespace}:sso:attempt:{attempt_id}"

    def reset(self, config: ProviderConfig | None = None) -> None:
        self._config = config or ProviderConfig()
        self._metadata = None
        self._state = BridgeState.UNCONFIGURED

    async def configure(self, config: ProviderConfig) -> BridgeState:
        """Discover ``config``'s issuer and switch to it.

        Disabled or incomplete configuration leaves the bridge unconfigured.
        A discovery failure also leaves it unconfigured and raises
        :class:`ConfigurationError`.
        """

        if not config.complete:
            self.reset(config)
            logger.info("sso_provider_disabled", issuer=config.issuer_url or None)
            return self._state

        self._metadata = None
        self._state = BridgeState.DISCOVERING
        self._config = config
        discovery_url = f"{config.issuer_url.rstrip('/')}/.well-known/openid-configuration"
        try:
            async with self._client() as client:
                response = await client.get(discovery_url)
            if response.status_code >= 400:
                raise ConfigurationError(f"Discovery failed with status {response.status_code}")
            document = response.json()
            metadata = ProviderMetadata(
                issuer=str(document.get("issuer") or config.issuer_url),
                authorization_endpoint=str(document["authorization_endpoint"]),
                token_endpoint=str(document["token_endpoint"]),
                userinfo_endpoint=str(document["userinfo_endpoint"]),
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError, ConfigurationError) as exc:
            self.reset(config)
            logger.warning("sso_discovery_failed", issuer=config.issuer_url, error=str(exc))
            raise ConfigurationError("Identity provider discovery failed. Check the issuer URL.") from exc

        self._metadata = metadata
        self._state = BridgeState.READY
        logger.info("sso_provider_ready", issuer=config.issuer_url)
        return self._state

    def _require_ready(self) -> ProviderMetadata:
        if not self.ready or self._metadata is None:
            raise ConfigurationError()
        return self._metadata

    async def begin_login(self) -> AuthorizationRequest:
        metadata = self._require_ready()
        attempt_id = secrets.token_urlsafe(32)
        state = secrets.token_urlsafe(32)
        pending: dict[str, Any] = {"state": state, "redirect_uri": self._config.redirect_uri}
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "scope": self._config.scopes,
            "state": state,
        }
        if self._config.use_pkce:
            verifier = secrets.token_urlsafe(64)
            pending["code_verifier"] = verifier
            params["code_challenge"] = _pkce_challenge(verifier)
            params["code_challenge_method"] = "S256"

        await self._cache.set(
            self._attempt_key(attempt_id),
            json.dumps(pending).encode("utf-8"),
            ttl=settings.sso.state_ttl_seconds,
        )
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"
        logger.info("sso_login_started", issuer=self._config.issuer_url, pkce=self._config.use_pkce)
        return AuthorizationRequest(url=url, state=state, attempt_id=attempt_id)

    async def discard_login(self, attempt_id: str | None) -> None:
        if attempt_id:
            await self._cache.delete(self._attempt_key(attempt_id))

    async def complete_callback(
        self,
        code: str | None,
        state: str | None,
        *,
        attempt_id: str | None,
    ) -> FederatedIdentity:
        """Exchange ``code`` and return the normalised identity.

        The attempt named by ``attempt_id`` must exist and carry the same
        ``state``. It is removed before any comparison or network call, so it
        can be used at most once whatever the outcome.
        """

        raw = await self._cache.pop(self._attempt_key(attempt_id)) if attempt_id else None
        pending = json.loads(raw) if raw is not None else {}
        expected = str(pending.get("state") or "")
        if not expected or not state or not hmac.compare_digest(expected.encode(), state.encode()):
            logger.warning("sso_state_rejected", attempt_found=raw is not None)
            raise TokenInvalid("Sign-in request expired or was already used. Start again.")
        metadata = self._require_ready()
        if not code:
            raise TokenInvalid("Identity provider did not return an authorization code")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.get("redirect_uri") or self._config.redirect_uri,
            "client_id": self._config.client_id,
        }
        if self._config.client_secret:
            form["client_secret"] = self._config.client_secret
        if pending.get("code_verifier"):
            form["code_verifier"] = pending["code_verifier"]

        try:
            async with self._client() as client:
                token_response = await client.post(metadata.token_endpoint, data=form)
                if token_response.status_code >= 400:
                    raise ConfigurationError(f"Token exchange failed with status {token_response.status_code}")
                access_token = token_response.json()["access_token"]
                userinfo_response = await client.get(
                    metadata.userinfo_endpoint,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                if userinfo_response.status_code >= 400:
                    raise ConfigurationError(f"Userinfo request failed with status {userinfo_response.status_code}")
                claims = userinfo_response.json()
        except (httpx.HTTPError, ValueError, KeyError, TypeError, ConfigurationError) as exc:
            logger.warning("sso_exchange_failed", issuer=self._config.issuer_url, error=str(exc))
            raise ConfigurationError("Sign-in with the identity provider failed. Try again.") from exc

        if not isinstance(claims, Mapping):
            raise ConfigurationError("Identity provider returned malformed claims")
        return normalize_claims(claims)

    async def link_account(self, store: CredentialStore, identity: FederatedIdentity) -> tuple[User, bool]:
        """Create or refresh the local account for ``identity``.

        Returns the user and whether it was created. Role and groups are
        re-synced from the provider on every login and the account is
        reactivated.
        """

        issuer = self._config.issuer_url
        role = map_role(identity.groups)
        existing = await store.get_by_external_identity(issuer, identity.subject)
        if existing is not None:
            await store.update(
                existing.id,
                display_name=identity.display_name,
                role=role,
                groups=list(identity.groups),
                active=True,
            )
            await store.record_login(existing.id)
            return existing, False

        base = username_base(identity.email)
        candidate = base
        suffix = 0
        while await store.username_exists(candidate):
            suffix += 1
            candidate = f"{base}{suffix}"

        user = await store.create_user(
            username=candidate,
            email=identity.email,
            role=role,
            name=identity.display_name,
            display_name=identity.display_name,
            avatar=avatar_initials(identity.display_name),
            groups=identity.groups,
            sso_provider=issuer,
            sso_id=identity.subject,
        )
        await store.record_login(user.id)
        return user, True


__all__ = [
    "AuthorizationRequest",
    "BridgeState",
    "FederatedIdentity",
    "IdentityFederationBridge",
    "ProviderConfig",
    "ProviderMetadata",
    "avatar_initials",
    "extract_groups",
    "map_role",
    "normalize_claims",
    "username_base",
]
