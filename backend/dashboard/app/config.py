"""Centralized application configuration for the dashboard service."""
from __future__ import annotations

from pathlib import Path

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT_DIR = Path(__file__).resolve().parents[3]
_DASHBOARD_DIR = _ROOT_DIR / "backend" / "dashboard"
_DEFAULT_ENV_FILES: tuple[Path, ...] = (
    _ROOT_DIR / ".env",
    _DASHBOARD_DIR / ".env",
)

_EMAIL_STR_ADAPTER = TypeAdapter(EmailStr)

_DEFAULT_ADMIN_GROUPS = ["admin", "administrators", "realm-management:manage-users"]
_DEFAULT_POWERUSER_GROUPS = ["poweruser", "power-users", "managers"]


def _split_list(value: list[str] | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        candidates = value.split(",")
    else:
        candidates = [str(item) for item in value]
    cleaned: list[str] = []
    for candidate in candidates:
        item = candidate.strip()
        if item and item not in cleaned:
            cleaned.append(item)
    return cleaned


class AuthSettings(BaseModel):
    """Session token, second factor and bootstrap configuration."""

    jwt_secret: str = Field(
        default="change-me-in-production",
        min_length=8,
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "AUTH__JWT_SECRET", "JWT_SECRET"),
    )
    jwt_algorithm: str = Field(
        default="HS256",
        validation_alias=AliasChoices("AUTH_JWT_ALGORITHM", "AUTH__JWT_ALGORITHM"),
    )
    session_ttl_seconds: int = Field(
        default=3_600,
        ge=60,
        validation_alias=AliasChoices("AUTH_SESSION_TTL_SECONDS", "AUTH__SESSION_TTL_SECONDS"),
        description="Fallback session lifetime when the session-timeout policy is unset.",
    )
    refresh_ttl_seconds: int = Field(
        default=86_400,
        ge=300,
        validation_alias=AliasChoices("AUTH_REFRESH_TTL_SECONDS", "AUTH__REFRESH_TTL_SECONDS"),
    )
    enrollment_token_ttl_seconds: int = Field(
        default=1_800,
        ge=60,
        le=7_200,
        validation_alias=AliasChoices(
            "AUTH_ENROLLMENT_TOKEN_TTL_SECONDS",
            "AUTH__ENROLLMENT_TOKEN_TTL_SECONDS",
        ),
    )
    verification_token_ttl_seconds: int = Field(
        default=300,
        ge=60,
        le=900,
        validation_alias=AliasChoices(
            "AUTH_VERIFICATION_TOKEN_TTL_SECONDS",
            "AUTH__VERIFICATION_TOKEN_TTL_SECONDS",
        ),
    )
    totp_issuer: str = Field(
        default="Dashboard",
        validation_alias=AliasChoices("AUTH_TOTP_ISSUER", "AUTH__TOTP_ISSUER"),
    )
    totp_valid_window: int = Field(
        default=2,
        ge=0,
        le=4,
        validation_alias=AliasChoices("AUTH_TOTP_VALID_WINDOW", "AUTH__TOTP_VALID_WINDOW"),
    )
    backup_code_count: int = Field(
        default=10,
        ge=1,
        le=32,
        validation_alias=AliasChoices("AUTH_BACKUP_CODE_COUNT", "AUTH__BACKUP_CODE_COUNT"),
    )
    cache_namespace: str = Field(
        default="auth",
        validation_alias=AliasChoices("AUTH_CACHE_NAMESPACE", "AUTH__CACHE_NAMESPACE"),
    )
    admin_email: EmailStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ADMIN_EMAIL", "AUTH__ADMIN_EMAIL"),
    )
    admin_password: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ADMIN_PASSWORD", "AUTH__ADMIN_PASSWORD"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("admin_password", mode="before")
    @classmethod
    def _clean_password(cls, value: str | None) -> str | None:
        if value is None:
            return None
        trimmed = value.strip()
        return trimmed or None

    @field_validator("admin_email", mode="before")
    @classmethod
    def _normalise_admin_email(cls, value: str | EmailStr | None) -> EmailStr | None:
        if value is None or not str(value).strip():
            return None
        normalised = str(value).strip().lower()
        return _EMAIL_STR_ADAPTER.validate_python(normalised)

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def _normalise_algorithm(cls, value: str | None) -> str:
        if value is None:
            return "HS256"
        cleaned = value.strip().upper()
        if not cleaned.startswith("HS"):
            raise ValueError("Only HMAC signing algorithms are supported for session tokens")
        return cleaned

    @field_validator("cache_namespace", mode="before")
    @classmethod
    def _normalise_namespace(cls, value: str | None) -> str:
        if value is None:
            return "auth"
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Cache namespace must be a non-empty string")
        return cleaned


class SsoSettings(BaseModel):
    """Bootstrap OIDC provider and federation behaviour."""

    enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("SSO_ENABLED", "SSO__ENABLED"),
    )
    issuer_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SSO_ISSUER_URL", "SSO__ISSUER_URL"),
    )
    client_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SSO_CLIENT_ID", "SSO__CLIENT_ID"),
    )
    client_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SSO_CLIENT_SECRET", "SSO__CLIENT_SECRET"),
    )
    redirect_uri: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SSO_REDIRECT_URI", "SSO__REDIRECT_URI"),
    )
    scopes: str = Field(
        default="openid profile email",
        validation_alias=AliasChoices("SSO_SCOPES", "SSO__SCOPES"),
    )
    use_pkce: bool = Field(
        default=True,
        validation_alias=AliasChoices("SSO_USE_PKCE", "SSO__USE_PKCE"),
        description="Disable only for providers that reject PKCE parameters.",
    )
    state_ttl_seconds: int = Field(
        default=600,
        ge=60,
        le=3_600,
        validation_alias=AliasChoices("SSO_STATE_TTL_SECONDS", "SSO__STATE_TTL_SECONDS"),
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("SSO_HTTP_TIMEOUT_SECONDS", "SSO__HTTP_TIMEOUT_SECONDS"),
    )
    attempt_cookie_name: str = Field(
        default="ssoAttempt",
        min_length=1,
        validation_alias=AliasChoices("SSO_ATTEMPT_COOKIE_NAME", "SSO__ATTEMPT_COOKIE_NAME"),
        description="HttpOnly cookie binding a pending login attempt to the browser that started it.",
    )
    cookie_secure: bool = Field(
        default=True,
        validation_alias=AliasChoices("SSO_COOKIE_SECURE", "SSO__COOKIE_SECURE"),
        description="Mark the login attempt cookie as secure (HTTPS only).",
    )
    admin_groups: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_ADMIN_GROUPS),
        validation_alias=AliasChoices("SSO_ADMIN_GROUPS", "SSO__ADMIN_GROUPS"),
    )
    poweruser_groups: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_POWERUSER_GROUPS),
        validation_alias=AliasChoices("SSO_POWERUSER_GROUPS", "SSO__POWERUSER_GROUPS"),
    )
    success_redirect: str = Field(
        default="/",
        validation_alias=AliasChoices("SSO_SUCCESS_REDIRECT", "SSO__SUCCESS_REDIRECT"),
    )
    error_redirect: str = Field(
        default="/login",
        validation_alias=AliasChoices("SSO_ERROR_REDIRECT", "SSO__ERROR_REDIRECT"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("issuer_url", "client_id", "client_secret", "redirect_uri", mode="before")
    @classmethod
    def _clean_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("admin_groups", "poweruser_groups", mode="before")
    @classmethod
    def _normalise_groups(cls, value: list[str] | str | None) -> list[str]:
        return list(dict.fromkeys(item.lower() for item in _split_list(value)))

    @property
    def configured(self) -> bool:
        """Return ``True`` when a bootstrap provider can be discovered."""

        return bool(self.enabled and self.issuer_url and self.client_id and self.redirect_uri)


class StorageSettings(BaseModel):
    """Relational and cache storage configuration."""

    database_url: str = Field(
        default="sqlite+aiosqlite:///./dashboard.db",
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "STORAGE__REDIS_URL"),
    )
    sqlalchemy_echo: bool | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SQLALCHEMY_ECHO",
            "DATABASE_ECHO",
            "STORAGE__SQLALCHEMY_ECHO",
        ),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("database_url", mode="before")
    @classmethod
    def _ensure_database_url(cls, value: str | None) -> str:
        """Ensure that a usable database URL is provided."""

        if value is None:
            raise ValueError("DATABASE_URL must be configured")

        url = value.strip()
        if not url:
            raise ValueError("DATABASE_URL must be a non-empty string")
        return url

    @field_validator("redis_url", mode="before")
    @classmethod
    def _clean_redis_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class Settings(BaseSettings):
    """Top level dashboard configuration."""

    env: str = Field(default="dev", validation_alias=AliasChoices("ENV", "APP_ENV"))
    auth: AuthSettings = Field(default_factory=AuthSettings)
    sso: SsoSettings = Field(default_factory=SsoSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        return self.storage.database_url

    @property
    def redis_url(self) -> str | None:
        return self.storage.redis_url

    @property
    def sqlalchemy_echo(self) -> bool:
        if self.storage.sqlalchemy_echo is not None:
            return self.storage.sqlalchemy_echo
        return False


settings = Settings()

__all__ = [
    "AuthSettings",
    "Settings",
    "SsoSettings",
    "StorageSettings",
    "settings",
]
