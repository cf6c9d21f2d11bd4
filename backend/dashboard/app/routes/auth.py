"""Authentication API endpoints."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Security, status
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field

from ...db.models import User
from ..dependencies import client_ip, get_current_user, get_orchestrator, user_agent
from ..orchestrator import AuthenticatedSession, AuthenticationOrchestrator

router = APIRouter(prefix="/auth", tags=["auth"])


class UserResource(BaseModel):
    id: int
    email: str
    username: str
    name: str | None = None
    display_name: str = Field(alias="displayName")
    avatar: str | None = None
    role: str
    permissions: list[str]
    active: bool
    is_admin: bool = Field(alias="isAdmin")
    sso_provider: str | None = Field(default=None, alias="ssoProvider")
    groups: list[str] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")
    last_login_at: datetime | None = Field(default=None, alias="lastLoginAt")
    login_count: int = Field(default=0, alias="loginCount")

    model_config = ConfigDict(populate_by_name=True)


class TokenResponse(BaseModel):
    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")
    expires_at: datetime = Field(alias="expiresAt")
    user: UserResource

    model_config = ConfigDict(populate_by_name=True)


class OperationStatus(BaseModel):
    detail: str

    model_config = ConfigDict(populate_by_name=True)


class SetupStatusResponse(BaseModel):
    initialized: bool
    needs_setup: bool = Field(alias="needsSetup")

    model_config = ConfigDict(populate_by_name=True)


class SetupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    name: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(BaseModel):
    identifier: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("identifier", "username", "email"),
    )
    password: str = Field(min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class SecondFactorLoginRequest(BaseModel):
    temporary_token: str = Field(min_length=16, alias="temporaryToken")
    code: str = Field(min_length=6, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255, alias="currentPassword")
    new_password: str = Field(min_length=1, max_length=255, alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


def serialize_user(user: User) -> UserResource:
    return UserResource(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        display_name=user.shown_name,
        avatar=user.avatar,
        role=getattr(user.role, "value", str(user.role)),
        permissions=user.permissions,
        active=user.active,
        is_admin=user.is_admin,
        sso_provider=user.sso_provider,
        groups=list(user.groups or []),
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        login_count=user.login_count or 0,
    )


def token_response(result: AuthenticatedSession) -> TokenResponse:
    return TokenResponse(
        access_token=result.token,
        expires_in=result.expires_in,
        expires_at=result.expires_at,
        user=serialize_user(result.user),
    )


@router.get("/setup-status", response_model=SetupStatusResponse)
async def setup_status(
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> SetupStatusResponse:
    initialized = await orchestrator.setup_status()
    return SetupStatusResponse(initialized=initialized, needs_setup=not initialized)


@router.post("/setup", response_model=UserResource, status_code=status.HTTP_201_CREATED)
async def setup(
    payload: SetupRequest,
    request: Request,
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> UserResource:
    user = await orchestrator.setup_first_admin(
        email=payload.email,
        password=payload.password,
        name=payload.name,
        ip_address=client_ip(request),
    )
    return serialize_user(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TokenResponse:
    result = await orchestrator.login(
        payload.identifier,
        payload.password,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return token_response(result)


@router.post("/login/2fa", response_model=TokenResponse)
async def login_second_factor(
    payload: SecondFactorLoginRequest,
    request: Request,
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TokenResponse:
    result = await orchestrator.complete_second_factor(
        payload.temporary_token,
        payload.code,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return token_response(result)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    current_user: User = Security(get_current_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TokenResponse:
    result = await orchestrator.refresh(current_user, ip_address=client_ip(request))
    return token_response(result)


@router.get("/me", response_model=UserResource)
async def get_me(current_user: User = Security(get_current_user)) -> UserResource:
    return serialize_user(current_user)


@router.post("/logout", response_model=OperationStatus)
async def logout(
    request: Request,
    current_user: User = Security(get_current_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.logout(current_user, ip_address=client_ip(request), user_agent=user_agent(request))
    return OperationStatus(detail="Logged out")


@router.post("/password", response_model=OperationStatus)
async def change_password(
    payload: PasswordChangeRequest,
    request: Request,
    current_user: User = Security(get_current_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.change_password(
        current_user,
        current_password=payload.current_password,
        new_password=payload.new_password,
        ip_address=client_ip(request),
    )
    return OperationStatus(detail="Password updated")


__all__ = [
    "OperationStatus",
    "TokenResponse",
    "UserResource",
    "router",
    "serialize_user",
    "token_response",
]
