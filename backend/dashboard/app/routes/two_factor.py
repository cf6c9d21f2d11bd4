"""Two-factor authentication endpoints."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Security
from pydantic import BaseModel, ConfigDict, Field

from ...db.models import User
from ..dependencies import (
    client_ip,
    get_admin_user,
    get_current_user,
    get_enrollment_principal,
    get_orchestrator,
)
from ..orchestrator import AuthenticationOrchestrator, EnrollmentPrincipal, TwoFactorDetails
from .auth import OperationStatus

router = APIRouter(prefix="/2fa", tags=["2fa"])


class SetupResponse(BaseModel):
    secret: str
    otpauth_url: str = Field(alias="otpauthUrl")
    qr_code: str = Field(alias="qrCode")
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True)


class CodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class VerifyResponse(BaseModel):
    verified: bool
    detail: str

    model_config = ConfigDict(populate_by_name=True)


class DisableRequest(BaseModel):
    password: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorStatusResponse(BaseModel):
    user_id: int = Field(alias="userId")
    enabled: bool
    backup_codes_remaining: int = Field(alias="backupCodesRemaining")
    required: bool
    forced_enrollment: bool = Field(alias="forcedEnrollment")
    grace_period_days: int = Field(alias="gracePeriodDays")

    model_config = ConfigDict(populate_by_name=True)


class EnforcementStatusResponse(BaseModel):
    mode: str
    enforce_all_users: bool = Field(alias="enforce2faAllUsers")
    enforce_admins_only: bool = Field(alias="enforce2faAdminsOnly")
    grace_period_days: int = Field(alias="gracePeriodDays")
    enabled_at: datetime | None = Field(default=None, alias="enabledAt")
    users_with_2fa: int = Field(alias="usersWithTwoFactor")
    grace_period_expires: datetime | None = Field(default=None, alias="gracePeriodExpires")

    model_config = ConfigDict(populate_by_name=True)


def _status_response(details: TwoFactorDetails) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(
        user_id=details.user_id,
        enabled=details.enabled,
        backup_codes_remaining=details.backup_codes_remaining,
        required=details.required,
        forced_enrollment=details.forced_enrollment,
        grace_period_days=details.grace_period_days,
    )


@router.post("/setup", response_model=SetupResponse)
async def setup(
    principal: EnrollmentPrincipal = Depends(get_enrollment_principal),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> SetupResponse:
    material = await orchestrator.begin_enrollment(principal)
    return SetupResponse(
        secret=material.secret,
        otpauth_url=material.otpauth_uri,
        qr_code=material.qr_code,
        backup_codes=material.backup_codes,
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    payload: CodeRequest,
    request: Request,
    principal: EnrollmentPrincipal = Depends(get_enrollment_principal),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> VerifyResponse:
    await orchestrator.confirm_enrollment(principal, payload.code, ip_address=client_ip(request))
    return VerifyResponse(verified=True, detail="Two-factor authentication enabled")


@router.post("/disable", response_model=OperationStatus)
async def disable(
    payload: DisableRequest,
    request: Request,
    current_user: User = Security(get_current_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.disable_two_factor(current_user, password=payload.password, ip_address=client_ip(request))
    return OperationStatus(detail="Two-factor authentication disabled")


@router.get("/status", response_model=TwoFactorStatusResponse)
async def status(
    current_user: User = Security(get_current_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TwoFactorStatusResponse:
    return _status_response(await orchestrator.two_factor_details(current_user))


@router.get("/enforcement-status", response_model=EnforcementStatusResponse)
async def enforcement_status(
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> EnforcementStatusResponse:
    overview = await orchestrator.enforcement_overview(admin)
    return EnforcementStatusResponse(
        mode=overview.mode.value,
        enforce_all_users=overview.mode.value == "all-users",
        enforce_admins_only=overview.mode.value == "admins-only",
        grace_period_days=overview.grace_period_days,
        enabled_at=overview.enabled_at,
        users_with_2fa=overview.enrolled_users,
        grace_period_expires=overview.grace_period_expires,
    )


@router.get("/admin/users/{user_id}", response_model=TwoFactorStatusResponse)
async def user_details(
    user_id: int,
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TwoFactorStatusResponse:
    return _status_response(await orchestrator.user_two_factor_details(admin, user_id))


@router.post("/admin/users/{user_id}/reset", response_model=OperationStatus)
async def reset(
    user_id: int,
    request: Request,
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.admin_reset_two_factor(admin, user_id, ip_address=client_ip(request))
    return OperationStatus(detail="Two-factor authentication reset")


@router.post("/admin/users/{user_id}/force-enroll", response_model=OperationStatus)
async def force_enroll(
    user_id: int,
    request: Request,
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.force_enrollment(admin, user_id, required=True, ip_address=client_ip(request))
    return OperationStatus(detail="User must enroll at next login")


@router.delete("/admin/users/{user_id}/force-enroll", response_model=OperationStatus)
async def clear_force_enroll(
    user_id: int,
    request: Request,
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> OperationStatus:
    await orchestrator.force_enrollment(admin, user_id, required=False, ip_address=client_ip(request))
    return OperationStatus(detail="Immediate enrollment requirement cleared")


__all__ = ["router"]
