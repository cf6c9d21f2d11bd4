"""Single sign-on endpoints backed by the identity federation bridge."""
from __future__ import annotations

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response, Security, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from ...db.models import User
from ..config import settings
from ..dependencies import client_ip, get_admin_user, get_orchestrator, user_agent
from ..errors import AuthError
from ..logging import get_logger
from ..orchestrator import AuthenticationOrchestrator, SsoStatus
from .auth import TokenResponse, token_response

router = APIRouter(prefix="/sso", tags=["sso"])

logger = get_logger("dashboard.routes.sso")


class SsoStatusResponse(BaseModel):
    state: str
    enabled: bool
    issuer_url: str | None = Field(default=None, alias="issuerUrl")

    model_config = ConfigDict(populate_by_name=True)


class SsoConfigResource(BaseModel):
    enabled: bool = False
    issuer_url: str = Field(default="", alias="issuerUrl")
    client_id: str = Field(default="", alias="clientId")
    client_secret: str = Field(default="", alias="clientSecret")
    redirect_uri: str = Field(default="", alias="redirectUri")
    scopes: str = "openid profile email"
    use_pkce: bool = Field(default=True, alias="usePkce")

    model_config = ConfigDict(populate_by_name=True)


class LoginUrlResponse(BaseModel):
    auth_url: str = Field(alias="authUrl")

    model_config = ConfigDict(populate_by_name=True)


class CallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True)


def _status_response(result: SsoStatus) -> SsoStatusResponse:
    return SsoStatusResponse(state=result.state.value, enabled=result.enabled, issuer_url=result.issuer_url)


def _with_query(path: str, **params: str) -> str:
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}{urlencode(params)}"


def _set_attempt_cookie(response: Response, attempt_id: str) -> None:
    response.set_cookie(
        key=settings.sso.attempt_cookie_name,
        value=attempt_id,
        httponly=True,
        secure=settings.sso.cookie_secure,
        samesite="lax",
        max_age=settings.sso.state_ttl_seconds,
        path="/",
    )


def _clear_attempt_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.sso.attempt_cookie_name,
        path="/",
        httponly=True,
        secure=settings.sso.cookie_secure,
        samesite="lax",
    )


@router.get("/status", response_model=SsoStatusResponse)
async def sso_status(
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> SsoStatusResponse:
    return _status_response(orchestrator.sso_status())


@router.get("/config", response_model=SsoConfigResource)
async def get_config(
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> SsoConfigResource:
    return SsoConfigResource(**orchestrator.sso_config(admin))


@router.put("/config", response_model=SsoStatusResponse)
async def update_config(
    payload: SsoConfigResource,
    request: Request,
    admin: User = Security(get_admin_user),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> SsoStatusResponse:
    result = await orchestrator.update_sso_config(
        admin,
        payload.model_dump(),
        ip_address=client_ip(request),
    )
    return _status_response(result)


@router.get("/login", response_model=LoginUrlResponse)
async def sso_login(
    response: Response,
    redirect: bool = Query(default=False),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
):
    attempt = await orchestrator.begin_sso_login()
    if redirect:
        redirect_response = RedirectResponse(url=attempt.url, status_code=status.HTTP_302_FOUND)
        _set_attempt_cookie(redirect_response, attempt.attempt_id)
        return redirect_response
    _set_attempt_cookie(response, attempt.attempt_id)
    return LoginUrlResponse(auth_url=attempt.url)


@router.get("/callback", response_class=RedirectResponse)
async def sso_callback_redirect(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    """Browser leg of the callback: redirect with the session token or an error code."""

    attempt_id = request.cookies.get(settings.sso.attempt_cookie_name)
    if error:
        logger.warning("sso_provider_error", error=error)
        await orchestrator.discard_sso_login(attempt_id)
        response = RedirectResponse(
            url=_with_query(settings.sso.error_redirect, error="sso_denied"),
            status_code=status.HTTP_302_FOUND,
        )
        _clear_attempt_cookie(response)
        return response
    try:
        result = await orchestrator.complete_sso_login(
            code,
            state,
            attempt_id=attempt_id,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except AuthError as exc:
        response = RedirectResponse(
            url=_with_query(settings.sso.error_redirect, error=exc.code),
            status_code=status.HTTP_302_FOUND,
        )
    else:
        response = RedirectResponse(
            url=_with_query(settings.sso.success_redirect, sso_token=result.token),
            status_code=status.HTTP_302_FOUND,
        )
    _clear_attempt_cookie(response)
    return response


@router.post("/callback", response_model=TokenResponse)
async def sso_callback(
    payload: CallbackRequest,
    request: Request,
    response: Response,
    orchestrator: AuthenticationOrchestrator = Depends(get_orchestrator),
) -> TokenResponse:
    result = await orchestrator.complete_sso_login(
        payload.code,
        payload.state,
        attempt_id=request.cookies.get(settings.sso.attempt_cookie_name),
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    _clear_attempt_cookie(response)
    return token_response(result)


__all__ = ["router"]
