"""FastAPI application factory for the dashboard service."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..db.base import create_engine, create_session, dispose_engine
from .config import settings
from .dependencies import get_bridge, get_cache, get_token_issuer
from .errors import (
    AccountConflict,
    AccountDisabled,
    AccountLocked,
    AuthError,
    ConfigurationError,
    EnrollmentRequired,
    InvalidCode,
    InvalidCredentials,
    IPNotAllowed,
    PermissionDenied,
    SecondFactorRequired,
    SetupAlreadyCompleted,
    TokenExpired,
    TokenInvalid,
    TwoFactorNotEnrolled,
    UserNotFound,
    WeakPassword,
)
from .logging import get_logger, setup_logging
from .orchestrator import AuthenticationOrchestrator
from .routes import auth, sso, two_factor

setup_logging()

logger = get_logger("dashboard.main")

_STATUS_BY_ERROR: dict[type[AuthError], int] = {
    InvalidCredentials: status.HTTP_401_UNAUTHORIZED,
    TokenExpired: status.HTTP_401_UNAUTHORIZED,
    TokenInvalid: status.HTTP_401_UNAUTHORIZED,
    UserNotFound: status.HTTP_401_UNAUTHORIZED,
    AccountLocked: status.HTTP_423_LOCKED,
    AccountDisabled: status.HTTP_403_FORBIDDEN,
    EnrollmentRequired: status.HTTP_403_FORBIDDEN,
    IPNotAllowed: status.HTTP_403_FORBIDDEN,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    SecondFactorRequired: status.HTTP_202_ACCEPTED,
    InvalidCode: status.HTTP_400_BAD_REQUEST,
    WeakPassword: status.HTTP_400_BAD_REQUEST,
    TwoFactorNotEnrolled: status.HTTP_400_BAD_REQUEST,
    AccountConflict: status.HTTP_409_CONFLICT,
    SetupAlreadyCompleted: status.HTTP_409_CONFLICT,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: AuthError) -> int:
    for error_type in type(error).__mro__:
        code = _STATUS_BY_ERROR.get(error_type)  # type: ignore[arg-type]
        if code is not None:
            return code
    return status.HTTP_400_BAD_REQUEST


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info("auth_error", code=exc.code, status=status_code, path=request.url.path)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "detail": "Something went wrong. Try again later."},
    )


async def _load_provider() -> None:
    session = create_session()
    try:
        orchestrator = AuthenticationOrchestrator(
            session,
            cache=get_cache(),
            bridge=get_bridge(),
            issuer=get_token_issuer(),
        )
        result = await orchestrator.load_sso_config()
        logger.info("sso_provider_loaded", state=result.state.value)
    finally:
        await session.close()


@asynccontextmanager
async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
    """Initialise and tear down shared application resources."""

    create_engine(settings.database_url, echo=settings.sqlalchemy_echo)
    try:
        await _load_provider()
        yield
    finally:
        await dispose_engine()


def create_app(*, api_prefix: str | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers should be mounted. When
        ``None`` the routers are mounted at the application root.
    """

    app = FastAPI(title="Dashboard", version="1.0", lifespan=_lifespan)

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    router_prefix = (api_prefix or "").rstrip("/")
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"
    for module in (auth, two_factor, sso):
        app.include_router(module.router, prefix=router_prefix)

    return app


app = create_app(api_prefix="/api")
