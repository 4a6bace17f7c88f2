from __future__ import annotations

from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Header

from iamauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    PrincipalResponse,
    RefreshRequest,
    TokenResponse,
)
from iamauth.logging import get_logger
from iamauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    InvalidRefreshTokenError,
    ServiceUnavailableError,
)
from iamauth.service.results import (
    AccountLocked,
    Authenticated,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidRefreshToken,
    LoginSuccess,
    LogoutSuccess,
    RefreshSuccess,
    TransientStoreError,
)
from iamauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Seconds a client should wait before retrying after a store outage
TRANSIENT_RETRY_AFTER_SECONDS = 1


def _raise_transient(result: TransientStoreError) -> NoReturn:
    raise ServiceUnavailableError(
        result.message,
        detail={
            "stage": result.stage,
            "retryable": result.retryable,
            "retry_after_seconds": TRANSIENT_RETRY_AFTER_SECONDS,
        },
    )


def _token_envelope(result: LoginSuccess | RefreshSuccess) -> Envelope:
    return Envelope(
        status="ok",
        data=TokenResponse(
            account_id=result.account_id,
            access_token=result.access_token,
            access_expires_at=result.access_expires_at,
            refresh_token=result.refresh_token,
            refresh_expires_at=result.refresh_expires_at,
            token_type=result.token_type,
        ),
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Authenticated:
    runtime = get_runtime()
    result = runtime.auth.authenticate(_bearer_token(authorization))
    if isinstance(result, InvalidAccessToken):
        raise AuthenticationError(result.message)
    return result


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange an email (or username) and password for an access/refresh pair.

    Raises:
        401: credentials rejected; the message never says which part was wrong
        423: account locked; ``Retry-After`` carries the remaining seconds
        503: directory or session store unavailable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    if isinstance(result, LoginSuccess):
        return _token_envelope(result)
    if isinstance(result, AccountLocked):
        raise AccountLockedError(
            result.message, detail={"retry_after_seconds": result.retry_after_seconds}
        )
    if isinstance(result, InvalidCredentials):
        raise AuthenticationError(result.message)
    _raise_transient(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    if isinstance(result, RefreshSuccess):
        return _token_envelope(result)
    if isinstance(result, InvalidRefreshToken):
        # Replay is logged server-side; the client sees the same rejection
        raise InvalidRefreshTokenError(result.message)
    _raise_transient(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    result = await runtime.auth.logout(body.refresh_token or "")
    if isinstance(result, LogoutSuccess):
        return Envelope(status="ok", data=LogoutResponse(revoked=result.revoked))
    _raise_transient(result)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Authenticated = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal.account_id)
    if isinstance(result, LogoutSuccess):
        return Envelope(status="ok", data=LogoutResponse(revoked=result.revoked))
    _raise_transient(result)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Authenticated = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            account_id=principal.account_id,
            expires_at=principal.expires_at,
            key_id=principal.key_id,
            jti=principal.jti,
        ),
    )
