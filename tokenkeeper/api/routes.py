from __future__ import annotations

import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from tokenkeeper.api.schemas import (
    AccountResponse,
    AuthResponse,
    Envelope,
    HealthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from tokenkeeper.logging import get_correlation_id, get_logger
from tokenkeeper.service.auth import AuthResult
from tokenkeeper.service.errors import InvalidCredentialsError, RateLimitedError
from tokenkeeper.service.runtime import Runtime, check_rate_limit, get_runtime
from tokenkeeper.service.tokens import Identity

logger = get_logger(__name__)

API_VERSION = "0.1.0"


def _ok(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
    cost: int = 1,
) -> RateLimitInfo:
    """Consume from the bucket for ``key`` and reject with 429 when empty.

    Raises:
        RateLimitedError: if the bucket cannot cover ``cost``
    """
    decision = await check_rate_limit(runtime, key, limit, window_seconds, cost=cost)
    info = RateLimitInfo(limit, decision.remaining, decision.reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not decision.allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], retry_after=decision.reset_seconds)
        raise RateLimitedError(
            "too many requests, please try again later",
            detail={"retry_after": decision.reset_seconds},
        )
    return info


async def _enforce_auth_rate_limit(runtime: Runtime, request: Request, response: Response) -> None:
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_window,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


async def _enforce_general_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"general:{_client_key(request)}",
        runtime.settings.general_rate_limit_per_window,
        runtime.settings.general_rate_limit_window_seconds,
        response=response,
    )


# Every route is charged against the per-address bucket before it runs
router = APIRouter(prefix="/api", dependencies=[Depends(_enforce_general_rate_limit)])


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    return runtime.guard.authenticate(authorization)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_at=result.access_expires_at,
        account=AccountResponse.from_view(result.account),
    )


@router.get("/health", response_model=Envelope, tags=["health"])
async def health():
    runtime = get_runtime()
    return _ok(
        HealthResponse(
            uptime_seconds=round(time.time() - runtime.started_at, 3),
            version=API_VERSION,
        )
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and return its first token pair.

    Raises:
        400: If the email or password fails validation
        409: If the email is already registered
        429: If the per-address auth limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _ok(_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Only failed attempts are charged against the per-email login limit.

    Raises:
        401: If the credentials are invalid
        403: If the account is disabled
        429: If a rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    login_key = f"login:{body.email.strip().lower()}"
    login_limit = runtime.settings.login_rate_limit_per_window
    login_window = runtime.settings.login_rate_limit_window_seconds
    await _enforce_rate_limit(runtime, login_key, login_limit, login_window, cost=0)
    try:
        result = await runtime.auth.login(body.email, body.password)
    except InvalidCredentialsError:
        await check_rate_limit(runtime, login_key, login_limit, login_window)
        raise
    return _ok(_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, response)
    pair = await runtime.auth.refresh(body.refresh_token)
    return _ok(
        TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.access_expires_at,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    if body.refresh_token:
        await runtime.auth.logout(body.refresh_token)
    return _ok({"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(identity.owner_id)
    return _ok(LogoutAllResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_account(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    account = await runtime.auth.get_profile(identity.owner_id)
    return _ok(AccountResponse.from_view(account))
