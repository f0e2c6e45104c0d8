from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from sessionguard.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    PasswordChangeRequest,
    RefreshResponse,
    TokenBundle,
    TokenRefreshRequest,
    UserResponse,
)
from sessionguard.logging import get_logger, log_auth_event
from sessionguard.service.errors import NotFoundError, RateLimitedError
from sessionguard.service.runtime import check_rate_limit, get_runtime
from sessionguard.service.sessions import AuthContext
from sessionguard.service.tokens import IssuedTokens
from sessionguard.storage.models import TokenMetadata, UserInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _request_metadata(request: Request) -> TokenMetadata:
    user_agent = request.headers.get("user-agent")
    return TokenMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent[:512] if user_agent else None,
    )


def _token_bundle(tokens: IssuedTokens) -> TokenBundle:
    return TokenBundle(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        token_type=tokens.token_type,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _user_response(user: UserInfo) -> UserResponse:
    return UserResponse(
        id=user.id, email=user.email, full_name=user.full_name, role=user.role.value
    )


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
    action: str, request: Request, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count an attempt at ``action`` against the caller's IP.

    Raises:
        RateLimitedError: once the window's allowance is spent
    """
    runtime = get_runtime()
    settings = runtime.settings
    client_ip = request.client.host if request.client else "unknown"
    limit = settings.auth_rate_limit_per_window
    allowed, remaining, reset = await check_rate_limit(
        runtime,
        f"{settings.rate_limit_prefix}{action}:{client_ip}",
        limit,
        settings.auth_rate_limit_window_seconds,
    )
    info = RateLimitInfo(limit, remaining, reset)
    if not allowed:
        log_auth_event(
            "auth_rate_limit_exceeded", logger, action=action, ip_address=client_ip
        )
        raise RateLimitedError(retry_after=reset)
    if response is not None and limit > 0 and settings.rate_limit_enabled:
        info.apply_headers(response)
    return info


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.sessions.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    return ctx


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is not active
        429: If the caller's IP has spent its login allowance
    """
    await _enforce_rate_limit("login", request, response)
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.email, body.password, _request_metadata(request)
    )
    if result is None:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(result.user), tokens=_token_bundle(result.tokens)
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, request: Request, response: Response
):
    await _enforce_rate_limit("refresh", request, response)
    runtime = get_runtime()
    tokens = await runtime.sessions.refresh(
        body.refresh_token, _request_metadata(request)
    )
    if tokens is None:
        raise _http_error("unauthorized", "invalid refresh token", status_code=401)
    return Envelope(status="ok", data=RefreshResponse(tokens=_token_bundle(tokens)))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    if body is not None and body.refresh_token:
        await runtime.sessions.logout(body.refresh_token, user_id=principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.sessions.logout_all(principal.user_id)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(message="logged out of all sessions", sessions_revoked=count),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    """Change the caller's password and end every session they hold."""
    runtime = get_runtime()
    changed = await runtime.sessions.set_password(
        principal.user_id,
        body.new_password,
        current_password=body.current_password,
    )
    if not changed:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    user = runtime.sessions.get_user_by_id(principal.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_response(user))
