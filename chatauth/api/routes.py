from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from chatauth.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MeResponse,
    RateLimitStatusResponse,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    TerminateSessionsResponse,
    TokenRefreshRequest,
)
from chatauth.config import RATE_LIMIT_ACTIONS
from chatauth.service.auth import TokenPair
from chatauth.service.errors import NotFoundError, ValidationError
from chatauth.service.guard import AuthContext, JwtAuth, NoAuth, RouteConfig
from chatauth.service.rate_limit import generate_key
from chatauth.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

SIGNUP_ROUTE = RouteConfig(auth=NoAuth(), rate_limit="registration")
LOGIN_ROUTE = RouteConfig(auth=NoAuth(), rate_limit="login")
REFRESH_ROUTE = RouteConfig(auth=NoAuth(), rate_limit="token-refresh")
PASSWORD_RESET_ROUTE = RouteConfig(auth=NoAuth(), rate_limit="password-reset")
LOGOUT_ROUTE = RouteConfig(auth=JwtAuth())
USER_ROUTE = RouteConfig(auth=JwtAuth(), rate_limit="api-call")
ADMIN_ROUTE = RouteConfig(auth=JwtAuth(required_roles=("admin",)))


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def guarded(route: RouteConfig) -> Callable:
    """Build a dependency that runs the auth guard with ``route``'s policy."""

    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[AuthContext]:
        runtime = get_runtime()
        ctx = await runtime.guard.check(route, authorization, client_ip=_client_ip(request))
        request.state.auth = ctx
        return ctx

    return _dependency


def _auth_response(tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=tokens.user_id,
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, _: None = Depends(guarded(SIGNUP_ROUTE))):
    runtime = get_runtime()
    account = runtime.auth.register(body.email, body.password)
    return Envelope(
        status="ok",
        data=SignupResponse(user_id=account.id, email=account.email, roles=account.roles),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    _: None = Depends(guarded(LOGIN_ROUTE)),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        423: If the account is temporarily locked
        429: If the caller exceeded the login budget
    """
    runtime = get_runtime()
    tokens = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, _: None = Depends(guarded(REFRESH_ROUTE))
):
    """Rotate a refresh token; a reused token revokes its session."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(tokens))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, _: None = Depends(guarded(PASSWORD_RESET_ROUTE))
):
    """Start a password reset; the answer is the same whether or not the account exists."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"success": True})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, _: None = Depends(guarded(PASSWORD_RESET_ROUTE))
):
    runtime = get_runtime()
    terminated = await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(
        status="ok", data={"success": True, "terminated_sessions": terminated}
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(guarded(LOGOUT_ROUTE))):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, principal.session_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(guarded(USER_ROUTE))):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            session_id=principal.session_id,
            roles=list(principal.roles),
            permissions=list(principal.permissions),
            token_expires_at=principal.token_expires_at,
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(guarded(USER_ROUTE))):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.user_id, principal.session_id)
    items = [
        SessionResponse(
            session_id=info.session_id,
            created_at=info.created_at,
            ip_addr=info.ip_addr,
            user_agent=info.user_agent,
            device=info.device,
            is_current=info.is_current,
        )
        for info in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(guarded(USER_ROUTE)),
):
    runtime = get_runtime()
    await runtime.auth.terminate_session(principal.user_id, session_id, principal.session_id)
    return Envelope(status="ok", data=TerminateSessionsResponse(terminated_count=1))


@router.post("/sessions/terminate-all", response_model=Envelope, tags=["sessions"])
async def terminate_all_sessions(principal: AuthContext = Depends(guarded(USER_ROUTE))):
    """Terminate every session of the caller except the current one."""
    runtime = get_runtime()
    count = await runtime.auth.terminate_all(principal.user_id, principal.session_id)
    return Envelope(status="ok", data=TerminateSessionsResponse(terminated_count=count))


def _rate_limit_target(action: str, user_id: Optional[str], ip: Optional[str]) -> str:
    if action not in RATE_LIMIT_ACTIONS:
        raise NotFoundError(f"unknown rate limit action: {action}")
    if not user_id and not ip:
        raise ValidationError("user_id or ip is required")
    return generate_key(action, user_id=user_id, ip_addr=ip)


@router.get("/admin/rate-limits/{action}", response_model=Envelope, tags=["admin"])
async def rate_limit_status(
    action: str,
    user_id: Optional[str] = Query(None, max_length=128),
    ip: Optional[str] = Query(None, max_length=64),
    _: AuthContext = Depends(guarded(ADMIN_ROUTE)),
):
    runtime = get_runtime()
    key = _rate_limit_target(action, user_id, ip)
    status = await runtime.rate_limiter.status(key, runtime.rate_limiter.config_for(action))
    return Envelope(
        status="ok",
        data=RateLimitStatusResponse(
            action=action,
            key=key,
            attempts=status.attempts,
            remaining=status.remaining,
            reset_in_seconds=status.reset_in_seconds,
            is_blocked=status.is_blocked,
            block_expires_in_seconds=status.block_expires_in_seconds,
        ),
    )


@router.delete("/admin/rate-limits/{action}", response_model=Envelope, tags=["admin"])
async def reset_rate_limit(
    action: str,
    user_id: Optional[str] = Query(None, max_length=128),
    ip: Optional[str] = Query(None, max_length=64),
    _: AuthContext = Depends(guarded(ADMIN_ROUTE)),
):
    runtime = get_runtime()
    key = _rate_limit_target(action, user_id, ip)
    await runtime.rate_limiter.reset(key)
    return Envelope(status="ok", data={"action": action, "key": key, "reset": True})
