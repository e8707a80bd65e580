from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from chatauth.logging import get_logger
from chatauth.service.errors import AuthenticationError, ForbiddenError
from chatauth.service.rate_limit import RateLimiter, generate_key
from chatauth.service.sessions import SessionRegistry
from chatauth.service.tokens import TokenCodec, TokenType

logger = get_logger(__name__)


@dataclass(frozen=True)
class NoAuth:
    """Public route; no bearer token is read."""


@dataclass(frozen=True)
class JwtAuth:
    """Route requiring a valid, unrevoked access token."""

    required_roles: Tuple[str, ...] = ()
    required_permissions: Tuple[str, ...] = ()


RoutePolicy = Union[NoAuth, JwtAuth]


@dataclass(frozen=True)
class RouteConfig:
    auth: RoutePolicy
    rate_limit: Optional[str] = None


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    roles: Tuple[str, ...] = ()
    permissions: Tuple[str, ...] = ()
    token_expires_at: Optional[int] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthGuard:
    """Request-boundary check driven by the route's ``RouteConfig``."""

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionRegistry,
        rate_limiter: RateLimiter,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.rate_limiter = rate_limiter

    async def check(
        self,
        route: RouteConfig,
        authorization: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Authenticate and rate-limit one request.

        Returns the authenticated identity, or None on a public route.
        """
        policy = route.auth
        if isinstance(policy, NoAuth):
            ctx = None
        elif isinstance(policy, JwtAuth):
            ctx = await self.authenticate(authorization)
            self._authorize(ctx, policy)
        else:
            raise TypeError(f"unsupported route policy: {type(policy).__name__}")

        if route.rate_limit:
            config = self.rate_limiter.config_for(route.rate_limit)
            key = generate_key(
                route.rate_limit,
                user_id=ctx.user_id if ctx else None,
                ip_addr=client_ip,
            )
            await self.rate_limiter.hit(key, config)
        return ctx

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        payload = self.codec.verify(token, TokenType.ACCESS)
        if not payload.session_id:
            raise AuthenticationError("token is not bound to a session")
        # Revocation wins over a valid signature and expiry
        if await self.sessions.is_revoked(payload.subject, payload.session_id):
            logger.info(
                "revoked_session_rejected",
                user_id=payload.subject,
                session_id=payload.session_id,
            )
            raise AuthenticationError("session revoked")
        return AuthContext(
            user_id=payload.subject,
            session_id=payload.session_id,
            roles=payload.roles,
            permissions=payload.permissions,
            token_expires_at=payload.expires_at,
        )

    @staticmethod
    def _authorize(ctx: AuthContext, policy: JwtAuth) -> None:
        if policy.required_roles and not any(ctx.has_role(role) for role in policy.required_roles):
            raise ForbiddenError("insufficient role")
        missing = [perm for perm in policy.required_permissions if perm not in ctx.permissions]
        if missing:
            raise ForbiddenError("missing permissions", detail={"missing": missing})


__all__ = [
    "AuthContext",
    "AuthGuard",
    "JwtAuth",
    "NoAuth",
    "RouteConfig",
    "RoutePolicy",
    "extract_bearer",
]
