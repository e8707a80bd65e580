from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, NoReturn, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatauth.logging import get_logger
from chatauth.service.cache import TTLCache
from chatauth.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from chatauth.service.events import (
    AccountLocked,
    AllSessionsTerminated,
    EventSink,
    LoginFailed,
    PasswordResetCompleted,
    PasswordResetRequested,
    SessionTerminated,
    UserLoggedIn,
    UserLoggedOut,
)
from chatauth.service.lockout import LockoutPolicy
from chatauth.service.sessions import SessionRegistry
from chatauth.service.tokens import TokenCodec, TokenPayload, TokenType
from chatauth.storage.errors import ConstraintViolation, StoreUnavailableError
from chatauth.storage.models import Account

logger = get_logger(__name__)

_PASSWORD_ALGO = "argon2id"
_MIN_PASSWORD_LENGTH = 8


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]: ...

    def increment_failed_attempts(self, account_id: str) -> int: ...

    def reset_failed_attempts(self, account_id: str) -> None: ...

    def lock(self, account_id: str, until: datetime) -> None: ...

    def unlock(self, account_id: str) -> None: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    user_id: str
    session_id: str
    expires_in: int
    refresh_expires_in: int
    refresh_token_id: str
    token_type: str = "bearer"


@dataclass
class SessionInfo:
    session_id: str
    created_at: datetime
    ip_addr: Optional[str]
    user_agent: Optional[str]
    device: str
    is_current: bool


def describe_device(user_agent: Optional[str]) -> str:
    """Short "<browser> on <platform>" label for a session listing."""
    if not user_agent:
        return "unknown device"
    ua = user_agent.lower()
    if "edg/" in ua:
        browser = "Edge"
    elif "firefox" in ua:
        browser = "Firefox"
    elif "chrome" in ua:
        browser = "Chrome"
    elif "safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown browser"
    if "android" in ua:
        platform = "Android"
    elif "iphone" in ua or "ipad" in ua:
        platform = "iOS"
    elif "windows" in ua:
        platform = "Windows"
    elif "mac os" in ua or "macintosh" in ua:
        platform = "macOS"
    elif "linux" in ua:
        platform = "Linux"
    else:
        platform = "unknown platform"
    return f"{browser} on {platform}"


class AuthService:
    """Login, refresh-token rotation, password reset and session termination."""

    def __init__(
        self,
        accounts: AccountStore,
        codec: TokenCodec,
        sessions: SessionRegistry,
        lockout: LockoutPolicy,
        events: EventSink,
        *,
        access_token_ttl_seconds: int,
        refresh_token_ttl_seconds: int,
        password_reset_ttl_seconds: int = 3600,
        grants_cache: Optional[TTLCache] = None,
    ) -> None:
        self.accounts = accounts
        self.codec = codec
        self.sessions = sessions
        self.lockout = lockout
        self.events = events
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self.password_reset_ttl_seconds = password_reset_ttl_seconds
        self.grants_cache = grants_cache
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown accounts so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _PASSWORD_ALGO

    def verify_password(self, account_id: str, password: str) -> bool:
        record = self.accounts.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=account_id)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    @staticmethod
    def _check_password_length(password: str) -> None:
        if len(password or "") < _MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {_MIN_PASSWORD_LENGTH} characters"
            )

    def register(
        self,
        email: str,
        password: str,
        *,
        roles: Sequence[str] = ("user",),
        permissions: Sequence[str] = (),
    ) -> Account:
        self._check_password_length(password)
        try:
            account = self.accounts.create_account(
                email, roles=list(roles), permissions=list(permissions)
            )
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        password_hash, algo = self._hash_password(password)
        self.accounts.save_password(account.id, password_hash, algo)
        return account

    def _grants(self, account: Account) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        if self.grants_cache is not None:
            cached = self.grants_cache.get(account.id)
            if cached is not None:
                return cached
        grants = (tuple(account.roles), tuple(account.permissions))
        if self.grants_cache is not None:
            self.grants_cache.set(account.id, grants)
        return grants

    def _issue_tokens(self, account: Account, session_id: str) -> TokenPair:
        now = self.codec.now()
        roles, permissions = self._grants(account)
        refresh_token_id = uuid.uuid4().hex
        access = TokenPayload(
            subject=account.id,
            token_type=TokenType.ACCESS,
            issued_at=now,
            expires_at=now + self.access_token_ttl_seconds,
            session_id=session_id,
            roles=roles,
            permissions=permissions,
            token_id=uuid.uuid4().hex,
        )
        refresh = TokenPayload(
            subject=account.id,
            token_type=TokenType.REFRESH,
            issued_at=now,
            expires_at=now + self.refresh_token_ttl_seconds,
            session_id=session_id,
            token_id=refresh_token_id,
        )
        return TokenPair(
            access_token=self.codec.issue(access),
            refresh_token=self.codec.issue(refresh),
            user_id=account.id,
            session_id=session_id,
            expires_in=self.access_token_ttl_seconds,
            refresh_expires_in=self.refresh_token_ttl_seconds,
            refresh_token_id=refresh_token_id,
        )

    def _retry_after(self, locked_until: float) -> int:
        return max(1, round(locked_until - self.lockout.now()))

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        # Lockout is keyed by the submitted address so unknown accounts lock too.
        account_key = email.strip().lower()
        locked_until = await self.lockout.locked_until(account_key)
        if locked_until is not None:
            raise AccountLockedError(self._retry_after(locked_until))

        account = self.accounts.get_account_by_email(account_key)
        if account is None:
            self._burn_dummy_verification(password)
            await self._handle_failed_login(account_key, None, ip_addr)
        elif not self.verify_password(account.id, password):
            await self._handle_failed_login(account_key, account, ip_addr)
        if not account.is_active:
            self.logger.warning("login_inactive_account", user_id=account.id)
            raise InvalidCredentialsError()

        await self.lockout.record_success(account_key)
        if account.failed_login_attempts or account.locked_until:
            self.accounts.reset_failed_attempts(account.id)
            self.accounts.unlock(account.id)

        session_id = str(uuid.uuid4())
        tokens = self._issue_tokens(account, session_id)
        await self.sessions.record_session(
            account.id,
            session_id,
            refresh_token_id=tokens.refresh_token_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        self.events.publish(
            UserLoggedIn(
                user_id=account.id,
                session_id=session_id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
        )
        self.logger.info("login_succeeded", user_id=account.id, session_id=session_id)
        return tokens

    async def _handle_failed_login(
        self, account_key: str, account: Optional[Account], ip_addr: Optional[str]
    ) -> NoReturn:
        user_id = account.id if account else None
        locked = await self.lockout.record_failure(account_key)
        if account is not None:
            self.accounts.increment_failed_attempts(account.id)
        self.events.publish(LoginFailed(user_id=user_id, ip_addr=ip_addr))
        self.logger.info("login_failed", user_id=user_id, locked=locked)
        if not locked:
            raise InvalidCredentialsError()

        locked_until = await self.lockout.locked_until(account_key)
        if locked_until is None:
            locked_until = self.lockout.now() + self.lockout.lockout_seconds
        if account is not None:
            self.accounts.lock(account.id, datetime.fromtimestamp(locked_until, tz=timezone.utc))
        self.events.publish(AccountLocked(user_id=user_id, locked_until=locked_until))
        raise AccountLockedError(self._retry_after(locked_until))

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair on the same session.

        Each refresh token is single-use. Presenting one that was already
        exchanged revokes the whole session.
        """
        payload = self.codec.verify(refresh_token, TokenType.REFRESH)
        if not payload.session_id or not payload.token_id:
            raise InvalidTokenError("refresh token is not bound to a session")
        user_id, session_id = payload.subject, payload.session_id

        if await self.sessions.is_revoked(user_id, session_id):
            raise InvalidTokenError("session revoked")
        record = await self.sessions.get_session(user_id, session_id)
        if record is None:
            raise InvalidTokenError("session not found")

        remaining = (payload.expires_at or 0) - self.codec.now()
        claimed = await self.sessions.claim_refresh_token(
            payload.token_id, max(remaining, 1)
        )
        if not claimed or record.refresh_token_id != payload.token_id:
            self.logger.warning(
                "refresh_token_reuse_detected", user_id=user_id, session_id=session_id
            )
            await self.sessions.revoke(user_id, session_id)
            self.events.publish(
                SessionTerminated(user_id=user_id, session_id=session_id, reason="refresh_reuse")
            )
            raise InvalidTokenError("refresh token already used")

        account = self.accounts.get_account(user_id)
        if account is None or not account.is_active:
            await self.sessions.revoke(user_id, session_id)
            raise InvalidTokenError("account unavailable")

        tokens = self._issue_tokens(account, session_id)
        try:
            await self.sessions.rotate_refresh_token(
                user_id, session_id, tokens.refresh_token_id
            )
        except StoreUnavailableError:
            # The presented token stays valid; a retry must not look like reuse.
            await self.sessions.release_refresh_claim(payload.token_id)
            raise
        self.logger.info("refresh_token_rotated", user_id=user_id, session_id=session_id)
        return tokens

    async def logout(self, user_id: str, session_id: str) -> None:
        await self.sessions.revoke(user_id, session_id)
        self.events.publish(UserLoggedOut(user_id=user_id, session_id=session_id))

    async def list_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionInfo]:
        records = await self.sessions.list_sessions(user_id)
        return [
            SessionInfo(
                session_id=record.session_id,
                created_at=datetime.fromtimestamp(record.created_at, tz=timezone.utc),
                ip_addr=record.ip_addr,
                user_agent=record.user_agent,
                device=describe_device(record.user_agent),
                is_current=record.session_id == current_session_id,
            )
            for record in records
        ]

    async def terminate_session(
        self, user_id: str, session_id: str, current_session_id: Optional[str]
    ) -> None:
        if session_id == current_session_id:
            raise ForbiddenError("cannot terminate the current session; use logout instead")
        # Sessions are namespaced per user, so another user's id is simply not found.
        if await self.sessions.get_session(user_id, session_id) is None:
            raise NotFoundError("session not found")
        await self.sessions.revoke(user_id, session_id)
        self.events.publish(
            SessionTerminated(user_id=user_id, session_id=session_id, reason="terminated")
        )

    async def terminate_all(self, user_id: str, current_session_id: Optional[str]) -> int:
        terminated = await self.sessions.revoke_all(user_id, except_session_id=current_session_id)
        self.events.publish(
            AllSessionsTerminated(
                user_id=user_id,
                except_session_id=current_session_id,
                terminated_count=terminated,
            )
        )
        return terminated

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a one-time reset token for an active account.

        Returns None for unknown or inactive addresses; callers answer the
        same way in both cases so the response does not reveal accounts.
        """
        account = self.accounts.get_account_by_email(email.strip().lower())
        if account is None or not account.is_active:
            self.logger.info("password_reset_requested_unknown_account")
            return None
        token = secrets.token_urlsafe(32)
        await self.sessions.store_reset_token(
            _reset_digest(token), account.id, self.password_reset_ttl_seconds
        )
        self.events.publish(
            PasswordResetRequested(user_id=account.id, email=account.email, reset_token=token)
        )
        self.logger.info("password_reset_requested", user_id=account.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> int:
        """Set a new password and sign the account out everywhere.

        Returns:
            Number of sessions that were terminated
        """
        self._check_password_length(new_password)
        user_id = await self.sessions.consume_reset_token(_reset_digest(token))
        account = self.accounts.get_account(user_id) if user_id else None
        if account is None or not account.is_active:
            raise InvalidTokenError("invalid or expired reset token")

        password_hash, algo = self._hash_password(new_password)
        self.accounts.save_password(account.id, password_hash, algo)
        await self.lockout.record_success(account.email)
        if account.failed_login_attempts or account.locked_until:
            self.accounts.reset_failed_attempts(account.id)
            self.accounts.unlock(account.id)

        terminated = await self.sessions.revoke_all(account.id)
        self.events.publish(
            PasswordResetCompleted(user_id=account.id, terminated_count=terminated)
        )
        self.logger.info("password_reset_completed", user_id=account.id, terminated=terminated)
        return terminated


def _reset_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


__all__ = [
    "AccountStore",
    "AuthService",
    "SessionInfo",
    "TokenPair",
    "describe_device",
]
