from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from chatauth.config import get_settings, reset_settings_cache
from chatauth.logging import get_logger
from chatauth.service.auth import AuthService
from chatauth.service.cache import TTLCache
from chatauth.service.events import EventSink, LoggingEventSink
from chatauth.service.guard import AuthGuard
from chatauth.service.lockout import LockoutPolicy
from chatauth.service.rate_limit import RateLimiter, configs_from_settings
from chatauth.service.sessions import SessionRegistry
from chatauth.service.tokens import TokenCodec
from chatauth.storage.common import RevocationStore
from chatauth.storage.memory import MemoryAccountStore, MemoryRevocationStore
from chatauth.storage.redis_cache import RedisRevocationStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, events: Optional[EventSink] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.kv: RevocationStore = self._build_store()
        self.accounts = MemoryAccountStore()
        self.events: EventSink = events or LoggingEventSink()
        self.grants_cache: TTLCache = TTLCache(
            max_size=self.settings.permission_cache_max_size,
            ttl_seconds=self.settings.permission_cache_ttl_seconds,
        )

        refresh_ttl_seconds = self.settings.refresh_token_ttl_minutes * 60
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            leeway_seconds=self.settings.token_clock_skew_seconds,
        )
        self.sessions = SessionRegistry(self.kv, session_ttl_seconds=refresh_ttl_seconds)
        self.lockout = LockoutPolicy(
            self.kv,
            max_failed_attempts=self.settings.max_failed_attempts,
            lockout_duration_minutes=self.settings.lockout_duration_minutes,
            attempt_ttl_minutes=self.settings.failed_attempt_ttl_minutes,
        )
        self.rate_limiter = RateLimiter(self.kv, configs_from_settings(self.settings))
        self.guard = AuthGuard(self.codec, self.sessions, self.rate_limiter)
        self.auth = AuthService(
            self.accounts,
            self.codec,
            self.sessions,
            self.lockout,
            self.events,
            access_token_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_token_ttl_seconds=refresh_ttl_seconds,
            password_reset_ttl_seconds=self.settings.password_reset_ttl_minutes * 60,
            grants_cache=self.grants_cache,
        )
        logger.info("runtime_init_complete", store_type=type(self.kv).__name__)

    def _build_store(self) -> RevocationStore:
        if self.settings.use_memory_store:
            return MemoryRevocationStore()

        redis_error: Exception | None = None
        try:
            store = RedisRevocationStore(
                self.settings.redis_url,
                operation_timeout=self.settings.store_operation_timeout_seconds,
                retry_backoff=self.settings.store_retry_backoff_ms / 1000.0,
            )
            store.verify_connection()
            return store
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, revocation, lockout and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message=(
                f"Running without Redis under {fallback_mode}; sessions and rate limits "
                "are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryRevocationStore()

    async def close(self) -> None:
        await self.kv.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.kv, RedisRevocationStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
