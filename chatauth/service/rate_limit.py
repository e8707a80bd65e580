from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, Optional

from chatauth.config import RATE_LIMIT_ACTIONS, Settings
from chatauth.logging import get_logger
from chatauth.service.errors import RateLimitExceededError
from chatauth.storage.common import RevocationStore
from chatauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 60

_MESSAGES = {
    "login": "Too many login attempts. Please try again later.",
    "registration": "Too many registration attempts. Please try again later.",
    "password-reset": "Too many password reset attempts. Please try again later.",
    "token-refresh": "Too many token refresh attempts. Please try again later.",
    "api-call": "Too many requests. Please slow down.",
}


@dataclass(frozen=True)
class RateLimitConfig:
    max_attempts: int
    window_seconds: int
    block_seconds: int
    message: str = "Too many requests. Please try again later."


@dataclass(frozen=True)
class RateLimitStatus:
    attempts: int
    remaining: int
    reset_in_seconds: int
    is_blocked: bool
    block_expires_in_seconds: Optional[int] = None


def configs_from_settings(settings: Settings) -> Dict[str, RateLimitConfig]:
    configs = {}
    for action in RATE_LIMIT_ACTIONS:
        max_attempts, window_seconds, block_seconds = settings.rate_limit_budget(action)
        configs[action] = RateLimitConfig(
            max_attempts=max_attempts,
            window_seconds=window_seconds,
            block_seconds=block_seconds,
            message=_MESSAGES[action],
        )
    return configs


def generate_key(
    action: str, *, user_id: Optional[str] = None, ip_addr: Optional[str] = None
) -> str:
    """Identity for a rate limit: the user when authenticated, else the caller address."""
    if user_id:
        return f"user:{user_id}:{action}"
    return f"ip:{ip_addr or 'unknown'}:{action}"


class RateLimiter:
    """Fixed-window counter with a separate block marker.

    Check-then-increment spans two keys without a transaction, so concurrent
    callers can overshoot the budget by the number of in-flight requests.
    Store failures admit the request.
    """

    def __init__(self, store: RevocationStore, configs: Dict[str, RateLimitConfig]) -> None:
        self.store = store
        self.configs = dict(configs)

    def config_for(self, action: str) -> RateLimitConfig:
        try:
            return self.configs[action]
        except KeyError:
            raise KeyError(f"no rate limit configured for action: {action}") from None

    @staticmethod
    def _normalize(key: str) -> str:
        # Hash the identity so delimiters in user-supplied parts cannot collide.
        return hashlib.sha256(key.encode()).hexdigest()

    def _counter_key(self, key: str) -> str:
        return f"rate_limit:{self._normalize(key)}"

    def _block_key(self, key: str) -> str:
        return f"rate_limit:block:{self._normalize(key)}"

    @staticmethod
    def _window(config: RateLimitConfig, key: str) -> int:
        if config.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=config.window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return _DEFAULT_WINDOW_SECONDS
        return config.window_seconds

    async def is_blocked(self, key: str) -> bool:
        try:
            return await self.store.exists(self._block_key(key))
        except StoreUnavailableError as exc:
            logger.warning("rate_limit_store_unavailable", operation="is_blocked", error=str(exc))
            return False

    async def increment(self, key: str, config: RateLimitConfig) -> int:
        """Count one attempt in the current window; 0 when the store is unavailable."""
        counter_key = self._counter_key(key)
        try:
            count = await self.store.increment(counter_key)
            if count == 1:
                await self.store.expire(counter_key, self._window(config, key))
            return count
        except StoreUnavailableError as exc:
            logger.warning("rate_limit_store_unavailable", operation="increment", error=str(exc))
            return 0

    async def block(self, key: str, config: RateLimitConfig) -> None:
        try:
            await self.store.set(self._block_key(key), "1", config.block_seconds)
            # Next window starts fresh once the block lapses
            await self.store.delete(self._counter_key(key))
        except StoreUnavailableError as exc:
            logger.warning("rate_limit_store_unavailable", operation="block", error=str(exc))
            return
        logger.info("rate_limit_blocked", key=key, block_seconds=config.block_seconds)

    async def reset(self, key: str) -> None:
        await self.store.delete(self._counter_key(key), self._block_key(key))
        logger.info("rate_limit_reset", key=key)

    async def retry_after(self, key: str, config: RateLimitConfig) -> int:
        try:
            remaining = await self.store.ttl(self._block_key(key))
        except StoreUnavailableError:
            remaining = None
        return remaining if remaining is not None else config.block_seconds

    async def status(self, key: str, config: RateLimitConfig) -> RateLimitStatus:
        counter_key = self._counter_key(key)
        raw = await self.store.get(counter_key)
        attempts = int(raw) if raw else 0
        reset_in = await self.store.ttl(counter_key) or 0
        block_ttl = await self.store.ttl(self._block_key(key))
        blocked = await self.store.exists(self._block_key(key))
        return RateLimitStatus(
            attempts=attempts,
            remaining=max(0, config.max_attempts - attempts),
            reset_in_seconds=reset_in,
            is_blocked=blocked,
            block_expires_in_seconds=block_ttl if blocked else None,
        )

    async def hit(self, key: str, config: RateLimitConfig) -> int:
        """Admit or reject one request for ``key``.

        Returns:
            The attempt count in the current window

        Raises:
            RateLimitExceededError: when the key is blocked or over budget
        """
        if config.max_attempts <= 0:
            return 0
        if await self.is_blocked(key):
            raise RateLimitExceededError(await self.retry_after(key, config), config.message)

        count = await self.increment(key, config)
        if count > config.max_attempts:
            await self.block(key, config)
            raise RateLimitExceededError(config.block_seconds, config.message)
        return count


__all__ = [
    "RateLimitConfig",
    "RateLimitStatus",
    "RateLimiter",
    "configs_from_settings",
    "generate_key",
]
