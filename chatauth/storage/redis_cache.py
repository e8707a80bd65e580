from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional, Set, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from chatauth.logging import get_logger
from chatauth.storage.common import clamp_ttl
from chatauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


class RedisRevocationStore:
    """Redis-backed key-value store shared by every service instance.

    Every command runs under a per-call timeout and is retried once after a
    short backoff; a second failure surfaces as ``StoreUnavailableError``.
    """

    DEFAULT_OPERATION_TIMEOUT = 1.0
    DEFAULT_RETRY_BACKOFF = 0.05

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.retry_backoff = retry_backoff
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before wiring dependent services."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        last_exc: Optional[BaseException] = None
        for attempt in range(2):
            try:
                return await asyncio.wait_for(factory(), timeout=self.operation_timeout)
            except (RedisError, asyncio.TimeoutError, OSError) as exc:
                last_exc = exc
                logger.warning(
                    "redis_operation_failed",
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(exc),
                )
                if attempt == 0:
                    await asyncio.sleep(self.retry_backoff)
        raise StoreUnavailableError(
            f"key-value backend unavailable during {operation}",
            operation=operation,
            detail={"error": str(last_exc)},
        ) from last_exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda: self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call(
            "set", lambda: self.client.set(key, value, ex=clamp_ttl(ttl_seconds))
        )

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._call(
            "set_if_absent",
            lambda: self.client.set(key, value, ex=clamp_ttl(ttl_seconds), nx=True),
        )
        return bool(result)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        await self._call("delete", lambda: self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", lambda: self.client.exists(key)))

    async def increment(self, key: str) -> int:
        return int(await self._call("increment", lambda: self.client.incr(key)))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._call(
            "expire", lambda: self.client.expire(key, clamp_ttl(ttl_seconds))
        )

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self._call("ttl", lambda: self.client.ttl(key)))
        # -2: missing key, -1: key without expiry
        if remaining < 0:
            return None
        return remaining

    async def add_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None:
        ttl = clamp_ttl(ttl_seconds)

        async def _write() -> Any:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(key, value, ex=ttl)
            pipe.sadd(index_key, member)
            pipe.expire(index_key, ttl)
            return await pipe.execute()

        await self._call("add_indexed", _write)

    async def remove_indexed(
        self, keys: Iterable[str], index_key: str, members: Iterable[str]
    ) -> None:
        keys = list(keys)
        members = list(members)
        if not keys and not members:
            return

        async def _remove() -> Any:
            pipe = self.client.pipeline(transaction=True)
            if keys:
                pipe.delete(*keys)
            if members:
                pipe.srem(index_key, *members)
            return await pipe.execute()

        await self._call("remove_indexed", _remove)

    async def members(self, index_key: str) -> Set[str]:
        found = await self._call("members", lambda: self.client.smembers(index_key))
        return set(found or ())

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", lambda: self.client.ping()))
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisRevocationStore"]
