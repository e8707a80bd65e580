"""Shared contract for the key-value backends behind sessions, lockout and rate limits.

Both the Redis and the in-process implementation satisfy ``RevocationStore``;
services depend on the protocol only.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional, Protocol, Set


class RevocationStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def add_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None: ...

    async def remove_indexed(
        self, keys: Iterable[str], index_key: str, members: Iterable[str]
    ) -> None: ...

    async def members(self, index_key: str) -> Set[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def clamp_ttl(ttl_seconds: float) -> int:
    """Round a TTL up to whole seconds, never below 1.

    The backend rejects zero or negative expirations.
    """
    return max(1, int(math.ceil(ttl_seconds)))


__all__ = ["RevocationStore", "clamp_ttl"]
