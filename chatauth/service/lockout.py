from __future__ import annotations

import hashlib
import time
from typing import Callable, Optional

from chatauth.logging import get_logger
from chatauth.storage.common import RevocationStore

logger = get_logger(__name__)


def _digest(account: str) -> str:
    normalized = account.strip().lower()
    return hashlib.sha256(normalized.encode()).hexdigest()


class LockoutPolicy:
    """Counts failed logins per account and locks it at a threshold.

    A lock is just a future ``lock_until`` timestamp; it lapses on its own.
    The counter is cleared only by a successful login, so a failure after a
    lock lapses locks the account again straight away.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        max_failed_attempts: int = 5,
        lockout_duration_minutes: int = 30,
        attempt_ttl_minutes: int = 24 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_failed_attempts <= 0:
            raise ValueError("max_failed_attempts must be positive")
        self.store = store
        self.max_failed_attempts = max_failed_attempts
        self.lockout_seconds = lockout_duration_minutes * 60
        self.attempt_ttl_seconds = max(attempt_ttl_minutes * 60, self.lockout_seconds)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def _attempts_key(account: str) -> str:
        return f"lockout:attempts:{_digest(account)}"

    @staticmethod
    def _until_key(account: str) -> str:
        return f"lockout:until:{_digest(account)}"

    async def locked_until(self, account: str) -> Optional[float]:
        raw = await self.store.get(self._until_key(account))
        if raw is None:
            return None
        try:
            until = float(raw)
        except ValueError:
            logger.warning("lockout_timestamp_corrupt", value=raw)
            return None
        return until if until > self._clock() else None

    async def is_locked(self, account: str) -> bool:
        return await self.locked_until(account) is not None

    async def attempts(self, account: str) -> int:
        raw = await self.store.get(self._attempts_key(account))
        return int(raw) if raw else 0

    async def record_failure(self, account: str) -> bool:
        """Count a failed attempt; True when the account is (now) locked."""
        attempts_key = self._attempts_key(account)
        count = await self.store.increment(attempts_key)
        await self.store.expire(attempts_key, self.attempt_ttl_seconds)

        if await self.locked_until(account) is not None:
            return True
        if count < self.max_failed_attempts:
            return False

        until = self._clock() + self.lockout_seconds
        await self.store.set(self._until_key(account), repr(until), self.lockout_seconds)
        logger.warning(
            "account_locked",
            account_digest=_digest(account)[:16],
            failed_attempts=count,
            lockout_seconds=self.lockout_seconds,
        )
        return True

    async def record_success(self, account: str) -> None:
        await self.store.delete(self._attempts_key(account), self._until_key(account))


__all__ = ["LockoutPolicy"]
