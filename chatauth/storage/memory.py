from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from chatauth.logging import get_logger
from chatauth.storage.common import clamp_ttl
from chatauth.storage.errors import ConstraintViolation
from chatauth.storage.models import Account


class MemoryRevocationStore:
    """In-process key-value store with lazy TTL expiry.

    Used for local development and tests. State is only visible to the
    current process, so it does not coordinate multiple instances.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiry.pop(key, None)

    def _present(self, key: str) -> bool:
        self._purge_if_expired(key)
        return key in self._values or key in self._sets

    def _set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sets.pop(key, None)
        self._values[key] = value
        self._expiry[key] = self._clock() + clamp_ttl(ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set_value(key, value, ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._present(key):
                return False
            self._set_value(key, value, ttl_seconds)
            return True

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)
                self._sets.pop(key, None)
                self._expiry.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._present(key)

    async def increment(self, key: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            current = int(self._values.get(key, "0")) + 1
            self._values[key] = str(current)
            return current

    async def expire(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            if self._present(key):
                self._expiry[key] = self._clock() + clamp_ttl(ttl_seconds)

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            if not self._present(key):
                return None
            expires_at = self._expiry.get(key)
            if expires_at is None:
                return None
            return max(0, int(round(expires_at - self._clock())))

    async def add_indexed(
        self, key: str, value: str, ttl_seconds: int, index_key: str, member: str
    ) -> None:
        with self._lock:
            self._set_value(key, value, ttl_seconds)
            self._purge_if_expired(index_key)
            self._sets.setdefault(index_key, set()).add(member)
            self._expiry[index_key] = self._clock() + clamp_ttl(ttl_seconds)

    async def remove_indexed(
        self, keys: Iterable[str], index_key: str, members: Iterable[str]
    ) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)
                self._expiry.pop(key, None)
            self._purge_if_expired(index_key)
            index = self._sets.get(index_key)
            if index is not None:
                index.difference_update(members)
                if not index:
                    self._sets.pop(index_key, None)
                    self._expiry.pop(index_key, None)

    async def members(self, index_key: str) -> Set[str]:
        with self._lock:
            self._purge_if_expired(index_key)
            return set(self._sets.get(index_key, ()))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._expiry.clear()


class MemoryAccountStore:
    """In-memory account repository for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def create_account(
        self,
        email: str,
        *,
        roles: Optional[List[str]] = None,
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("account already exists", {"field": "email"})
            account = Account.new(
                normalized, roles=roles, permissions=permissions, is_active=is_active
            )
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
        self.logger.info("account_created", account_id=account.id)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            account_id = self._email_index.get(normalized)
            return self.accounts.get(account_id) if account_id else None

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[account_id] = (password_hash, password_algo)

    def get_password_record(self, account_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    def set_active(self, account_id: str, is_active: bool) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.is_active = is_active

    def increment_failed_attempts(self, account_id: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return 0
            account.failed_login_attempts += 1
            return account.failed_login_attempts

    def reset_failed_attempts(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.failed_login_attempts = 0

    def lock(self, account_id: str, until: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.locked_until = until.astimezone(timezone.utc)

    def unlock(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.locked_until = None


__all__ = ["MemoryRevocationStore", "MemoryAccountStore"]
