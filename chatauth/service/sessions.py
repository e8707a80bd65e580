from __future__ import annotations

import json
import time
from typing import Callable, List, Optional

from chatauth.logging import get_logger
from chatauth.storage.common import RevocationStore
from chatauth.storage.errors import StoreUnavailableError
from chatauth.storage.models import SessionRecord

logger = get_logger(__name__)


def _session_key(user_id: str, session_id: str) -> str:
    return f"auth:session:{user_id}:{session_id}"


def _user_sessions_key(user_id: str) -> str:
    return f"auth:user_sessions:{user_id}"


def _revoked_key(user_id: str, session_id: str) -> str:
    return f"auth:revoked:{user_id}:{session_id}"


def _refresh_claim_key(token_id: str) -> str:
    return f"auth:refresh:used:{token_id}"


def _reset_key(digest: str) -> str:
    return f"auth:reset:{digest}"


def _reset_claim_key(digest: str) -> str:
    return f"auth:reset:used:{digest}"


class SessionRegistry:
    """Tracks live login sessions per user and their revocation markers.

    Each session record is written together with its id in a per-user set,
    so enumerating a user's sessions never scans the keyspace.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        session_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds
        self._clock = clock

    async def record_session(
        self,
        user_id: str,
        session_id: str,
        *,
        refresh_token_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            created_at=self._clock(),
            refresh_token_id=refresh_token_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        await self.store.add_indexed(
            _session_key(user_id, session_id),
            record.to_json(),
            self.session_ttl_seconds,
            _user_sessions_key(user_id),
            session_id,
        )
        logger.info("session_recorded", user_id=user_id, session_id=session_id)
        return record

    async def is_revoked(self, user_id: str, session_id: Optional[str]) -> bool:
        """Return True when the session has been revoked.

        Store failures count as revoked so an outage cannot reopen a
        terminated session.
        """
        if not session_id:
            return True
        try:
            return await self.store.exists(_revoked_key(user_id, session_id))
        except StoreUnavailableError as exc:
            logger.warning(
                "session_revocation_check_failed",
                user_id=user_id,
                session_id=session_id,
                error=str(exc),
            )
            return True

    async def revoke(self, user_id: str, session_id: str) -> None:
        # The marker must outlive any token that could still reference the session.
        await self.store.set(
            _revoked_key(user_id, session_id), "1", self.session_ttl_seconds
        )
        await self.store.remove_indexed(
            [_session_key(user_id, session_id)], _user_sessions_key(user_id), [session_id]
        )
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def revoke_all(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke every tracked session of a user except ``except_session_id``.

        Returns:
            Number of live sessions that were terminated
        """
        session_ids = await self.store.members(_user_sessions_key(user_id))
        terminated = 0
        stale: List[str] = []
        for session_id in sorted(session_ids):
            if except_session_id and session_id == except_session_id:
                continue
            if not await self.store.exists(_session_key(user_id, session_id)):
                stale.append(session_id)
                continue
            await self.revoke(user_id, session_id)
            terminated += 1
        if stale:
            await self.store.remove_indexed([], _user_sessions_key(user_id), stale)
        logger.info(
            "sessions_revoked_for_user",
            user_id=user_id,
            terminated=terminated,
            except_session_id=except_session_id,
        )
        return terminated

    async def get_session(self, user_id: str, session_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(_session_key(user_id, session_id))
        if not raw:
            return None
        try:
            return SessionRecord.from_json(user_id, session_id, raw)
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.warning("session_record_corrupt", user_id=user_id, session_id=session_id)
            return None

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        records: List[SessionRecord] = []
        for session_id in await self.store.members(_user_sessions_key(user_id)):
            record = await self.get_session(user_id, session_id)
            if record is not None:
                records.append(record)
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records

    async def rotate_refresh_token(
        self, user_id: str, session_id: str, refresh_token_id: str
    ) -> Optional[SessionRecord]:
        record = await self.get_session(user_id, session_id)
        if record is None:
            return None
        record.refresh_token_id = refresh_token_id
        await self.store.add_indexed(
            _session_key(user_id, session_id),
            record.to_json(),
            self.session_ttl_seconds,
            _user_sessions_key(user_id),
            session_id,
        )
        return record

    async def claim_refresh_token(self, token_id: str, ttl_seconds: int) -> bool:
        """Mark a refresh token id as used; False when it was already claimed."""
        return await self.store.set_if_absent(_refresh_claim_key(token_id), "1", ttl_seconds)

    async def release_refresh_claim(self, token_id: str) -> None:
        """Undo a claim whose rotation never completed, so the holder may retry."""
        await self.store.delete(_refresh_claim_key(token_id))
        logger.info("refresh_claim_released", token_id=token_id)

    async def store_reset_token(self, digest: str, user_id: str, ttl_seconds: int) -> None:
        await self.store.set(_reset_key(digest), user_id, ttl_seconds)

    async def consume_reset_token(self, digest: str) -> Optional[str]:
        """Return the user id bound to a reset token digest, at most once."""
        user_id = await self.store.get(_reset_key(digest))
        if not user_id:
            return None
        ttl = await self.store.ttl(_reset_key(digest))
        claimed = await self.store.set_if_absent(
            _reset_claim_key(digest), "1", ttl if ttl and ttl > 0 else 1
        )
        await self.store.delete(_reset_key(digest))
        if not claimed:
            return None
        return user_id


__all__ = ["SessionRegistry"]
