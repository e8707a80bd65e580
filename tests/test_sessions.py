"""Tests for SessionRegistry tracking and revocation."""

from unittest.mock import AsyncMock, patch

import pytest

from chatauth.service.sessions import SessionRegistry
from chatauth.storage.errors import StoreUnavailableError

SESSION_TTL = 7 * 24 * 3600


@pytest.fixture
def registry(kv, clock):
    return SessionRegistry(kv, session_ttl_seconds=SESSION_TTL, clock=clock)


class TestRecordAndRevoke:
    async def test_recorded_session_is_live(self, registry):
        await registry.record_session("u1", "s1", refresh_token_id="r1", ip_addr="10.0.0.1")
        record = await registry.get_session("u1", "s1")
        assert record.refresh_token_id == "r1"
        assert record.ip_addr == "10.0.0.1"
        assert await registry.is_revoked("u1", "s1") is False

    async def test_revoke_marks_and_removes(self, registry, kv):
        await registry.record_session("u1", "s1")
        await registry.revoke("u1", "s1")
        assert await registry.is_revoked("u1", "s1") is True
        assert await registry.get_session("u1", "s1") is None
        assert await kv.members("auth:user_sessions:u1") == set()

    async def test_revocation_marker_lives_for_refresh_lifetime(self, registry, kv, clock):
        await registry.record_session("u1", "s1")
        await registry.revoke("u1", "s1")
        assert await kv.ttl("auth:revoked:u1:s1") == SESSION_TTL
        clock.advance(SESSION_TTL - 1)
        assert await registry.is_revoked("u1", "s1") is True

    async def test_session_record_expires_with_refresh_lifetime(self, registry, clock):
        await registry.record_session("u1", "s1")
        clock.advance(SESSION_TTL)
        assert await registry.get_session("u1", "s1") is None

    async def test_sessions_are_scoped_per_user(self, registry):
        await registry.record_session("u1", "s1")
        await registry.revoke("u2", "s1")
        assert await registry.is_revoked("u1", "s1") is False

    async def test_missing_session_id_counts_as_revoked(self, registry):
        assert await registry.is_revoked("u1", None) is True


class TestRevokeAll:
    async def test_revoke_all_except_current(self, registry):
        for sid in ("s1", "s2", "s3", "s4"):
            await registry.record_session("u1", sid)

        terminated = await registry.revoke_all("u1", except_session_id="s2")

        assert terminated == 3
        assert await registry.is_revoked("u1", "s2") is False
        for sid in ("s1", "s3", "s4"):
            assert await registry.is_revoked("u1", sid) is True
        assert [r.session_id for r in await registry.list_sessions("u1")] == ["s2"]

    async def test_revoke_all_without_exception(self, registry):
        await registry.record_session("u1", "s1")
        await registry.record_session("u1", "s2")
        assert await registry.revoke_all("u1") == 2
        assert await registry.list_sessions("u1") == []

    async def test_revoke_all_leaves_other_users_alone(self, registry):
        await registry.record_session("u1", "s1")
        await registry.record_session("u2", "s2")
        await registry.revoke_all("u1")
        assert await registry.is_revoked("u2", "s2") is False

    async def test_stale_ids_are_pruned_not_counted(self, registry, kv):
        await registry.record_session("u1", "s1")
        await registry.record_session("u1", "s2")
        await kv.delete("auth:session:u1:s1")

        assert await registry.revoke_all("u1") == 1
        assert await kv.members("auth:user_sessions:u1") == set()


class TestListing:
    async def test_newest_first(self, registry, clock):
        await registry.record_session("u1", "old")
        clock.advance(10)
        await registry.record_session("u1", "new")
        assert [r.session_id for r in await registry.list_sessions("u1")] == ["new", "old"]

    async def test_rotate_refresh_token(self, registry):
        await registry.record_session("u1", "s1", refresh_token_id="r1")
        await registry.rotate_refresh_token("u1", "s1", "r2")
        assert (await registry.get_session("u1", "s1")).refresh_token_id == "r2"

    async def test_claim_refresh_token_once(self, registry):
        assert await registry.claim_refresh_token("jti", 60) is True
        assert await registry.claim_refresh_token("jti", 60) is False

    async def test_released_claim_can_be_taken_again(self, registry):
        assert await registry.claim_refresh_token("jti", 60) is True
        await registry.release_refresh_claim("jti")
        assert await registry.claim_refresh_token("jti", 60) is True

    async def test_reset_token_consumed_once(self, registry, kv):
        await registry.store_reset_token("digest", "u1", 600)
        assert await kv.ttl("auth:reset:digest") == 600
        assert await registry.consume_reset_token("digest") == "u1"
        assert await registry.consume_reset_token("digest") is None
        assert await kv.exists("auth:reset:digest") is False

    async def test_reset_token_expires(self, registry, clock):
        await registry.store_reset_token("digest", "u1", 600)
        clock.advance(600)
        assert await registry.consume_reset_token("digest") is None


class TestFailClosed:
    """Store failures during revocation checks reject the session."""

    async def test_store_failure_counts_as_revoked(self, registry, kv):
        kv.exists = AsyncMock(side_effect=StoreUnavailableError("down", operation="exists"))
        with patch("chatauth.service.sessions.logger") as mock_logger:
            assert await registry.is_revoked("u1", "s1") is True
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "session_revocation_check_failed"

    async def test_revoke_propagates_store_failure(self, registry, kv):
        kv.set = AsyncMock(side_effect=StoreUnavailableError("down", operation="set"))
        with pytest.raises(StoreUnavailableError):
            await registry.revoke("u1", "s1")
