"""Unit tests for RedisRevocationStore with a mocked redis.asyncio client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from chatauth.storage.errors import StoreUnavailableError
from chatauth.storage.redis_cache import RedisRevocationStore


@pytest.fixture
def client():
    mock = MagicMock()
    for name in ("get", "set", "delete", "exists", "incr", "expire", "ttl", "smembers", "ping"):
        setattr(mock, name, AsyncMock())
    return mock


@pytest.fixture
def store(client):
    return RedisRevocationStore("redis://localhost:6379/0", client=client, retry_backoff=0)


class TestRetryPolicy:
    """A failing command is retried once, then reported as unavailable."""

    async def test_transient_failure_is_retried_once(self, store, client):
        client.get.side_effect = [RedisConnectionError("reset by peer"), "value"]
        assert await store.get("key") == "value"
        assert client.get.await_count == 2

    async def test_second_failure_raises_store_unavailable(self, store, client):
        client.exists.side_effect = RedisTimeoutError("timed out")
        with pytest.raises(StoreUnavailableError) as excinfo:
            await store.exists("key")
        assert excinfo.value.operation == "exists"
        assert client.exists.await_count == 2

    async def test_failures_are_logged(self, store, client):
        client.incr.side_effect = RedisConnectionError("down")
        with patch("chatauth.storage.redis_cache.logger") as mock_logger:
            with pytest.raises(StoreUnavailableError):
                await store.increment("key")
        assert mock_logger.warning.call_count == 2
        assert mock_logger.warning.call_args[0][0] == "redis_operation_failed"

    async def test_ping_reports_false_instead_of_raising(self, store, client):
        client.ping.side_effect = RedisConnectionError("down")
        assert await store.ping() is False


class TestCommands:
    async def test_set_clamps_ttl(self, store, client):
        await store.set("key", "1", 0)
        client.set.assert_awaited_with("key", "1", ex=1)

    async def test_set_if_absent_uses_nx(self, store, client):
        client.set.return_value = None
        assert await store.set_if_absent("claim", "1", 30) is False
        client.set.assert_awaited_with("claim", "1", ex=30, nx=True)

    async def test_ttl_maps_missing_and_persistent_to_none(self, store, client):
        client.ttl.return_value = -2
        assert await store.ttl("missing") is None
        client.ttl.return_value = -1
        assert await store.ttl("persistent") is None
        client.ttl.return_value = 42
        assert await store.ttl("live") == 42

    async def test_delete_without_keys_is_a_noop(self, store, client):
        await store.delete()
        client.delete.assert_not_awaited()

    async def test_add_indexed_uses_one_transaction(self, store, client):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1, True])
        client.pipeline.return_value = pipe

        await store.add_indexed("auth:session:u:s", "{}", 600, "auth:user_sessions:u", "s")

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("auth:session:u:s", "{}", ex=600)
        pipe.sadd.assert_called_once_with("auth:user_sessions:u", "s")
        pipe.expire.assert_called_once_with("auth:user_sessions:u", 600)
        pipe.execute.assert_awaited_once()

    async def test_members_returns_set(self, store, client):
        client.smembers.return_value = {"a", "b"}
        assert await store.members("idx") == {"a", "b"}
