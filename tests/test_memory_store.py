"""Tests for the in-process key-value store used in development and tests."""

import pytest

from chatauth.storage.errors import ConstraintViolation
from chatauth.storage.memory import MemoryAccountStore


class TestMemoryRevocationStore:
    async def test_set_get_and_expiry(self, kv, clock):
        await kv.set("k", "v", 10)
        assert await kv.get("k") == "v"
        assert await kv.ttl("k") == 10
        clock.advance(10)
        assert await kv.get("k") is None
        assert await kv.exists("k") is False

    async def test_increment_starts_at_zero_and_keeps_ttl(self, kv, clock):
        assert await kv.increment("counter") == 1
        await kv.expire("counter", 60)
        assert await kv.increment("counter") == 2
        assert await kv.ttl("counter") == 60
        clock.advance(61)
        assert await kv.increment("counter") == 1

    async def test_ttl_absent_for_missing_or_persistent_keys(self, kv):
        assert await kv.ttl("missing") is None
        await kv.increment("no-expiry")
        assert await kv.ttl("no-expiry") is None

    async def test_set_if_absent(self, kv, clock):
        assert await kv.set_if_absent("claim", "1", 5) is True
        assert await kv.set_if_absent("claim", "1", 5) is False
        clock.advance(5)
        assert await kv.set_if_absent("claim", "1", 5) is True

    async def test_delete_many(self, kv):
        await kv.set("a", "1", 10)
        await kv.set("b", "1", 10)
        await kv.delete("a", "b", "c")
        assert not await kv.exists("a")
        assert not await kv.exists("b")

    async def test_indexed_records(self, kv):
        await kv.add_indexed("rec:1", "x", 30, "idx", "1")
        await kv.add_indexed("rec:2", "y", 30, "idx", "2")
        assert await kv.members("idx") == {"1", "2"}
        await kv.remove_indexed(["rec:1"], "idx", ["1"])
        assert await kv.members("idx") == {"2"}
        assert await kv.get("rec:1") is None
        assert await kv.get("rec:2") == "y"

    async def test_non_positive_ttl_is_clamped(self, kv, clock):
        await kv.set("k", "v", 0)
        assert await kv.exists("k")
        clock.advance(1)
        assert not await kv.exists("k")


class TestMemoryAccountStore:
    def test_duplicate_email_is_a_constraint_violation(self):
        store = MemoryAccountStore()
        store.create_account("Person@Example.com")
        with pytest.raises(ConstraintViolation):
            store.create_account("person@example.com ")

    def test_lookup_is_case_insensitive(self):
        store = MemoryAccountStore()
        account = store.create_account("Person@Example.com")
        assert store.get_account_by_email("PERSON@example.COM").id == account.id

    def test_failed_attempt_hooks(self):
        store = MemoryAccountStore()
        account = store.create_account("a@example.com")
        assert store.increment_failed_attempts(account.id) == 1
        assert store.increment_failed_attempts(account.id) == 2
        store.reset_failed_attempts(account.id)
        assert store.get_account(account.id).failed_login_attempts == 0
        assert store.increment_failed_attempts("missing") == 0
