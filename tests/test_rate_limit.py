"""Tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock, patch

import pytest

from chatauth.config import Settings
from chatauth.service.errors import RateLimitExceededError
from chatauth.service.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    configs_from_settings,
    generate_key,
)
from chatauth.storage.errors import StoreUnavailableError

CONFIG = RateLimitConfig(max_attempts=10, window_seconds=60, block_seconds=30)


@pytest.fixture
def limiter(kv):
    return RateLimiter(kv, {"api-call": CONFIG})


class TestHit:
    async def test_budget_then_block(self, limiter):
        key = generate_key("api-call", ip_addr="10.0.0.1")
        counts = [await limiter.hit(key, CONFIG) for _ in range(10)]
        assert counts == list(range(1, 11))

        with pytest.raises(RateLimitExceededError) as excinfo:
            await limiter.hit(key, CONFIG)
        assert excinfo.value.retry_after == 30
        assert await limiter.is_blocked(key) is True

    async def test_blocked_key_reports_remaining_block(self, limiter, clock):
        key = generate_key("api-call", ip_addr="10.0.0.1")
        await limiter.block(key, CONFIG)
        clock.advance(10)
        with pytest.raises(RateLimitExceededError) as excinfo:
            await limiter.hit(key, CONFIG)
        assert excinfo.value.retry_after == 20

    async def test_block_lapses_and_window_restarts(self, limiter, clock):
        key = generate_key("api-call", ip_addr="10.0.0.1")
        for _ in range(10):
            await limiter.hit(key, CONFIG)
        with pytest.raises(RateLimitExceededError):
            await limiter.hit(key, CONFIG)

        clock.advance(30)
        assert await limiter.is_blocked(key) is False
        assert await limiter.hit(key, CONFIG) == 1

    async def test_window_expiry_resets_count(self, limiter, clock):
        key = generate_key("api-call", user_id="u1")
        for _ in range(9):
            await limiter.hit(key, CONFIG)
        clock.advance(60)
        assert await limiter.hit(key, CONFIG) == 1

    async def test_identities_are_independent(self, limiter):
        first = generate_key("api-call", ip_addr="10.0.0.1")
        second = generate_key("api-call", ip_addr="10.0.0.2")
        for _ in range(10):
            await limiter.hit(first, CONFIG)
        assert await limiter.hit(second, CONFIG) == 1

    async def test_zero_budget_disables_limit(self, limiter):
        disabled = RateLimitConfig(max_attempts=0, window_seconds=60, block_seconds=30)
        for _ in range(5):
            assert await limiter.hit("k", disabled) == 0

    async def test_invalid_window_falls_back(self, limiter, kv):
        broken = RateLimitConfig(max_attempts=5, window_seconds=0, block_seconds=30)
        with patch("chatauth.service.rate_limit.logger") as mock_logger:
            await limiter.hit("k", broken)
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
        assert await kv.ttl(limiter._counter_key("k")) == 60

    async def test_reset_clears_counter_and_block(self, limiter):
        key = generate_key("api-call", user_id="u1")
        for _ in range(10):
            await limiter.hit(key, CONFIG)
        with pytest.raises(RateLimitExceededError):
            await limiter.hit(key, CONFIG)
        await limiter.reset(key)
        assert await limiter.hit(key, CONFIG) == 1


class TestStatus:
    async def test_status_reflects_window(self, limiter, clock):
        key = generate_key("api-call", user_id="u1")
        for _ in range(3):
            await limiter.hit(key, CONFIG)
        clock.advance(15)
        status = await limiter.status(key, CONFIG)
        assert status.attempts == 3
        assert status.remaining == 7
        assert status.reset_in_seconds == 45
        assert status.is_blocked is False
        assert status.block_expires_in_seconds is None

    async def test_status_when_blocked(self, limiter):
        key = generate_key("api-call", user_id="u1")
        await limiter.block(key, CONFIG)
        status = await limiter.status(key, CONFIG)
        assert status.is_blocked is True
        assert status.block_expires_in_seconds == 30


class TestFailOpen:
    """Store outages admit requests instead of rejecting them."""

    async def test_unavailable_store_admits(self, limiter, kv):
        failure = StoreUnavailableError("down", operation="exists")
        kv.exists = AsyncMock(side_effect=failure)
        kv.increment = AsyncMock(side_effect=failure)
        with patch("chatauth.service.rate_limit.logger") as mock_logger:
            for _ in range(20):
                assert await limiter.hit("k", CONFIG) == 0
        assert mock_logger.warning.call_args[0][0] == "rate_limit_store_unavailable"


class TestKeys:
    def test_generate_key_prefers_user(self):
        assert generate_key("login", user_id="u1", ip_addr="1.2.3.4") == "user:u1:login"
        assert generate_key("login", ip_addr="1.2.3.4") == "ip:1.2.3.4:login"
        assert generate_key("login") == "ip:unknown:login"

    def test_store_keys_are_hashed(self, limiter):
        counter = limiter._counter_key("ip:10.0.0.1:login")
        assert counter.startswith("rate_limit:")
        assert "10.0.0.1" not in counter
        assert limiter._block_key("ip:10.0.0.1:login").startswith("rate_limit:block:")

    def test_unknown_action(self, limiter):
        with pytest.raises(KeyError):
            limiter.config_for("password-reset")

    def test_configs_from_settings(self):
        settings = Settings(test_mode=True, rate_limit_login_max_attempts=7)
        configs = configs_from_settings(settings)
        assert set(configs) == {"login", "registration", "password-reset", "token-refresh", "api-call"}
        assert configs["login"].max_attempts == 7
        assert configs["login"].window_seconds == 900
        assert configs["api-call"].max_attempts == 100
