"""Tests for rate limiting."""

import asyncio

import pytest

from gatekeeper import config
from gatekeeper.rate_limiter import RateLimiter, RateLimitConfig

FREE = config.FREE_MODEL
PREMIUM = config.PREMIUM_MODEL


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the clock by exactly that much."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        self.clock.advance(seconds)


def make_limiter(clock=None, premium_max=3, free_max=2, window=60.0, sleep=None):
    configs = {
        PREMIUM: RateLimitConfig(window_seconds=window, max_requests=premium_max, model_type="premium"),
        FREE: RateLimitConfig(window_seconds=window, max_requests=free_max, model_type="free"),
    }
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    if sleep is not None:
        kwargs["sleep"] = sleep
    return RateLimiter(configs, **kwargs)


class TestCheckLimit:
    """Test fixed-window admission."""

    def test_allows_up_to_max_then_denies(self):
        """The (max+1)th request in a window is denied."""
        clock = FakeClock()
        limiter = make_limiter(clock)

        assert [limiter.check_limit("u1", PREMIUM).allowed for _ in range(3)] == [True, True, True]

        denied = limiter.check_limit("u1", PREMIUM)
        assert denied.allowed is False
        assert denied.reset_time == clock.now + 60.0
        assert "free model" in denied.suggestion

    def test_free_model_suggests_upgrade(self):
        """Denials on the free tier suggest upgrading."""
        limiter = make_limiter(FakeClock())
        limiter.check_limit("u1", FREE)
        limiter.check_limit("u1", FREE)

        denied = limiter.check_limit("u1", FREE)
        assert denied.allowed is False
        assert "premium" in denied.suggestion

    def test_new_window_after_reset(self):
        """Once the window has passed, the next request opens a new one."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        for _ in range(3):
            limiter.check_limit("u1", PREMIUM)
        assert limiter.check_limit("u1", PREMIUM).allowed is False

        clock.advance(60.5)

        assert limiter.check_limit("u1", PREMIUM).allowed is True
        assert limiter.get_usage_stats("u1")["premium_model_usage"]["count"] == 1

    def test_denials_do_not_extend_window(self):
        """Denied requests are not counted and leave the reset time alone."""
        clock = FakeClock()
        limiter = make_limiter(clock, premium_max=1)
        limiter.check_limit("u1", PREMIUM)
        first = limiter.check_limit("u1", PREMIUM)
        clock.advance(10)
        second = limiter.check_limit("u1", PREMIUM)

        assert first.reset_time == second.reset_time

    def test_unknown_model_is_unlimited(self):
        """Models without configuration are always allowed and not tracked."""
        limiter = make_limiter(FakeClock())
        for _ in range(100):
            assert limiter.check_limit("u1", "some/other-model").allowed is True
        assert len(limiter) == 0

    def test_keys_are_independent(self):
        """Limits apply per user and per model."""
        limiter = make_limiter(FakeClock(), premium_max=1)
        assert limiter.check_limit("u1", PREMIUM).allowed is True
        assert limiter.check_limit("u1", PREMIUM).allowed is False
        assert limiter.check_limit("u2", PREMIUM).allowed is True
        assert limiter.check_limit("u1", FREE).allowed is True

    def test_default_configs_from_config_module(self):
        """Without explicit configs the configured table is used."""
        limiter = RateLimiter()
        assert limiter.configs[FREE].max_requests == 20
        assert limiter.configs[PREMIUM].max_requests == 60
        assert limiter.configs[PREMIUM].model_type == "premium"


class TestRecommendations:
    """Test model recommendations and usage stats."""

    def test_historical_sync_uses_free(self):
        """Historical syncs go to the free model."""
        rec = make_limiter().recommended_model(5, is_historical_sync=True)
        assert rec.model == FREE

    def test_large_batch_uses_free(self):
        """More than 50 requests go to the free model."""
        limiter = make_limiter()
        assert limiter.recommended_model(51).model == FREE
        assert limiter.recommended_model(50).model == PREMIUM

    def test_usage_stats_empty(self):
        """A fresh user gets the getting-started recommendation."""
        stats = make_limiter().get_usage_stats("nobody")
        assert stats["free_model_usage"] == {"count": 0, "reset_time": None}
        assert stats["premium_model_usage"]["count"] == 0
        assert len(stats["recommendations"]) == 1

    def test_usage_stats_high_premium_usage(self):
        """Heavy premium usage suggests the free model."""
        limiter = make_limiter(FakeClock(), premium_max=100)
        for _ in range(41):
            limiter.check_limit("u1", PREMIUM)

        stats = limiter.get_usage_stats("u1")
        assert stats["premium_model_usage"]["count"] == 41
        assert any("free model" in r for r in stats["recommendations"])


class TestHandleRateLimit:
    """Test fallback and wait handling."""

    @pytest.mark.asyncio
    async def test_primary_allowed(self):
        """An allowed primary model proceeds immediately."""
        limiter = make_limiter(FakeClock())
        decision = await limiter.handle_rate_limit("u1", PREMIUM, fallback_model=FREE)
        assert decision.model == PREMIUM
        assert decision.should_proceed is True
        assert decision.wait_time is None

    @pytest.mark.asyncio
    async def test_switches_to_fallback(self):
        """An exhausted premium model falls back to the free model."""
        limiter = make_limiter(FakeClock(), premium_max=1)
        await limiter.handle_rate_limit("u1", PREMIUM, fallback_model=FREE)

        decision = await limiter.handle_rate_limit("u1", PREMIUM, fallback_model=FREE)
        assert decision.model == FREE
        assert decision.should_proceed is True

    @pytest.mark.asyncio
    async def test_gives_up_when_wait_too_long(self):
        """Waits beyond max_wait are reported instead of slept."""
        limiter = make_limiter(FakeClock(), premium_max=1, free_max=1)
        await limiter.handle_rate_limit("u1", PREMIUM)
        limiter.check_limit("u1", FREE)

        decision = await limiter.handle_rate_limit("u1", PREMIUM, fallback_model=FREE, max_wait=5.0)
        assert decision.should_proceed is False
        assert decision.model == PREMIUM
        assert decision.wait_time == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_free_primary_never_falls_back(self):
        """The free tier does not switch to a fallback."""
        limiter = make_limiter(FakeClock(), free_max=1)
        limiter.check_limit("u1", FREE)

        decision = await limiter.handle_rate_limit("u1", FREE, fallback_model=PREMIUM, max_wait=1.0)
        assert decision.should_proceed is False
        assert limiter.get_usage_stats("u1")["premium_model_usage"]["count"] == 0

    @pytest.mark.asyncio
    async def test_waits_for_reset(self):
        """Short waits are slept through and then proceed on the primary model."""
        limiter = make_limiter(premium_max=1, window=0.05)
        await limiter.handle_rate_limit("u1", PREMIUM)

        decision = await limiter.handle_rate_limit("u1", PREMIUM, max_wait=1.0)
        assert decision.should_proceed is True
        assert decision.model == PREMIUM
        assert 0 < decision.wait_time < 1.0
        assert limiter.total_wait_time == pytest.approx(decision.wait_time)

    @pytest.mark.asyncio
    async def test_retries_when_woken_at_reset_time(self):
        """Waking exactly at the reset time is still inside the window, so it waits again."""
        clock = FakeClock()
        sleep = FakeSleep(clock)
        limiter = make_limiter(clock, premium_max=1, sleep=sleep)
        await limiter.handle_rate_limit("u1", PREMIUM)

        decision = await limiter.handle_rate_limit("u1", PREMIUM, max_wait=100.0)

        assert decision.should_proceed is True
        assert decision.model == PREMIUM
        assert sleep.calls == [pytest.approx(60.0), pytest.approx(0.01)]
        assert decision.wait_time == pytest.approx(60.01)
        assert limiter.get_usage_stats("u1")["premium_model_usage"]["count"] == 1

    @pytest.mark.asyncio
    async def test_still_denied_after_wait_does_not_proceed(self):
        """A window that is still closed after the allowed wait is not admitted."""
        clock = FakeClock()
        sleep = FakeSleep(clock)
        limiter = make_limiter(clock, premium_max=1, sleep=sleep)
        await limiter.handle_rate_limit("u1", PREMIUM)
        reset_time = limiter.get_usage_stats("u1")["premium_model_usage"]["reset_time"]

        decision = await limiter.handle_rate_limit("u1", PREMIUM, max_wait=60.0)

        assert decision.should_proceed is False
        assert sleep.calls == [pytest.approx(60.0)]
        usage = limiter.get_usage_stats("u1")["premium_model_usage"]
        assert usage["count"] == 1
        assert usage["reset_time"] == reset_time


class TestMaintenance:
    """Test cleanup and reset."""

    def test_cleanup_removes_expired(self):
        """Expired entries are swept; live ones stay."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.check_limit("u1", PREMIUM)
        clock.advance(30)
        limiter.check_limit("u2", PREMIUM)
        clock.advance(31)

        assert limiter.cleanup() == 1
        assert len(limiter) == 1

    def test_reset_user(self):
        """Resetting one user leaves others alone."""
        limiter = make_limiter(FakeClock())
        limiter.check_limit("u1", PREMIUM)
        limiter.check_limit("u1", FREE)
        limiter.check_limit("u2", PREMIUM)

        limiter.reset("u1")
        assert len(limiter) == 1

        limiter.reset()
        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_background_cleanup(self):
        """The cleanup loop sweeps expired entries periodically."""
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.check_limit("u1", PREMIUM)
        clock.advance(61)

        limiter.start_cleanup(interval=0.01)
        try:
            for _ in range(100):
                if len(limiter) == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            await limiter.stop_cleanup()

        assert len(limiter) == 0
