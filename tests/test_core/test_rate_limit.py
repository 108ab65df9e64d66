"""Tests for the fixed-window rate limiter."""

import pytest

from chainly.core.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestRateLimiter:
    def test_allows_up_to_limit_then_blocks(self, clock: FakeClock):
        limiter = RateLimiter(limit=3, window_seconds=10, clock=clock)

        results = [limiter.check("ip") for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    def test_window_resets_after_expiry(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, clock=clock)
        limiter.check("ip")
        assert not limiter.check("ip").allowed

        clock.now += 10

        result = limiter.check("ip")
        assert result.allowed
        assert result.reset_at == clock.now + 10

    def test_keys_are_independent(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, clock=clock)

        assert limiter.check("a").allowed
        assert limiter.check("b").allowed
        assert not limiter.check("a").allowed

    def test_blocked_result_headers(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, clock=clock)
        limiter.check("ip")

        headers = limiter.check("ip").headers(now=clock.now + 2.5)

        assert headers["X-RateLimit-Limit"] == "1"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["X-RateLimit-Reset"] == str(int(clock.now + 10))
        assert headers["Retry-After"] == "8"

    def test_allowed_result_has_no_retry_after(self, clock: FakeClock):
        limiter = RateLimiter(limit=5, window_seconds=10, clock=clock)

        assert "Retry-After" not in limiter.check("ip").headers()

    def test_memory_is_bounded(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, max_keys=3, clock=clock)

        for i in range(10):
            limiter.check(f"key-{i}")

        assert len(limiter) <= 3

    def test_expired_entries_are_purged_before_eviction(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, max_keys=2, clock=clock)
        limiter.check("old")
        clock.now += 5
        limiter.check("young")
        clock.now += 6  # "old" expired, "young" still live

        limiter.check("new")

        assert not limiter.check("young").allowed
        assert len(limiter) == 2

    def test_oldest_key_is_evicted_when_all_live(self, clock: FakeClock):
        limiter = RateLimiter(limit=1, window_seconds=10, max_keys=2, clock=clock)
        limiter.check("first")
        limiter.check("second")

        limiter.check("third")

        # "first" was forgotten, so it gets a fresh window
        assert limiter.check("first").allowed

    @pytest.mark.parametrize(
        "kwargs",
        [{"limit": 0}, {"window_seconds": 0}, {"max_keys": 0}],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RateLimiter(**kwargs)
