import pytest
import threading

from stable_automation.services.notifications.rate_limiter import (
    RateLimit,
    TokenBucketRateLimiter,
    default_limits,
    get_rate_limiter,
)


class FakeClock:
    def __init__(self, start_ms: float = 0.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float):
        self.now_ms += ms


@pytest.mark.unit
class TestTokenBucketRateLimiter:
    """Test per-channel token bucket admission."""

    def test_burst_then_deny_then_recover(self):
        """Five immediate acquires pass, the sixth waits for a refill."""
        clock = FakeClock()
        limiter = TokenBucketRateLimiter({"email": RateLimit.per_minute(5)}, clock)

        decisions = [limiter.try_acquire("email") for _ in range(5)]
        assert all(d.allowed for d in decisions)

        denied = limiter.try_acquire("email")
        assert denied.allowed is False
        assert denied.delay_ms > 0
        # One token every 12 seconds at 5 per minute
        assert 11_999 <= denied.delay_ms <= 12_001

        clock.advance(denied.delay_ms)
        assert limiter.try_acquire("email").allowed is True

    def test_denied_before_delay_elapsed(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter({"push": RateLimit.per_minute(1)}, clock)

        assert limiter.try_acquire("push").allowed is True
        first_denial = limiter.try_acquire("push")

        clock.advance(first_denial.delay_ms / 2)
        second_denial = limiter.try_acquire("push")

        assert second_denial.allowed is False
        assert second_denial.delay_ms < first_denial.delay_ms

    def test_refill_is_capped_at_max_tokens(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter({"telegram": RateLimit.per_minute(3)}, clock)

        clock.advance(60 * 60 * 1000)
        allowed = [limiter.try_acquire("telegram").allowed for _ in range(4)]

        assert allowed == [True, True, True, False]

    def test_channels_are_independent(self):
        clock = FakeClock()
        limiter = TokenBucketRateLimiter(
            {"email": RateLimit.per_minute(1), "push": RateLimit.per_minute(1)}, clock
        )

        assert limiter.try_acquire("email").allowed is True
        assert limiter.try_acquire("email").allowed is False
        assert limiter.try_acquire("push").allowed is True

    def test_unknown_channel_is_always_allowed(self):
        limiter = TokenBucketRateLimiter({}, FakeClock())

        assert all(limiter.try_acquire("sms").allowed for _ in range(100))

    def test_tokens_never_exceed_bounds_under_threads(self):
        """Concurrent callers never get more permits than the bucket holds."""
        limiter = TokenBucketRateLimiter(
            {"push": RateLimit.per_minute(50)}, FakeClock()
        )
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                decision = limiter.try_acquire("push")
                with lock:
                    results.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 50
        assert results.count(False) == 50

    def test_default_limits_from_settings(self):
        limits = default_limits()

        assert limits["email"].max_tokens == 100
        assert limits["push"].max_tokens == 500
        assert limits["telegram"].max_tokens == 30
        assert limits["inApp"].max_tokens == 1000

    def test_process_wide_instance(self):
        assert get_rate_limiter() is get_rate_limiter()
