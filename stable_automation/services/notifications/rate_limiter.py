import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from stable_automation.config.settings import settings

MS_PER_MINUTE = 60_000

# Absorbs float error so that waiting exactly delay_ms is always enough
_TOKEN_EPSILON = 1e-9


@dataclass(frozen=True)
class RateLimit:
    max_tokens: float
    refill_rate_per_ms: float

    @classmethod
    def per_minute(cls, count: int) -> "RateLimit":
        return cls(max_tokens=count, refill_rate_per_ms=count / MS_PER_MINUTE)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    delay_ms: int = 0


@dataclass
class _Bucket:
    tokens: float
    last_refill_ms: float


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class TokenBucketRateLimiter:
    """
    Per-channel token buckets.

    State is process-local and resets on restart. A lock guards the buckets
    because queue items are processed concurrently within one worker.
    Channels without a configured limit are always admitted.
    """

    def __init__(
        self,
        limits: Dict[str, RateLimit],
        clock_ms: Callable[[], float] = _monotonic_ms,
    ):
        self._limits = dict(limits)
        self._clock_ms = clock_ms
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def try_acquire(self, channel: str) -> RateLimitDecision:
        limit = self._limits.get(channel)
        if limit is None:
            return RateLimitDecision(allowed=True)

        with self._lock:
            now = self._clock_ms()
            bucket = self._buckets.get(channel)
            if bucket is None:
                bucket = _Bucket(tokens=limit.max_tokens, last_refill_ms=now)
                self._buckets[channel] = bucket

            elapsed = max(0.0, now - bucket.last_refill_ms)
            bucket.tokens = min(
                limit.max_tokens, bucket.tokens + elapsed * limit.refill_rate_per_ms
            )
            bucket.last_refill_ms = now

            if bucket.tokens >= 1 - _TOKEN_EPSILON:
                bucket.tokens = max(0.0, bucket.tokens - 1)
                return RateLimitDecision(allowed=True)

            delay_ms = math.ceil((1 - bucket.tokens) / limit.refill_rate_per_ms)
            return RateLimitDecision(allowed=False, delay_ms=delay_ms)


def default_limits() -> Dict[str, RateLimit]:
    return {
        "email": RateLimit.per_minute(settings.RATE_LIMIT_EMAIL_PER_MINUTE),
        "push": RateLimit.per_minute(settings.RATE_LIMIT_PUSH_PER_MINUTE),
        "telegram": RateLimit.per_minute(settings.RATE_LIMIT_TELEGRAM_PER_MINUTE),
        "inApp": RateLimit.per_minute(settings.RATE_LIMIT_IN_APP_PER_MINUTE),
    }


_rate_limiter: Optional[TokenBucketRateLimiter] = None


def get_rate_limiter() -> TokenBucketRateLimiter:
    """Process-wide limiter built from settings."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = TokenBucketRateLimiter(default_limits())
    return _rate_limiter
