from .dispatcher import ChannelDispatcher
from .enqueue import enqueue_notification
from .queue_processor import (
    MAX_ATTEMPTS_ERROR,
    dispatch_due_queue_items,
    process_queue_item,
)
from .rate_limiter import (
    RateLimit,
    RateLimitDecision,
    TokenBucketRateLimiter,
    get_rate_limiter,
)
from .registry import ChannelSenderRegistry
from .sweeps import cleanup_old_notifications, retry_failed_deliveries

__all__ = [
    "ChannelDispatcher",
    "enqueue_notification",
    "MAX_ATTEMPTS_ERROR",
    "dispatch_due_queue_items",
    "process_queue_item",
    "RateLimit",
    "RateLimitDecision",
    "TokenBucketRateLimiter",
    "get_rate_limiter",
    "ChannelSenderRegistry",
    "cleanup_old_notifications",
    "retry_failed_deliveries",
]
