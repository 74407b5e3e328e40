import asyncio
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.config.settings import settings
from stable_automation.db.models import (
    DeliveryStatus,
    Notification,
    NotificationQueueItem,
    QueueItemStatus,
)
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.utils.datetime_utils import to_naive_utc, utc_now
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger

from .dispatcher import ChannelDispatcher
from .rate_limiter import TokenBucketRateLimiter, get_rate_limiter
from .senders import SendResult

MAX_ATTEMPTS_ERROR = "Max delivery attempts reached"
INTERRUPTED_DELIVERY_ERROR = "Delivery interrupted before completion"


async def process_queue_item(
    db_session: AsyncSession,
    queue_item_id: str,
    now: Optional[datetime] = None,
    rate_limiter: Optional[TokenBucketRateLimiter] = None,
    dispatcher: Optional[ChannelDispatcher] = None,
    request_id: str = "app",
) -> Dict[str, Any]:
    """
    Drive one queue item through ``pending -> processing -> sent | failed``.

    Duplicate triggers are harmless: anything that is no longer pending is
    left alone, and the claim is a conditional update on ``status``.

    Returns:
        Dict with ``action`` and, for deferrals, ``retry_after_ms`` telling the
        caller when to trigger the item again
    """
    logger = get_logger().bind(request_id=request_id, queue_item_id=queue_item_id)
    now = to_naive_utc(now or utc_now())
    rate_limiter = rate_limiter or get_rate_limiter()
    dispatcher = dispatcher or ChannelDispatcher()

    item = await db_session.get(NotificationQueueItem, queue_item_id)
    if item is None:
        logger.warning("Queue item not found")
        return {"action": "not_found", "queue_item_id": queue_item_id}

    channel = item.channel.value
    logger = logger.bind(channel=channel)

    if item.status != QueueItemStatus.PENDING:
        return {
            "action": "skipped",
            "queue_item_id": queue_item_id,
            "status": item.status.value,
        }

    if item.attempts >= item.max_attempts:
        item.status = QueueItemStatus.FAILED
        item.last_error = MAX_ATTEMPTS_ERROR
        item.processed_at = now
        await record_delivery_status(db_session, item, DeliveryStatus.FAILED, now)
        await db_session.commit()
        logger.warning("Queue item exhausted its attempts", attempts=item.attempts)
        return {
            "action": "max_attempts",
            "queue_item_id": queue_item_id,
            "status": item.status.value,
        }

    if item.scheduled_for and item.scheduled_for > now:
        retry_after_ms = math.ceil((item.scheduled_for - now).total_seconds() * 1000)
        return {
            "action": "deferred",
            "queue_item_id": queue_item_id,
            "status": item.status.value,
            "retry_after_ms": retry_after_ms,
        }

    decision = rate_limiter.try_acquire(channel)
    if not decision.allowed:
        retry_after_ms = decision.delay_ms + settings.RATE_LIMIT_DEFER_PADDING_MS
        item.scheduled_for = now + timedelta(milliseconds=retry_after_ms)
        item.last_error = f"Rate limited, retry in {decision.delay_ms}ms"
        await db_session.commit()
        logger.info("Queue item rate limited", delay_ms=decision.delay_ms)
        return {
            "action": "rate_limited",
            "queue_item_id": queue_item_id,
            "status": item.status.value,
            "retry_after_ms": retry_after_ms,
        }

    claimed = await _claim(db_session, queue_item_id, now)
    if not claimed:
        return {"action": "skipped", "queue_item_id": queue_item_id}
    await db_session.refresh(item)

    try:
        result = await dispatcher.dispatch(db_session, item)
    except Exception as e:
        logger.error("Channel dispatch raised", error=str(e), exc_info=True)
        result = SendResult(success=False, error=str(e))

    item.status = QueueItemStatus.SENT if result.success else QueueItemStatus.FAILED
    item.last_error = None if result.success else result.error
    item.processed_at = now
    await record_delivery_status(
        db_session,
        item,
        DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
        now,
    )
    await db_session.commit()

    if result.success:
        logger.info("Queue item delivered", attempts=item.attempts)
    else:
        logger.warning(
            "Queue item delivery failed",
            attempts=item.attempts,
            error=result.error,
            invalid_target=result.invalid_target,
        )

    return {
        "action": "sent" if result.success else "failed",
        "queue_item_id": queue_item_id,
        "status": item.status.value,
        "attempts": item.attempts,
        "error": item.last_error,
    }


async def _claim(db_session: AsyncSession, queue_item_id: str, now: datetime) -> bool:
    """Compare-and-set ``pending -> processing`` and count the attempt."""
    result = await db_session.execute(
        update(NotificationQueueItem)
        .where(
            and_(
                NotificationQueueItem.id == queue_item_id,
                NotificationQueueItem.status == QueueItemStatus.PENDING,
            )
        )
        .values(
            status=QueueItemStatus.PROCESSING,
            attempts=NotificationQueueItem.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    return result.rowcount == 1


async def record_delivery_status(
    db_session: AsyncSession,
    item: NotificationQueueItem,
    status: DeliveryStatus,
    now: datetime,
):
    """Mirror the item's terminal status onto the parent notification."""
    notification = await db_session.get(Notification, item.notification_id)
    if notification is None:
        return

    delivery_status = dict(notification.delivery_status or {})
    delivery_status[item.channel.value] = status.value
    notification.delivery_status = delivery_status
    notification.delivery_attempts = (notification.delivery_attempts or 0) + 1
    notification.last_delivery_attempt = now
    if status == DeliveryStatus.SENT and notification.delivered_at is None:
        notification.delivered_at = now


async def dispatch_due_queue_items(
    session_factory=AsyncSessionLocal,
    request_id: str = "app",
    now: Optional[datetime] = None,
    concurrency: Optional[int] = None,
    limit: Optional[int] = None,
    rate_limiter: Optional[TokenBucketRateLimiter] = None,
    dispatcher: Optional[ChannelDispatcher] = None,
) -> Dict[str, int]:
    """
    Process every pending item whose ``scheduled_for`` has passed.

    Items are independent and processed concurrently, each in its own
    session. Only a failure to list the due items propagates.
    """
    logger = get_logger().bind(request_id=request_id)
    now = now or utc_now()
    concurrency = concurrency or settings.QUEUE_CONCURRENCY
    limit = limit or settings.SWEEP_BATCH_SIZE
    rate_limiter = rate_limiter or get_rate_limiter()
    dispatcher = dispatcher or ChannelDispatcher()

    try:
        async with session_factory() as db_session:
            item_ids = await _get_due_item_ids(db_session, to_naive_utc(now), limit)
    except SQLAlchemyError as e:
        raise DatabaseError(f"Failed to list due queue items: {str(e)}")

    semaphore = asyncio.Semaphore(concurrency)

    async def _bounded(queue_item_id: str) -> str:
        async with semaphore:
            async with session_factory() as db_session:
                try:
                    result = await process_queue_item(
                        db_session,
                        queue_item_id,
                        now=now,
                        rate_limiter=rate_limiter,
                        dispatcher=dispatcher,
                        request_id=request_id,
                    )
                    return result["action"]
                except Exception as e:
                    await db_session.rollback()
                    logger.error(
                        "Error processing queue item",
                        queue_item_id=queue_item_id,
                        error=str(e),
                    )
                    return "error"

    actions = await asyncio.gather(*(_bounded(i) for i in item_ids))

    totals = {
        "found": len(item_ids),
        "sent": actions.count("sent"),
        "failed": actions.count("failed") + actions.count("max_attempts"),
        "deferred": actions.count("deferred") + actions.count("rate_limited"),
        "errors": actions.count("error"),
    }
    logger.info("Due queue items processed", **totals)
    return totals


async def _get_due_item_ids(
    db_session: AsyncSession, now: datetime, limit: int
) -> List[str]:
    result = await db_session.execute(
        select(NotificationQueueItem.id)
        .where(
            and_(
                NotificationQueueItem.status == QueueItemStatus.PENDING,
                NotificationQueueItem.scheduled_for <= now,
            )
        )
        .order_by(NotificationQueueItem.scheduled_for)
        .limit(limit)
    )
    return list(result.scalars().all())
