import asyncio
import math

from stable_automation.celery import celery
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.notifications.queue_processor import process_queue_item
from stable_automation.utils.context import request_scope
from stable_automation.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def process_notification_queue_item_task(self, request_id: str, queue_item_id: str):
    """
    Celery task to deliver one notification queue item.

    Triggered once per new queue item, by the retry sweep after a reset, and
    by itself when the item was deferred (not yet due or rate limited). A
    duplicate trigger is a no-op because only pending items are processed.

    Args:
        request_id: The request ID of the producer that queued the item
        queue_item_id: ID of the notification queue item
    """
    with request_scope(request_id):
        return asyncio.run(
            _async_process_notification_queue_item(request_id, queue_item_id)
        )


async def _async_process_notification_queue_item(
    request_id: str, queue_item_id: str, session_factory=AsyncSessionLocal
):
    logger = get_logger().bind(request_id=request_id, queue_item_id=queue_item_id)

    async with session_factory() as db_session:
        try:
            result = await process_queue_item(
                db_session, queue_item_id, request_id=request_id
            )
        except Exception as e:
            await db_session.rollback()
            logger.error(
                "Critical error in notification queue processing",
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "queue_item_id": queue_item_id,
                "request_id": request_id,
            }

    retry_after_ms = result.get("retry_after_ms")
    if retry_after_ms:
        countdown = max(1, math.ceil(retry_after_ms / 1000))
        process_notification_queue_item_task.apply_async(  # type: ignore
            args=[request_id, queue_item_id], countdown=countdown
        )
        logger.info("Queue item re-triggered", countdown=countdown)

    return {"success": True, **result, "request_id": request_id}
