import asyncio

from stable_automation.celery import celery
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.notifications.sweeps import cleanup_old_notifications
from stable_automation.utils.context import request_scope
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def cleanup_old_notifications_task(self, request_id: str):
    """
    Daily task to delete sent and failed queue items past their retention and
    archive read notifications older than the archive threshold.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    try:
        with request_scope(request_id):
            return asyncio.run(_async_cleanup_old_notifications(request_id))
    except DatabaseError as e:
        if self.request.retries < self.max_retries:
            retry_delay = min(2**self.request.retries * 60, 600)
            raise self.retry(exc=e, countdown=retry_delay)

        return {"success": False, "error": e.message, "request_id": request_id}


async def _async_cleanup_old_notifications(
    request_id: str, session_factory=AsyncSessionLocal
):
    logger = get_logger().bind(request_id=request_id)

    try:
        counts = await cleanup_old_notifications(session_factory, request_id=request_id)
    except DatabaseError as e:
        logger.error("Notification cleanup task exception", error=e.message)
        raise

    return {
        "success": True,
        "deleted_queue_item_count": counts["deleted_queue_items"],
        "archived_notification_count": counts["archived_notifications"],
        "request_id": request_id,
    }
