import asyncio

from stable_automation.celery import celery
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.notifications.queue_processor import (
    dispatch_due_queue_items,
)
from stable_automation.utils.context import request_scope
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def dispatch_due_queue_items_task(self, request_id: str):
    """
    Task run every few minutes to process pending queue items whose
    scheduled time has passed, e.g. deferred items whose own re-trigger was lost.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    try:
        with request_scope(request_id):
            return asyncio.run(_async_dispatch_due_queue_items(request_id))
    except DatabaseError as e:
        if self.request.retries < self.max_retries:
            retry_delay = min(2**self.request.retries * 30, 300)
            raise self.retry(exc=e, countdown=retry_delay)

        return {"success": False, "error": e.message, "request_id": request_id}


async def _async_dispatch_due_queue_items(
    request_id: str, session_factory=AsyncSessionLocal
):
    logger = get_logger().bind(request_id=request_id)

    try:
        totals = await dispatch_due_queue_items(session_factory, request_id=request_id)
    except DatabaseError as e:
        logger.error("Due queue dispatcher task exception", error=e.message)
        raise

    return {"success": True, **totals, "request_id": request_id}
