import asyncio

from stable_automation.celery import celery
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.notifications.sweeps import retry_failed_deliveries
from stable_automation.utils.context import request_scope
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def retry_failed_deliveries_task(self, request_id: str):
    """
    Hourly task to reset retryable failed deliveries to pending and drop the
    ones that are exhausted or past the retention window. Items stuck in
    processing after a killed worker are failed first.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    try:
        with request_scope(request_id):
            return asyncio.run(_async_retry_failed_deliveries(request_id))
    except DatabaseError as e:
        if self.request.retries < self.max_retries:
            retry_delay = min(2**self.request.retries * 60, 600)
            raise self.retry(exc=e, countdown=retry_delay)

        return {"success": False, "error": e.message, "request_id": request_id}


async def _async_retry_failed_deliveries(
    request_id: str, session_factory=AsyncSessionLocal
):
    logger = get_logger().bind(request_id=request_id)

    try:
        counts = await retry_failed_deliveries(session_factory, request_id=request_id)
    except DatabaseError as e:
        logger.error("Failed delivery retry task exception", error=e.message)
        raise

    return {
        "success": True,
        "found_count": counts["found"],
        "interrupted_count": counts["interrupted"],
        "reset_count": counts["reset"],
        "deleted_count": counts["deleted"],
        "request_id": request_id,
    }
