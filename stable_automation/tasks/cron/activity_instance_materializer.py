import asyncio

from stable_automation.celery import celery
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.services.recurrence.materializer import (
    materialize_recurring_activities,
)
from stable_automation.utils.context import request_scope
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def materialize_activity_instances_task(self, request_id: str):
    """
    Daily task to materialize recurring activities into activity instances.

    Runs at 02:00 every day to:
    1. Find all active recurring activities
    2. Expand each recurrence rule over the activity's generation window
    3. Drop dates that already have an instance or a skip exception
    4. Resolve the assignee (fixed, rotation or left open for fair distribution)
    5. Write the new instances in batches and advance the rotation cursor

    A failing activity is logged and counted without stopping the others. Only
    a failure to list the activities retries the task, with exponential backoff.

    Args:
        request_id: Request ID for tracking purposes
    """
    try:
        with request_scope(request_id):
            return asyncio.run(_async_materialize_activity_instances(request_id))
    except DatabaseError as e:
        # Retry with exponential backoff for transient errors
        if self.request.retries < self.max_retries:
            retry_delay = min(2**self.request.retries * 60, 600)  # Cap at 10 minutes
            raise self.retry(exc=e, countdown=retry_delay)

        return {"success": False, "error": e.message, "request_id": request_id}


async def _async_materialize_activity_instances(
    request_id: str, session_factory=AsyncSessionLocal
):
    logger = get_logger().bind(request_id=request_id)

    logger.info("Starting activity instance generation")

    try:
        totals = await materialize_recurring_activities(
            session_factory, request_id=request_id
        )
    except DatabaseError as e:
        logger.error("Activity instance generation failed", error=e.message)
        raise

    return {
        "success": True,
        "processed_count": totals["processed"],
        "generated_count": totals["generated"],
        "skipped_count": totals["skipped"],
        "error_count": totals["errors"],
        "request_id": request_id,
    }
