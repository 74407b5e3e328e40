from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, exists, or_, select
from sqlalchemy.exc import SQLAlchemyError

from stable_automation.config.settings import settings
from stable_automation.db.models import (
    ArchivedNotification,
    DeliveryStatus,
    Notification,
    NotificationQueueItem,
    QueueItemStatus,
)
from stable_automation.db.session import AsyncSessionLocal
from stable_automation.utils.datetime_utils import to_naive_utc, utc_now
from stable_automation.utils.errors import DatabaseError
from stable_automation.utils.logging import get_logger

from .queue_processor import INTERRUPTED_DELIVERY_ERROR, record_delivery_status


async def retry_failed_deliveries(
    session_factory=AsyncSessionLocal,
    request_id: str = "app",
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    trigger: bool = True,
) -> Dict[str, int]:
    """
    Reconcile failed queue items.

    Items that used up their attempts or are older than the retention window
    are deleted; their failure is already recorded on the parent notification.
    Every other failed item is reset to pending, due now, and re-triggered.

    Items left in ``processing`` longer than
    ``PROCESSING_STALE_AFTER_SECONDS`` belonged to a worker that was killed
    mid-send. They are marked failed, keeping the attempt their claim counted,
    and then go through the same rules.
    """
    logger = get_logger().bind(request_id=request_id)
    now = to_naive_utc(now or utc_now())
    batch_size = batch_size or settings.SWEEP_BATCH_SIZE
    retention_cutoff = now - timedelta(hours=settings.FAILED_ITEM_RETENTION_HOURS)
    stale_cutoff = now - timedelta(seconds=settings.PROCESSING_STALE_AFTER_SECONDS)

    reset_ids: List[str] = []
    delete_ids: List[str] = []
    interrupted = 0

    async with session_factory() as db_session:
        try:
            result = await db_session.execute(
                select(NotificationQueueItem)
                .where(
                    or_(
                        NotificationQueueItem.status == QueueItemStatus.FAILED,
                        and_(
                            NotificationQueueItem.status == QueueItemStatus.PROCESSING,
                            NotificationQueueItem.updated_at < stale_cutoff,
                        ),
                    )
                )
                .order_by(NotificationQueueItem.created_at)
                .limit(batch_size)
            )
            failed_items = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list failed queue items: {str(e)}")

        for item in failed_items:
            if item.status == QueueItemStatus.PROCESSING:
                item.status = QueueItemStatus.FAILED
                item.last_error = INTERRUPTED_DELIVERY_ERROR
                item.processed_at = now
                await record_delivery_status(
                    db_session, item, DeliveryStatus.FAILED, now
                )
                interrupted += 1

            if item.attempts >= item.max_attempts or item.created_at < retention_cutoff:
                delete_ids.append(item.id)
            else:
                item.status = QueueItemStatus.PENDING
                item.scheduled_for = now
                reset_ids.append(item.id)

        if delete_ids:
            await db_session.execute(
                delete(NotificationQueueItem).where(
                    NotificationQueueItem.id.in_(delete_ids)
                )
            )
        await db_session.commit()

    if trigger and reset_ids:
        # Import here to avoid circular imports
        from stable_automation.tasks import process_notification_queue_item_task

        for queue_item_id in reset_ids:
            try:
                process_notification_queue_item_task.delay(  # type: ignore
                    request_id, queue_item_id
                )
            except Exception as e:
                logger.error(
                    "Failed to trigger queue item retry",
                    queue_item_id=queue_item_id,
                    error=str(e),
                )

    logger.info(
        "Failed delivery retry sweep completed",
        found=len(failed_items),
        interrupted=interrupted,
        reset=len(reset_ids),
        deleted=len(delete_ids),
    )

    return {
        "found": len(failed_items),
        "interrupted": interrupted,
        "reset": len(reset_ids),
        "deleted": len(delete_ids),
    }


async def cleanup_old_notifications(
    session_factory=AsyncSessionLocal,
    request_id: str = "app",
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """
    Delete old terminal queue items and archive old read notifications.

    Both passes work in batches of ``batch_size``, one commit per batch.
    """
    logger = get_logger().bind(request_id=request_id)
    now = to_naive_utc(now or utc_now())
    batch_size = batch_size or settings.SWEEP_BATCH_SIZE
    queue_cutoff = now - timedelta(days=settings.QUEUE_ITEM_RETENTION_DAYS)
    archive_cutoff = now - timedelta(days=settings.READ_NOTIFICATION_ARCHIVE_DAYS)

    deleted_queue_items = 0
    archived_notifications = 0

    async with session_factory() as db_session:
        try:
            while True:
                result = await db_session.execute(
                    select(NotificationQueueItem.id)
                    .where(
                        and_(
                            NotificationQueueItem.status.in_(
                                [QueueItemStatus.SENT, QueueItemStatus.FAILED]
                            ),
                            NotificationQueueItem.created_at < queue_cutoff,
                        )
                    )
                    .limit(batch_size)
                )
                item_ids = list(result.scalars().all())
                if not item_ids:
                    break

                await db_session.execute(
                    delete(NotificationQueueItem).where(
                        NotificationQueueItem.id.in_(item_ids)
                    )
                )
                await db_session.commit()
                deleted_queue_items += len(item_ids)

                if len(item_ids) < batch_size:
                    break

            # Notifications still referenced by queue items stay in place
            has_queue_items = exists().where(
                NotificationQueueItem.notification_id == Notification.id
            )
            while True:
                result = await db_session.execute(
                    select(Notification)
                    .where(
                        and_(
                            Notification.read == True,
                            Notification.created_at < archive_cutoff,
                            ~has_queue_items,
                        )
                    )
                    .limit(batch_size)
                )
                notifications = list(result.scalars().all())
                if not notifications:
                    break

                db_session.add_all(
                    [_to_archived(notification, now) for notification in notifications]
                )
                await db_session.execute(
                    delete(Notification).where(
                        Notification.id.in_([n.id for n in notifications])
                    )
                )
                await db_session.commit()
                archived_notifications += len(notifications)

                if len(notifications) < batch_size:
                    break

        except SQLAlchemyError as e:
            await db_session.rollback()
            raise DatabaseError(f"Notification cleanup failed: {str(e)}")

    logger.info(
        "Notification cleanup completed",
        deleted_queue_items=deleted_queue_items,
        archived_notifications=archived_notifications,
    )

    return {
        "deleted_queue_items": deleted_queue_items,
        "archived_notifications": archived_notifications,
    }


def _to_archived(notification: Notification, now: datetime) -> ArchivedNotification:
    return ArchivedNotification(
        id=notification.id,
        user_id=notification.user_id,
        organization_id=notification.organization_id,
        stable_id=notification.stable_id,
        type=notification.type,
        priority=notification.priority,
        title=notification.title,
        body=notification.body,
        entity_type=notification.entity_type,
        entity_id=notification.entity_id,
        channels=list(notification.channels or []),
        delivery_status=dict(notification.delivery_status or {}),
        delivered_at=notification.delivered_at,
        read_at=notification.read_at,
        action_url=notification.action_url,
        created_at=notification.created_at,
        archived_at=now,
    )
