from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.db.models import (
    DeliveryStatus,
    Notification,
    NotificationChannel,
    NotificationPreferences,
    NotificationQueueItem,
    QueueItemStatus,
)
from stable_automation.schemas.notification_schemas import NotificationRequest
from stable_automation.utils.datetime_utils import naive_utc_now, to_naive_utc
from stable_automation.utils.logging import get_logger


async def enqueue_notification(
    db_session: AsyncSession,
    request: Union[NotificationRequest, Dict[str, Any]],
    request_id: str = "app",
    trigger: bool = True,
) -> Tuple[Notification, List[NotificationQueueItem]]:
    """
    Create a notification and one pending queue item per requested channel.

    Push tokens and verified Telegram chat ids are copied onto the items so
    retries do not have to look them up again. After the commit one
    processing task is triggered per item unless ``trigger`` is False.
    """
    logger = get_logger().bind(request_id=request_id)

    if not isinstance(request, NotificationRequest):
        request = NotificationRequest.model_validate(request)

    scheduled_for = (
        to_naive_utc(request.scheduled_for)
        if request.scheduled_for
        else naive_utc_now()
    )
    channels = [channel.value for channel in request.channels]

    notification = Notification(
        user_id=request.user_id,
        user_email=request.user_email,
        organization_id=request.organization_id,
        stable_id=request.stable_id,
        type=request.type,
        priority=request.priority,
        title=request.title,
        body=request.body,
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        action_url=request.action_url,
        channels=channels,
        delivery_status={channel: DeliveryStatus.PENDING.value for channel in channels},
        delivery_attempts=0,
        read=False,
    )
    db_session.add(notification)
    await db_session.flush()

    preferences = await db_session.get(NotificationPreferences, request.user_id)
    payload = request.to_payload().model_dump()

    queue_items: List[NotificationQueueItem] = []
    for channel in request.channels:
        queue_items.append(
            NotificationQueueItem(
                notification_id=notification.id,
                user_id=request.user_id,
                channel=channel,
                priority=request.priority,
                payload=payload,
                fcm_token=_first_fcm_token(preferences)
                if channel == NotificationChannel.PUSH
                else None,
                telegram_chat_id=_verified_chat_id(preferences)
                if channel == NotificationChannel.TELEGRAM
                else None,
                status=QueueItemStatus.PENDING,
                attempts=0,
                max_attempts=request.max_attempts,
                scheduled_for=scheduled_for,
            )
        )

    db_session.add_all(queue_items)
    await db_session.commit()

    logger.info(
        "Queued notification",
        notification_id=notification.id,
        user_id=request.user_id,
        channels=channels,
    )

    if trigger:
        # Import here to avoid circular imports
        from stable_automation.tasks import process_notification_queue_item_task

        for item in queue_items:
            try:
                process_notification_queue_item_task.delay(  # type: ignore
                    request_id, item.id
                )
            except Exception as e:
                # The due-queue dispatcher picks the item up later
                logger.error(
                    "Failed to trigger queue item processing",
                    queue_item_id=item.id,
                    error=str(e),
                )

    return notification, queue_items


def _first_fcm_token(preferences: Optional[NotificationPreferences]) -> Optional[str]:
    if preferences is None or not preferences.push_enabled:
        return None
    tokens = preferences.fcm_tokens or []
    return tokens[0].get("token") if tokens else None


def _verified_chat_id(preferences: Optional[NotificationPreferences]) -> Optional[str]:
    if preferences is None or not preferences.telegram_verified:
        return None
    return preferences.telegram_chat_id
