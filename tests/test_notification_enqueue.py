import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.db.models import (
    NotificationChannel,
    NotificationQueueItem,
    Priority,
    QueueItemStatus,
)
from stable_automation.schemas.notification_schemas import NotificationRequest
from stable_automation.services.notifications.enqueue import enqueue_notification

DELAY_PATH = "stable_automation.tasks.process_notification_queue_item_task.delay"


def _request(**overrides):
    values = {
        "userId": "U1",
        "type": "activity_reminder",
        "priority": "high",
        "title": "Feeding in 30 minutes",
        "body": "Morning feeding starts at 07:00",
        "channels": ["email", "push", "telegram", "inApp"],
        "entityType": "activityInstance",
        "entityId": "inst-1",
        "actionUrl": "https://app.example.com/activities/inst-1",
    }
    values.update(overrides)
    return values


@pytest.mark.unit
class TestNotificationRequest:
    """Test request validation and payload building."""

    def test_channels_are_deduplicated(self):
        request = NotificationRequest.model_validate(
            _request(channels=["push", "push", "email"])
        )

        assert request.channels == [NotificationChannel.PUSH, NotificationChannel.EMAIL]

    def test_at_least_one_channel_required(self):
        with pytest.raises(ValidationError):
            NotificationRequest.model_validate(_request(channels=[]))

    def test_payload_carries_routing_data(self):
        payload = NotificationRequest.model_validate(
            _request(data={"horse": "Blixten"})
        ).to_payload()

        assert payload.data == {
            "horse": "Blixten",
            "action_url": "https://app.example.com/activities/inst-1",
            "entity_type": "activityInstance",
            "entity_id": "inst-1",
            "type": "activity_reminder",
        }


@pytest.mark.integration
class TestEnqueueNotification:
    """Test fan-out of a notification into per-channel queue items."""

    @pytest.mark.asyncio
    async def test_one_pending_item_per_channel(
        self, db_session: AsyncSession, create_user
    ):
        await create_user(
            user_id="U1",
            fcm_tokens=[{"token": "first"}, {"token": "second"}],
            telegram_enabled=True,
            telegram_chat_id="42",
            telegram_verified=True,
        )

        with patch(DELAY_PATH) as delay:
            notification, items = await enqueue_notification(
                db_session, _request(), request_id="test-request"
            )

        assert notification.priority == Priority.HIGH
        assert notification.channels == ["email", "push", "telegram", "inApp"]
        assert notification.delivery_status == {
            "email": "pending",
            "push": "pending",
            "telegram": "pending",
            "inApp": "pending",
        }
        assert notification.delivery_attempts == 0
        assert notification.read is False

        assert [item.channel for item in items] == [
            NotificationChannel.EMAIL,
            NotificationChannel.PUSH,
            NotificationChannel.TELEGRAM,
            NotificationChannel.IN_APP,
        ]
        for item in items:
            assert item.status == QueueItemStatus.PENDING
            assert item.attempts == 0
            assert item.max_attempts == 3
            assert item.notification_id == notification.id
            assert item.payload["title"] == "Feeding in 30 minutes"

        by_channel = {item.channel: item for item in items}
        assert by_channel[NotificationChannel.PUSH].fcm_token == "first"
        assert by_channel[NotificationChannel.TELEGRAM].telegram_chat_id == "42"
        assert by_channel[NotificationChannel.EMAIL].fcm_token is None

        assert delay.call_count == 4
        delay.assert_any_call("test-request", by_channel[NotificationChannel.PUSH].id)

        stored = await db_session.execute(select(NotificationQueueItem))
        assert len(stored.scalars().all()) == 4

    @pytest.mark.asyncio
    async def test_unverified_chat_and_disabled_push_not_denormalized(
        self, db_session: AsyncSession, create_user
    ):
        await create_user(
            user_id="U1",
            push_enabled=False,
            fcm_tokens=[{"token": "first"}],
            telegram_chat_id="42",
            telegram_verified=False,
        )

        _, items = await enqueue_notification(
            db_session, _request(channels=["push", "telegram"]), trigger=False
        )

        assert items[0].fcm_token is None
        assert items[1].telegram_chat_id is None

    @pytest.mark.asyncio
    async def test_scheduled_for_and_max_attempts_respected(
        self, db_session: AsyncSession
    ):
        _, items = await enqueue_notification(
            db_session,
            _request(
                channels=["inApp"],
                scheduledFor=datetime(2024, 1, 2, 6, 0, tzinfo=timezone.utc),
                maxAttempts=5,
            ),
            trigger=False,
        )

        assert items[0].scheduled_for == datetime(2024, 1, 2, 6, 0)
        assert items[0].max_attempts == 5

    @pytest.mark.asyncio
    async def test_trigger_failure_keeps_items_queued(self, db_session: AsyncSession):
        with patch(DELAY_PATH, side_effect=ConnectionError("broker down")):
            _, items = await enqueue_notification(
                db_session, _request(channels=["inApp"])
            )

        await db_session.refresh(items[0])
        assert items[0].status == QueueItemStatus.PENDING
