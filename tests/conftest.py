import pytest
import uuid
from datetime import date, datetime, timezone
from typing import AsyncGenerator, Any, Dict, Optional

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from stable_automation.celery import celery
from stable_automation.db.models import (
    Base,
    AssignmentMode,
    Horse,
    HorseStatus,
    Notification,
    NotificationChannel,
    NotificationPreferences,
    NotificationQueueItem,
    Priority,
    QueueItemStatus,
    RecurringActivity,
    RecurringActivityStatus,
    User,
)
from stable_automation.services.notifications.registry import ChannelSenderRegistry
from stable_automation.services.notifications.senders import ChannelSender
from stable_automation.utils.errors import ChannelTransportError, InvalidTargetError

# Tests never talk to Redis
celery.conf.update(broker_url="memory://", result_backend="cache+memory://")


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# 2024-01-01 09:00 in Europe/Stockholm
TEST_NOW = datetime(2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory handed to the services under test."""
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def now() -> datetime:
    return TEST_NOW


# Test data factories
@pytest.fixture
def create_recurring_activity(db_session: AsyncSession):
    """Factory for recurring activities: daily at 07:00 for user U1 by default."""

    async def _create(**overrides: Any) -> RecurringActivity:
        values: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "stable_id": "stable-1",
            "organization_id": "org-1",
            "title": "Morning feeding",
            "category": "feeding",
            "recurrence_rule": "FREQ=DAILY",
            "time_of_day": "07:00",
            "duration": 30,
            "start_date": date(2024, 1, 1),
            "generate_days_ahead": 10,
            "assignment_mode": AssignmentMode.FIXED,
            "assigned_to": ["U1"],
            "weight": 1.0,
            "is_holiday_multiplied": False,
            "status": RecurringActivityStatus.ACTIVE,
        }
        values.update(overrides)
        activity = RecurringActivity(**values)
        db_session.add(activity)
        await db_session.commit()
        return activity

    return _create


@pytest.fixture
def create_horse(db_session: AsyncSession):
    async def _create(name: str, **overrides: Any) -> Horse:
        values: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "name": name,
            "current_stable_id": "stable-1",
            "status": HorseStatus.ACTIVE,
        }
        values.update(overrides)
        horse = Horse(**values)
        db_session.add(horse)
        await db_session.commit()
        return horse

    return _create


@pytest.fixture
def create_user(db_session: AsyncSession):
    """Factory for a user with notification preferences."""

    async def _create(
        user_id: Optional[str] = None,
        email: Optional[str] = "rider@example.com",
        **preferences: Any,
    ) -> User:
        user = User(id=user_id or str(uuid.uuid4()), email=email, display_name="Rider")
        db_session.add(user)
        await db_session.flush()

        pref_values: Dict[str, Any] = {
            "user_id": user.id,
            "email_enabled": True,
            "push_enabled": True,
            "fcm_tokens": [],
            "telegram_enabled": False,
            "telegram_verified": False,
        }
        pref_values.update(preferences)
        db_session.add(NotificationPreferences(**pref_values))
        await db_session.commit()
        return user

    return _create


@pytest.fixture
def create_queue_item(db_session: AsyncSession):
    """Factory for a notification plus one queue item on ``channel``."""

    async def _create(
        channel: NotificationChannel = NotificationChannel.PUSH,
        user_id: str = "U1",
        **overrides: Any,
    ) -> NotificationQueueItem:
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type="activity_reminder",
            priority=Priority.NORMAL,
            title="Feeding in 30 minutes",
            body="Morning feeding starts at 07:00",
            channels=[channel.value],
            delivery_status={channel.value: "pending"},
            delivery_attempts=0,
            read=False,
        )
        db_session.add(notification)
        await db_session.flush()

        values: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "notification_id": notification.id,
            "user_id": user_id,
            "channel": channel,
            "priority": Priority.NORMAL,
            "payload": {
                "title": notification.title,
                "body": notification.body,
                "data": {"type": "activity_reminder"},
            },
            "status": QueueItemStatus.PENDING,
            "attempts": 0,
            "max_attempts": 3,
            "scheduled_for": TEST_NOW.replace(tzinfo=None),
        }
        values.update(overrides)
        item = NotificationQueueItem(**values)
        db_session.add(item)
        await db_session.commit()
        return item

    return _create


class RecordingSender(ChannelSender):
    """Sender double that records calls and replays a scripted outcome."""

    def __init__(self, channel: str = "push", outcome: str = "success"):
        self.channel = channel
        self.outcome = outcome
        self.calls = []

    async def _deliver(self, target, payload):
        self.calls.append((target, payload))
        if self.outcome == "invalid":
            raise InvalidTargetError("Requested entity was not found")
        if self.outcome == "error":
            raise ChannelTransportError("Gateway unavailable")


@pytest.fixture
def recording_sender():
    return RecordingSender


@pytest.fixture
def registered_sender(monkeypatch):
    """Register a RecordingSender as a channel's factory for one test."""
    monkeypatch.setattr(
        ChannelSenderRegistry, "_factories", dict(ChannelSenderRegistry._factories)
    )

    def _register(channel: str, outcome: str = "success") -> RecordingSender:
        sender = RecordingSender(channel, outcome)
        ChannelSenderRegistry.register_sender(channel, lambda: sender)
        return sender

    return _register
