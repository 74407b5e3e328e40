from typing import Any, Dict, List, Optional
from datetime import datetime, date
import uuid
from sqlalchemy import (
    JSON,
    String,
    Boolean,
    Integer,
    Float,
    Text,
    ForeignKey,
    Enum,
    Index,
    func,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
    Date,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from stable_automation.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


# Enums
class RecurringActivityStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class AssignmentMode(enum.Enum):
    FIXED = "fixed"
    ROTATION = "rotation"
    FAIR_DISTRIBUTION = "fair-distribution"


class ExceptionType(enum.Enum):
    SKIP = "skip"
    MODIFY = "modify"


class ActivityInstanceStatus(enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class HorseStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class NotificationChannel(enum.Enum):
    EMAIL = "email"
    PUSH = "push"
    TELEGRAM = "telegram"
    IN_APP = "inApp"


class Priority(enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class QueueItemStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class DeliveryStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=naive_utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=naive_utc_now,
        server_default=func.now(),
        onupdate=naive_utc_now,
    )


# Models
class RecurringActivity(Base, AuditMixin):
    """Recurring activity pattern materialized into activity instances"""

    __tablename__ = "recurring_activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    stable_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[Optional[str]] = mapped_column(String(36))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(50), default="other", nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20))
    icon: Mapped[Optional[str]] = mapped_column(String(20))

    recurrence_rule: Mapped[str] = mapped_column(String(500), nullable=False)
    time_of_day: Mapped[str] = mapped_column(String(5), default="07:00", nullable=False)
    duration: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    generate_days_ahead: Mapped[Optional[int]] = mapped_column(Integer, default=60)

    assignment_mode: Mapped[AssignmentMode] = mapped_column(
        Enum(AssignmentMode), default=AssignmentMode.FIXED, nullable=False
    )
    # JSON lists of user ids
    assigned_to: Mapped[Optional[List[str]]] = mapped_column(JSON)
    rotation_group: Mapped[Optional[List[str]]] = mapped_column(JSON)
    current_rotation_index: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    horse_id: Mapped[Optional[str]] = mapped_column(String(36))
    applies_to_all_horses: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    horse_group_id: Mapped[Optional[str]] = mapped_column(String(36))

    weight: Mapped[float] = mapped_column(Float, default=1, nullable=False)
    is_holiday_multiplied: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    status: Mapped[RecurringActivityStatus] = mapped_column(
        Enum(RecurringActivityStatus),
        default=RecurringActivityStatus.ACTIVE,
        nullable=False,
    )
    last_generated_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    instance_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    exceptions: Mapped[List["RecurringActivityException"]] = relationship(
        back_populates="recurring_activity", cascade="all, delete-orphan"
    )
    instances: Mapped[List["ActivityInstance"]] = relationship(
        back_populates="recurring_activity"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("duration >= 0", name="ck_recur_duration_non_negative"),
        CheckConstraint(
            "current_rotation_index >= 0", name="ck_recur_rotation_index_non_negative"
        ),
        Index("idx_recur_status", "status"),
        Index("idx_recur_stable_id", "stable_id"),
    )


class RecurringActivityException(Base, AuditMixin):
    """Per-date override of a recurring activity"""

    __tablename__ = "recurring_activity_exceptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    recurring_activity_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("recurring_activities.id", ondelete="CASCADE"),
        nullable=False,
    )
    exception_date: Mapped[date] = mapped_column(Date, nullable=False)
    exception_type: Mapped[ExceptionType] = mapped_column(
        Enum(ExceptionType), nullable=False
    )
    modified_title: Mapped[Optional[str]] = mapped_column(String(200))
    modified_time: Mapped[Optional[str]] = mapped_column(String(5))
    modified_assigned_to: Mapped[Optional[str]] = mapped_column(String(36))
    reason: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    recurring_activity: Mapped["RecurringActivity"] = relationship(
        back_populates="exceptions"
    )

    # Constraints
    __table_args__ = (
        UniqueConstraint(
            "recurring_activity_id",
            "exception_date",
            name="uq_recur_exc_activity_date",
        ),
        Index("idx_recur_exc_activity_date", "recurring_activity_id", "exception_date"),
    )


class ActivityInstance(Base, AuditMixin):
    """Concrete dated occurrence of a recurring activity"""

    __tablename__ = "activity_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    recurring_activity_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("recurring_activities.id", ondelete="NO ACTION"),
        nullable=False,
    )
    stable_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[Optional[str]] = mapped_column(String(36))
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20))
    icon: Mapped[Optional[str]] = mapped_column(String(20))

    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(5), nullable=False)
    scheduled_end_time: Mapped[Optional[str]] = mapped_column(String(5))
    duration: Mapped[int] = mapped_column(Integer, nullable=False)

    assigned_to: Mapped[Optional[str]] = mapped_column(String(36))
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    assigned_by: Mapped[Optional[str]] = mapped_column(String(36))

    horse_id: Mapped[Optional[str]] = mapped_column(String(36))
    applies_to_all_horses: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    horse_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    checklist: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    progress: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    status: Mapped[ActivityInstanceStatus] = mapped_column(
        Enum(ActivityInstanceStatus),
        default=ActivityInstanceStatus.SCHEDULED,
        nullable=False,
    )
    is_exception: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    exception_note: Mapped[Optional[str]] = mapped_column(Text)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    is_holiday_shift: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_by: Mapped[str] = mapped_column(String(36), default="system", nullable=False)

    # Relationships
    recurring_activity: Mapped["RecurringActivity"] = relationship(
        back_populates="instances"
    )

    # Constraints
    __table_args__ = (
        # Backstop for the materializer's existence check
        UniqueConstraint(
            "recurring_activity_id",
            "scheduled_date",
            name="uq_activity_inst_recur_date",
        ),
        Index("idx_activity_inst_recur_date", "recurring_activity_id", "scheduled_date"),
        Index("idx_activity_inst_stable_date", "stable_id", "scheduled_date"),
        Index("idx_activity_inst_assigned_to", "assigned_to"),
    )


class Horse(Base, AuditMixin):
    __tablename__ = "horses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    current_stable_id: Mapped[Optional[str]] = mapped_column(String(36))
    horse_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[HorseStatus] = mapped_column(
        Enum(HorseStatus), default=HorseStatus.ACTIVE, nullable=False
    )

    # Constraints
    __table_args__ = (
        Index("idx_horse_stable_status", "current_stable_id", "status"),
        Index("idx_horse_group_status", "horse_group_id", "status"),
    )


class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(200))

    # Relationships
    notification_preferences: Mapped[Optional["NotificationPreferences"]] = (
        relationship(back_populates="user", cascade="all, delete-orphan")
    )


class NotificationPreferences(Base, AuditMixin):
    """Per-user delivery targets and channel switches"""

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Overrides users.email when set
    email_address: Mapped[Optional[str]] = mapped_column(String(255))
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # [{"token": ..., "device_id": ..., "platform": ...}]
    fcm_tokens: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    telegram_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64))
    telegram_verified: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="notification_preferences")


class Notification(Base, AuditMixin):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_email: Mapped[Optional[str]] = mapped_column(String(255))
    organization_id: Mapped[Optional[str]] = mapped_column(String(36))
    stable_id: Mapped[Optional[str]] = mapped_column(String(36))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority), default=Priority.NORMAL, nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[str]] = mapped_column(String(36))

    # Delivery tracking
    channels: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    # {"email": "sent", "push": "failed", ...}
    delivery_status: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_delivery_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    action_url: Mapped[Optional[str]] = mapped_column(String(1000))

    # Relationships
    queue_items: Mapped[List["NotificationQueueItem"]] = relationship(
        back_populates="notification"
    )

    # Constraints
    __table_args__ = (
        Index("idx_notif_user_read", "user_id", "read"),
        Index("idx_notif_read_created", "read", "created_at"),
        Index("idx_notif_entity", "entity_type", "entity_id"),
    )


class NotificationQueueItem(Base, AuditMixin):
    """One channel delivery of a notification"""

    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    notification_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("notifications.id", ondelete="NO ACTION"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    channel: Mapped[NotificationChannel] = mapped_column(
        Enum(NotificationChannel), nullable=False
    )
    priority: Mapped[Priority] = mapped_column(
        Enum(Priority), default=Priority.NORMAL, nullable=False
    )
    # {"title": ..., "body": ..., "data": {...}, "image_url": ...}
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Denormalized delivery targets
    fcm_token: Mapped[Optional[str]] = mapped_column(String(500))
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64))

    status: Mapped[QueueItemStatus] = mapped_column(
        Enum(QueueItemStatus), default=QueueItemStatus.PENDING, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    # Relationships
    notification: Mapped["Notification"] = relationship(back_populates="queue_items")

    # Constraints
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_notif_queue_attempts_non_negative"),
        CheckConstraint("max_attempts >= 1", name="ck_notif_queue_max_attempts_pos"),
        Index("idx_notif_queue_status_scheduled", "status", "scheduled_for"),
        Index("idx_notif_queue_status_created", "status", "created_at"),
        Index("idx_notif_queue_notification_id", "notification_id"),
    )


class ArchivedNotification(Base):
    """Read notifications moved out of the primary store"""

    __tablename__ = "archived_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organization_id: Mapped[Optional[str]] = mapped_column(String(36))
    stable_id: Mapped[Optional[str]] = mapped_column(String(36))
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[Priority] = mapped_column(Enum(Priority), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[str]] = mapped_column(String(36))
    channels: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    delivery_status: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    action_url: Mapped[Optional[str]] = mapped_column(String(1000))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    archived_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    # Constraints
    __table_args__ = (
        Index("idx_archived_notif_user", "user_id"),
        Index("idx_archived_notif_archived_at", "archived_at"),
    )
