from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator

from stable_automation.config.settings import settings
from stable_automation.db.models import NotificationChannel, Priority
from stable_automation.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class QueueItemPayload(BaseModel):
    """Message content stored on every queue item of a notification."""

    title: str = Field(..., description="Notification title")
    body: str = Field(..., description="Notification body content")
    data: Dict[str, Any] = Field(
        default_factory=dict, description="Channel-agnostic extra data"
    )
    image_url: Optional[str] = Field(None, description="Image shown by push clients")


class NotificationRequest(BaseModel):
    """A logical notification to fan out, one queue item per channel."""

    user_id: str = Field(..., min_length=1, description="Recipient user ID")
    user_email: Optional[str] = Field(None, description="Recipient email at send time")
    organization_id: Optional[str] = Field(None, description="Organization ID")
    stable_id: Optional[str] = Field(None, description="Stable ID")
    type: str = Field(..., min_length=1, description="Notification type code")
    priority: Priority = Field(Priority.NORMAL, description="Notification priority")
    title: str = Field(..., min_length=1, description="Notification title")
    body: str = Field(..., description="Notification body content")
    channels: List[NotificationChannel] = Field(
        ..., min_length=1, description="Channels to deliver through"
    )
    entity_type: Optional[str] = Field(None, description="Related entity type")
    entity_id: Optional[str] = Field(None, description="Related entity ID")
    action_url: Optional[str] = Field(None, description="Link opened by the user")
    data: Dict[str, Any] = Field(
        default_factory=dict, description="Extra data passed to every channel"
    )
    image_url: Optional[str] = Field(None, description="Image shown by push clients")
    scheduled_for: Optional[datetime] = Field(
        None, description="Earliest delivery time, defaults to now"
    )
    max_attempts: int = Field(
        default_factory=lambda: settings.QUEUE_DEFAULT_MAX_ATTEMPTS,
        ge=1,
        description="Delivery attempts per channel",
    )

    @field_validator("channels")
    def dedupe_channels(cls, v: List[NotificationChannel]) -> List[NotificationChannel]:
        seen: List[NotificationChannel] = []
        for channel in v:
            if channel not in seen:
                seen.append(channel)
        return seen

    def to_payload(self) -> QueueItemPayload:
        data = dict(self.data)
        if self.action_url:
            data.setdefault("action_url", self.action_url)
        if self.entity_type:
            data.setdefault("entity_type", self.entity_type)
        if self.entity_id:
            data.setdefault("entity_id", self.entity_id)
        data.setdefault("type", self.type)
        return QueueItemPayload(
            title=self.title, body=self.body, data=data, image_url=self.image_url
        )
