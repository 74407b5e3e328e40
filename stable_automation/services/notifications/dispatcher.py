import asyncio
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.config.settings import settings
from stable_automation.db.models import (
    NotificationPreferences,
    NotificationQueueItem,
    User,
)
from stable_automation.utils.logging import get_logger

from .registry import ChannelSenderRegistry
from .senders import ChannelSender, SendResult


class ChannelDispatcher:
    """
    Routes a queue item to its channel sender.

    The delivery target comes from the item when it was denormalized at
    enqueue time, otherwise from the user's stored preferences. A target the
    transport reports as invalid is removed from those preferences.
    """

    def __init__(
        self,
        senders: Optional[Dict[str, ChannelSender]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._senders: Dict[str, ChannelSender] = dict(senders or {})
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.CHANNEL_SEND_TIMEOUT_SECONDS
        )

    def _get_sender(self, channel: str) -> Optional[ChannelSender]:
        sender = self._senders.get(channel)
        if sender is None:
            sender = ChannelSenderRegistry.create_sender(channel)
            if sender is not None:
                self._senders[channel] = sender
        return sender

    async def dispatch(
        self, db_session: AsyncSession, item: NotificationQueueItem
    ) -> SendResult:
        channel = item.channel.value
        logger = get_logger().bind(queue_item_id=item.id, channel=channel)

        sender = self._get_sender(channel)
        if sender is None:
            return SendResult(
                success=False, error=f"No sender registered for channel: {channel}"
            )

        target = await self.resolve_target(db_session, item)

        try:
            result = await asyncio.wait_for(
                sender.send(target, dict(item.payload or {})),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Channel send timed out", timeout_seconds=self.timeout_seconds
            )
            return SendResult(
                success=False,
                error=f"Delivery timed out after {self.timeout_seconds}s",
            )

        if result.invalid_target and target:
            await self.prune_invalid_target(db_session, item.user_id, channel, target)

        return result

    async def resolve_target(
        self, db_session: AsyncSession, item: NotificationQueueItem
    ) -> Optional[str]:
        channel = item.channel.value

        if channel == "push" and item.fcm_token:
            return item.fcm_token
        if channel == "telegram" and item.telegram_chat_id:
            return item.telegram_chat_id
        if channel == "inApp":
            return None

        preferences = await db_session.get(NotificationPreferences, item.user_id)

        if channel == "email":
            if preferences and preferences.email_address:
                return preferences.email_address
            user = await db_session.get(User, item.user_id)
            return user.email if user else None

        if preferences is None:
            return None

        if channel == "push":
            tokens = preferences.fcm_tokens or []
            return tokens[0].get("token") if tokens else None

        if channel == "telegram" and preferences.telegram_verified:
            return preferences.telegram_chat_id

        return None

    async def prune_invalid_target(
        self, db_session: AsyncSession, user_id: str, channel: str, target: str
    ) -> bool:
        """
        Remove exactly ``target`` from the user's preferences.

        Returns:
            bool: True when the preferences were changed
        """
        logger = get_logger().bind(channel=channel)

        preferences = await db_session.get(NotificationPreferences, user_id)
        if preferences is None:
            return False

        changed = False
        if channel == "push":
            tokens = preferences.fcm_tokens or []
            remaining = [entry for entry in tokens if entry.get("token") != target]
            if len(remaining) != len(tokens):
                # Reassign so the JSON column is flagged dirty
                preferences.fcm_tokens = remaining
                changed = True
        elif channel == "telegram":
            if preferences.telegram_chat_id == target:
                preferences.telegram_chat_id = None
                preferences.telegram_verified = False
                changed = True

        if changed:
            await db_session.commit()
            logger.info("Removed invalid delivery target", user_id=user_id)

        return changed
