from typing import Callable, Dict, Optional

from .senders import (
    ChannelSender,
    EmailSender,
    InAppSender,
    PushSender,
    TelegramSender,
)
from stable_automation.utils.logging import get_logger


class ChannelSenderRegistry:
    """Registry for channel sender creation"""

    # Map channel names to factory functions
    _factories: Dict[str, Callable[[], ChannelSender]] = {
        "email": EmailSender,
        "push": PushSender,
        "telegram": TelegramSender,
        "inApp": InAppSender,
    }

    @classmethod
    def create_sender(cls, channel: str) -> Optional[ChannelSender]:
        """Create sender instance for a channel"""
        factory = cls._factories.get(channel)
        if factory:
            return factory()

        get_logger().warning(f"No sender registered for channel: {channel}")
        return None

    @classmethod
    def register_sender(cls, channel: str, factory: Callable[[], ChannelSender]):
        """Register a custom factory function for a channel"""
        cls._factories[channel] = factory
        get_logger().info(f"Registered sender factory for channel: {channel}")

    @classmethod
    def list_registered_channels(cls) -> list:
        """List all registered channels"""
        return list(cls._factories.keys())

    @classmethod
    def is_registered(cls, channel: str) -> bool:
        """Check if channel is registered"""
        return channel in cls._factories
