from .base import ChannelSender, SendResult
from .email import EmailSender
from .in_app import InAppSender
from .push import PushSender
from .telegram import TelegramSender

__all__ = [
    "ChannelSender",
    "SendResult",
    "EmailSender",
    "InAppSender",
    "PushSender",
    "TelegramSender",
]
