import asyncio
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from stable_automation.config.settings import settings
from stable_automation.utils.errors import ChannelTransportError, InvalidTargetError
from stable_automation.utils.logging import get_logger

from .base import ChannelSender


def _ensure_firebase_app() -> bool:
    """Initialize the default Firebase app once; False when not configured."""
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        pass

    if not settings.FIREBASE_CREDENTIALS_FILE:
        return False

    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_FILE)
    firebase_admin.initialize_app(cred)
    return True


def build_message(token: str, payload: Dict[str, Any]) -> messaging.Message:
    # FCM data values must be strings
    data = {
        str(key): str(value)
        for key, value in (payload.get("data") or {}).items()
        if value is not None
    }
    return messaging.Message(
        token=token,
        data=data,
        notification=messaging.Notification(
            title=payload.get("title"),
            body=payload.get("body"),
            image=payload.get("image_url"),
        ),
    )


class PushSender(ChannelSender):
    """Firebase Cloud Messaging push channel"""

    channel = "push"

    def __init__(self, send_fn=None):
        self._send_fn = send_fn

    async def _deliver(self, target: Optional[str], payload: Dict[str, Any]) -> None:
        if not target:
            raise ChannelTransportError("No FCM token available")

        send_fn = self._send_fn
        if send_fn is None:
            if not _ensure_firebase_app():
                raise ChannelTransportError(
                    "Firebase not configured (FIREBASE_CREDENTIALS_FILE not set)",
                    error_code="PUSH_NOT_CONFIGURED",
                )
            send_fn = messaging.send

        message = build_message(target, payload)

        try:
            message_id = await asyncio.to_thread(send_fn, message)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            raise InvalidTargetError(f"FCM token not registered: {str(e)}")
        except exceptions.InvalidArgumentError as e:
            if "registration token" in str(e).lower():
                raise InvalidTargetError(f"Invalid FCM registration token: {str(e)}")
            raise ChannelTransportError(f"FCM rejected message: {str(e)}")
        except exceptions.FirebaseError as e:
            raise ChannelTransportError(f"FCM send failed: {str(e)}")

        get_logger().debug("Push notification sent", message_id=message_id)
