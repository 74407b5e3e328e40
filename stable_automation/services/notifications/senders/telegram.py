from typing import Any, Dict, Optional

import httpx

from stable_automation.config.settings import settings
from stable_automation.utils.errors import ChannelTransportError, InvalidTargetError

from .base import ChannelSender


def format_message(payload: Dict[str, Any]) -> str:
    title = payload.get("title") or ""
    body = payload.get("body") or ""
    text = f"{title}\n\n{body}" if title else body

    action_url = (payload.get("data") or {}).get("action_url")
    if action_url:
        text += f"\n\n{action_url}"
    return text


class TelegramSender(ChannelSender):
    """Telegram Bot API chat channel"""

    channel = "telegram"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token or settings.TELEGRAM_BOT_TOKEN
        self.base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self._transport = transport

    async def _deliver(self, target: Optional[str], payload: Dict[str, Any]) -> None:
        if not target:
            raise ChannelTransportError(
                "Telegram chat ID not available or not verified"
            )
        if not self.bot_token:
            raise ChannelTransportError(
                "Telegram not configured (TELEGRAM_BOT_TOKEN not set)",
                error_code="TELEGRAM_NOT_CONFIGURED",
            )

        data = {
            "chat_id": target,
            "text": format_message(payload),
            "disable_web_page_preview": True,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/bot{self.bot_token}/sendMessage",
                    json=data,
                    timeout=settings.CHANNEL_SEND_TIMEOUT_SECONDS,
                )
        except httpx.RequestError as e:
            raise ChannelTransportError(f"Telegram request failed: {str(e)}")

        if response.status_code == 200:
            return

        description = _error_description(response)

        # 403: bot blocked or user deactivated
        if response.status_code == 403 or (
            response.status_code == 400 and "chat not found" in description.lower()
        ):
            raise InvalidTargetError(
                f"Telegram chat unreachable: {response.status_code} - {description}"
            )

        raise ChannelTransportError(
            f"Telegram sendMessage failed: {response.status_code} - {description}"
        )


def _error_description(response: httpx.Response) -> str:
    try:
        return str(response.json().get("description", response.text))
    except ValueError:
        return response.text
