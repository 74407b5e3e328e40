"""SendGrid email delivery channel."""

import asyncio
import html
from typing import Any, Dict, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from stable_automation.config.settings import settings
from stable_automation.utils.errors import ChannelTransportError

from .base import ChannelSender

_client: Optional[SendGridAPIClient] = None


def _get_sendgrid_client() -> Optional[SendGridAPIClient]:
    """Get or create SendGrid client singleton."""
    global _client
    if _client is None and settings.SENDGRID_API_KEY:
        _client = SendGridAPIClient(settings.SENDGRID_API_KEY)
    return _client


def render_html(body: str, action_url: Optional[str] = None) -> str:
    """
    Escape the plain text body into a minimal HTML document.

    Only http(s) action URLs are rendered as a button.
    """
    html_body = html.escape(body).replace("\n", "<br>\n")
    if action_url and action_url.lower().startswith(("http://", "https://")):
        html_body += (
            f'<p><a href="{html.escape(action_url, quote=True)}" '
            'style="display:inline-block;padding:10px 16px;background:#2563eb;'
            'color:#fff;border-radius:6px;text-decoration:none;">Open</a></p>'
        )

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.5; color: #333;">
{html_body}
</body>
</html>"""


class EmailSender(ChannelSender):
    channel = "email"

    def __init__(self, client: Optional[SendGridAPIClient] = None):
        self._client = client

    async def _deliver(self, target: Optional[str], payload: Dict[str, Any]) -> None:
        if not target:
            raise ChannelTransportError("User email not found")

        client = self._client or _get_sendgrid_client()
        if client is None:
            raise ChannelTransportError(
                "SendGrid not configured (SENDGRID_API_KEY not set)",
                error_code="EMAIL_NOT_CONFIGURED",
            )

        body = payload.get("body", "")
        action_url = (payload.get("data") or {}).get("action_url")
        message = Mail(
            from_email=(settings.SENDGRID_FROM_EMAIL, settings.SENDGRID_FROM_NAME),
            to_emails=target,
            subject=payload.get("title", "Notification"),
            plain_text_content=body,
            html_content=render_html(body, action_url),
        )

        try:
            # The SendGrid client is synchronous
            response = await asyncio.to_thread(client.send, message)
        except Exception as e:
            raise ChannelTransportError(f"SendGrid request failed: {str(e)}")

        if response.status_code not in (200, 201, 202):
            raise ChannelTransportError(
                f"SendGrid returned status {response.status_code}"
            )
