from typing import Any, Dict, Optional

from .base import ChannelSender


class InAppSender(ChannelSender):
    """The stored notification itself is the in-app delivery."""

    channel = "inApp"

    async def _deliver(self, target: Optional[str], payload: Dict[str, Any]) -> None:
        return None
