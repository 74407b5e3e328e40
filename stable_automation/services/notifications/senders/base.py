from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from stable_automation.utils.errors import ChannelTransportError, InvalidTargetError
from stable_automation.utils.logging import get_logger


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: Optional[str] = None
    invalid_target: bool = False


class ChannelSender(ABC):
    """Base sender for one delivery channel"""

    channel: str = ""

    async def send(self, target: Optional[str], payload: Dict[str, Any]) -> SendResult:
        """
        Deliver ``payload`` to ``target`` and classify the outcome.

        Transport errors become a failed result. An InvalidTargetError also
        flags the target so the dispatcher can prune it.
        """
        try:
            await self._deliver(target, payload)
            return SendResult(success=True)
        except InvalidTargetError as e:
            get_logger().warning(
                "Delivery target rejected as invalid",
                channel=self.channel,
                error=e.message,
            )
            return SendResult(success=False, error=e.message, invalid_target=True)
        except ChannelTransportError as e:
            return SendResult(success=False, error=e.message)

    @abstractmethod
    async def _deliver(self, target: Optional[str], payload: Dict[str, Any]) -> None:
        """Send through the transport - implemented by subclasses"""
        pass
