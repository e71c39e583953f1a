import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .alerts import AlertPriorityEnum, ChannelEnum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationContent:
    subject: str
    body: str
    priority: AlertPriorityEnum = AlertPriorityEnum.NORMAL


@dataclass(frozen=True)
class SendReceipt:
    delivered: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(ABC):
    """Delivery provider for SMS, e-mail and push.

    A send counts as delivered when it returns without raising. Providers may
    also report a soft failure with ``SendReceipt(delivered=False, error=...)``.
    """

    @abstractmethod
    async def send(self, channel: ChannelEnum, address: str, content: NotificationContent) -> SendReceipt:
        ...


class LoggingNotifier(Notifier):
    """Log-based notifier for development and debugging."""

    async def send(self, channel: ChannelEnum, address: str, content: NotificationContent) -> SendReceipt:
        level = logging.WARNING if content.priority == AlertPriorityEnum.URGENT else logging.INFO
        logger.log(level, f"[{channel.value.upper()}] to {address}: {content.subject}")
        return SendReceipt(delivered=True, provider_id=f"log-{channel.value}")
