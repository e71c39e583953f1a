"""
Fan-out of one alert to every channel of every recipient.

Channels are attempted concurrently and each is bounded by its own timeout.
A failing channel never prevents the others and never raises out of
``dispatch``; the caller decides what the aggregate outcome means.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .alerts import Alert, ChannelEnum
from .notifier import NotificationContent, Notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    recipient_id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None

    def addresses(self) -> Dict[ChannelEnum, str]:
        """Configured channels only; a missing address means the channel is skipped"""
        candidates = {
            ChannelEnum.SMS: self.phone,
            ChannelEnum.EMAIL: self.email,
            ChannelEnum.PUSH: self.push_token,
        }
        return {channel: address for channel, address in candidates.items() if address}


@dataclass(frozen=True)
class ChannelResult:
    recipient_id: str
    channel: ChannelEnum
    sent: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    record_id: str
    channel_results: List[ChannelResult] = field(default_factory=list)

    @property
    def any_sent(self) -> bool:
        return any(r.sent for r in self.channel_results)

    @property
    def attempted(self) -> int:
        return len(self.channel_results)

    @property
    def failures(self) -> List[ChannelResult]:
        return [r for r in self.channel_results if not r.sent]

    def error_summary(self) -> Optional[str]:
        """One line per failed channel, or None when everything went out"""
        if not self.channel_results:
            return "No channel configured for any recipient"
        if not self.failures:
            return None
        return "; ".join(f"{r.channel.value} to {r.recipient_id}: {r.error}" for r in self.failures)

    def to_dict(self) -> Dict:
        return {
            'record_id': self.record_id,
            'any_sent': self.any_sent,
            'channels': [
                {
                    'recipient_id': r.recipient_id,
                    'channel': r.channel.value,
                    'sent': r.sent,
                    'provider_id': r.provider_id,
                    'error': r.error
                }
                for r in self.channel_results
            ]
        }


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, channel_timeout_seconds: float = 10.0):
        self.notifier = notifier
        self.channel_timeout_seconds = channel_timeout_seconds

    async def dispatch(self, alert: Alert, recipients: Sequence[Recipient]) -> DispatchResult:
        content = NotificationContent(subject=alert.subject, body=alert.body, priority=alert.priority)
        attempts: List[Tuple[Recipient, ChannelEnum, str]] = [
            (recipient, channel, address)
            for recipient in recipients
            for channel, address in recipient.addresses().items()
        ]
        if not attempts:
            logger.warning(f"No reachable channel for {alert.kind.value} alert {alert.record_id}")
            return DispatchResult(record_id=alert.record_id)

        results = await asyncio.gather(
            *(self._send_one(alert, recipient, channel, address, content)
              for recipient, channel, address in attempts)
        )
        outcome = DispatchResult(record_id=alert.record_id, channel_results=list(results))
        logger.info(
            f"Dispatched {alert.kind.value} alert {alert.record_id}: "
            f"{outcome.attempted - len(outcome.failures)}/{outcome.attempted} channels sent"
        )
        return outcome

    async def _send_one(self, alert: Alert, recipient: Recipient, channel: ChannelEnum,
                        address: str, content: NotificationContent) -> ChannelResult:
        try:
            receipt = await asyncio.wait_for(
                self.notifier.send(channel, address, content),
                timeout=self.channel_timeout_seconds
            )
        except asyncio.TimeoutError:
            error = f"timed out after {self.channel_timeout_seconds}s"
            logger.error(f"{channel.value} to {recipient.recipient_id} for {alert.record_id} {error}")
            return ChannelResult(recipient.recipient_id, channel, sent=False, error=error)
        except Exception as e:
            logger.error(f"{channel.value} to {recipient.recipient_id} for {alert.record_id} failed: {str(e)}")
            return ChannelResult(recipient.recipient_id, channel, sent=False, error=str(e) or type(e).__name__)

        if not receipt.delivered:
            logger.error(f"{channel.value} to {recipient.recipient_id} for {alert.record_id} rejected: {receipt.error}")
            return ChannelResult(recipient.recipient_id, channel, sent=False,
                                 provider_id=receipt.provider_id, error=receipt.error or "rejected by provider")
        return ChannelResult(recipient.recipient_id, channel, sent=True, provider_id=receipt.provider_id)
