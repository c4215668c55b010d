"""Real-time settlement events.

Settled invoices are announced on a Redis pub/sub channel that the
WebSocket gateway relays to the participant's browser sessions. Delivery
is at-most-once: publish_settlement() never raises and nothing is retried
or persisted.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementEvent:
    invoice_id: str
    participant_id: str
    status: str
    workshop_id: Optional[str] = None

    def to_message(self, timestamp_ms: Optional[int] = None) -> dict[str, Any]:
        """Render the invoice_update envelope understood by the WebSocket gateway."""
        return {
            "type": "invoice_update",
            "data": {
                "invoiceId": self.invoice_id,
                "userId": self.participant_id,
                "status": self.status,
                "workshopId": self.workshop_id,
            },
            "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            "targetUsers": [self.participant_id],
        }


class EventNotifier(Protocol):
    def publish(self, event: SettlementEvent) -> None: ...


class RedisEventNotifier:
    """Publishes settlement events to a Redis channel."""

    def __init__(self, client: redis.Redis, channel: str):
        self.client = client
        self.channel = channel

    def publish(self, event: SettlementEvent) -> None:
        """Publish one event.

        Raises:
            redis.RedisError: If Redis is unreachable
        """
        receivers = self.client.publish(self.channel, json.dumps(event.to_message()))
        logger.info(
            "SETTLEMENT_EVENT_PUBLISHED",
            extra={
                "channel": self.channel,
                "event_invoice_id": event.invoice_id,
                "receivers": receivers,
            },
        )


def publish_settlement(notifier: EventNotifier, event: SettlementEvent) -> None:
    """Publish a settlement event, logging instead of raising on failure.

    Scheduled as a background task after the acknowledgement is sent.
    """
    try:
        notifier.publish(event)
    except Exception as e:
        logger.warning(
            "SETTLEMENT_EVENT_PUBLISH_FAILED",
            extra={
                "event_invoice_id": event.invoice_id,
                "error_type": type(e).__name__,
                "error": str(e),
            },
        )
