from __future__ import annotations

"""
Outbound channel adapters.

The pipeline delivers at-least-once, so adapters must tolerate duplicates. The
in-app adapter writes to a document keyed by event id, which makes a repeated
delivery overwrite rather than duplicate.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from ranchmarket.common.errors import MarketplaceError
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.notifications import models
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)


class DeliveryError(MarketplaceError):
    def __init__(self, message: str, *, code: str = "delivery_failed") -> None:
        self.code = code
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class DeliveryEnvelope:
    event_id: str
    type: str
    entity_type: str
    entity_id: str
    target_user_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_event(event: models.Event) -> "DeliveryEnvelope":
        return DeliveryEnvelope(
            event_id=event.event_id,
            type=event.type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            target_user_id=event.target_user_id,
            payload=dict(event.payload),
        )


class ChannelAdapter(Protocol):
    def deliver(self, envelope: DeliveryEnvelope) -> None: ...


_TITLES: dict[str, str] = {
    models.ORDER_CREATED: "Order confirmed",
    models.ORDER_FULFILLMENT_REMINDER: "Fulfillment reminder",
    models.ORDER_DISPUTE_OPENED: "A dispute was opened",
    models.ORDER_DISPUTE_RESOLVED: "Dispute resolved",
    models.ORDER_CANCELLED: "Order cancelled",
    models.ORDER_PAYOUT_RELEASED: "Payout released",
    models.ADMIN_DISPUTE_OPENED: "Dispute needs review",
    models.AUCTION_RELISTED: "Auction relisted",
    models.AUCTION_PAYMENT_EXPIRED: "Auction payment window expired",
}


class InAppChannelAdapter:
    """Writes users/{uid}/notifications/{event_id}."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def deliver(self, envelope: DeliveryEnvelope) -> None:
        if not envelope.target_user_id:
            raise DeliveryError("envelope has no target user", code="missing_target")
        ref = self._store.user_notification_ref(envelope.target_user_id, envelope.event_id)
        self._store.set(
            ref,
            {
                "event_id": envelope.event_id,
                "type": envelope.type,
                "title": _TITLES.get(envelope.type, envelope.type),
                "entity_type": envelope.entity_type,
                "entity_id": envelope.entity_id,
                "payload": dict(envelope.payload),
                "read": False,
                "delivered_at": utc_now(),
            },
            merge=True,
        )
        log_event(
            logger,
            "notifications.delivered_in_app",
            severity="DEBUG",
            event_id=envelope.event_id,
            target_user_id=envelope.target_user_id,
            notification_type=envelope.type,
        )
