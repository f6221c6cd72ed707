from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, get_args

from ranchmarket.common.errors import ValidationError
from ranchmarket.common.timeutils import as_utc

EventStatus = Literal["pending", "processed", "failed"]
EVENT_STATUSES: frozenset[str] = frozenset(get_args(EventStatus))

ORDER_CREATED = "Order.Created"
ORDER_FULFILLMENT_REMINDER = "Order.FulfillmentReminder"
ORDER_DISPUTE_OPENED = "Order.DisputeOpened"
ORDER_DISPUTE_RESOLVED = "Order.DisputeResolved"
ORDER_CANCELLED = "Order.Cancelled"
ORDER_PAYOUT_RELEASED = "Order.PayoutReleased"
ADMIN_DISPUTE_OPENED = "Admin.Order.DisputeOpened"
AUCTION_RELISTED = "Auction.Relisted"
AUCTION_PAYMENT_EXPIRED = "Auction.WinnerPaymentExpired"


@dataclass(frozen=True, slots=True)
class EventProcessing:
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None

    def to_firestore(self) -> dict[str, Any]:
        return {"attempts": self.attempts, "last_attempt_at": self.last_attempt_at, "error": self.error}

    @staticmethod
    def from_firestore(data: Optional[Mapping[str, Any]]) -> "EventProcessing":
        d = data or {}
        attempts = d.get("attempts")
        err = d.get("error")
        return EventProcessing(
            attempts=int(attempts) if isinstance(attempts, (int, float)) and not isinstance(attempts, bool) else 0,
            last_attempt_at=as_utc(d.get("last_attempt_at")),
            error=dict(err) if isinstance(err, Mapping) else None,
        )


@dataclass(frozen=True, slots=True)
class Event:
    event_id: str
    type: str
    entity_type: str
    entity_id: str
    target_user_id: str
    dedupe_key: str
    status: str = "pending"
    payload: dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None
    processing: EventProcessing = EventProcessing()
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in EVENT_STATUSES:
            raise ValidationError(f"event.status has unknown value {self.status!r}")
        for name in ("type", "entity_type", "entity_id", "target_user_id"):
            if not str(getattr(self, name) or "").strip():
                raise ValidationError(f"event.{name} is required")

    def to_firestore(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "target_user_id": self.target_user_id,
            "actor_id": self.actor_id,
            "payload": dict(self.payload),
            "dedupe_key": self.dedupe_key,
            "status": self.status,
            "processing": self.processing.to_firestore(),
            "created_at": self.created_at,
            "processed_at": self.processed_at,
        }

    @staticmethod
    def from_firestore(event_id: str, data: Mapping[str, Any]) -> "Event":
        payload = data.get("payload")
        return Event(
            event_id=str(event_id),
            type=str(data.get("type") or ""),
            entity_type=str(data.get("entity_type") or ""),
            entity_id=str(data.get("entity_id") or ""),
            target_user_id=str(data.get("target_user_id") or ""),
            dedupe_key=str(data.get("dedupe_key") or ""),
            status=str(data.get("status") or "pending"),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            actor_id=(str(data.get("actor_id")) if data.get("actor_id") else None),
            processing=EventProcessing.from_firestore(data.get("processing")),
            created_at=as_utc(data.get("created_at")),
            processed_at=as_utc(data.get("processed_at")),
        )
