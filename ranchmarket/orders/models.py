from __future__ import annotations

"""
Order document model.

Firestore:
  orders/{order_id}

Money is stored as integer cents. The record refuses to construct when
`amount_cents != platform_fee_cents + seller_amount_cents`.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, get_args

from ranchmarket.common.errors import ValidationError
from ranchmarket.common.timeutils import as_utc

OrderStatus = Literal["pending", "paid", "completed", "refunded", "cancelled"]
PayoutHoldReason = Literal["none", "protection_window", "dispute_open", "admin_hold"]
DisputeStatus = Literal[
    "none",
    "open",
    "needs_evidence",
    "resolved_release",
    "resolved_refund",
    "resolved_partial_refund",
    "cancelled",
]
DisputeReason = Literal["death", "serious_illness", "injury", "escape", "wrong_item"]
EvidenceType = Literal["photo", "video", "vet_report", "delivery_doc", "tag_microchip"]

ORDER_STATUSES: frozenset[str] = frozenset(get_args(OrderStatus))
PAYOUT_HOLD_REASONS: frozenset[str] = frozenset(get_args(PayoutHoldReason))
DISPUTE_STATUSES: frozenset[str] = frozenset(get_args(DisputeStatus))
DISPUTE_REASONS: frozenset[str] = frozenset(get_args(DisputeReason))
EVIDENCE_TYPES: frozenset[str] = frozenset(get_args(EvidenceType))

PRE_PAYMENT_STATUSES: frozenset[str] = frozenset({"pending"})
SETTLED_STATUSES: frozenset[str] = frozenset({"paid", "completed", "refunded"})
ACTIVE_DISPUTE_STATUSES: frozenset[str] = frozenset({"open", "needs_evidence"})

# Fulfillment sub-states carried in `transaction_status`.
TX_PENDING_PAYMENT = "PENDING_PAYMENT"
TX_FULFILLMENT_REQUIRED = "FULFILLMENT_REQUIRED"
TX_AWAITING_TRANSFER_COMPLIANCE = "AWAITING_TRANSFER_COMPLIANCE"
TX_DELIVERED = "DELIVERED"
TX_DISPUTE_OPENED = "DISPUTE_OPENED"
TX_READY_TO_RELEASE = "READY_TO_RELEASE"
TX_COMPLETED = "COMPLETED"
TX_REFUNDED = "REFUNDED"
TX_CANCELLED = "CANCELLED"


def _req_str(data: Mapping[str, Any], key: str) -> str:
    v = str(data.get(key) or "").strip()
    if not v:
        raise ValidationError(f"order.{key} is required")
    return v


def _opt_str(v: Any) -> Optional[str]:
    s = str(v).strip() if v is not None else ""
    return s or None


def _cents(v: Any, *, key: str) -> int:
    if v is None:
        return 0
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValidationError(f"order.{key} must be an integer amount of cents")
    if isinstance(v, float) and not v.is_integer():
        raise ValidationError(f"order.{key} must be an integer amount of cents")
    return int(v)


def _literal(v: Any, *, allowed: frozenset[str], key: str, default: str) -> str:
    s = str(v).strip() if v is not None else ""
    if not s:
        return default
    if s not in allowed:
        raise ValidationError(f"order.{key} has unknown value {s!r}")
    return s


@dataclass(frozen=True, slots=True)
class EvidenceItem:
    type: str
    url: str
    uploaded_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.type not in EVIDENCE_TYPES:
            raise ValidationError(f"unknown evidence type {self.type!r}")
        if not str(self.url or "").strip():
            raise ValidationError("evidence url is required")

    def to_firestore(self) -> dict[str, Any]:
        return {"type": self.type, "url": self.url, "uploaded_at": self.uploaded_at}

    @staticmethod
    def from_firestore(data: Mapping[str, Any]) -> "EvidenceItem":
        return EvidenceItem(
            type=str(data.get("type") or ""),
            url=str(data.get("url") or ""),
            uploaded_at=as_utc(data.get("uploaded_at")),
        )


@dataclass(frozen=True, slots=True)
class DisputeRecord:
    status: str = "none"
    reason: Optional[str] = None
    notes: Optional[str] = None
    evidence: tuple[EvidenceItem, ...] = ()
    opened_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def has_evidence(self, *types: str) -> bool:
        return any(e.type in types for e in self.evidence)

    def to_firestore(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "notes": self.notes,
            "evidence": [e.to_firestore() for e in self.evidence],
            "opened_at": self.opened_at,
            "resolved_at": self.resolved_at,
        }

    @staticmethod
    def from_firestore(data: Optional[Mapping[str, Any]]) -> "DisputeRecord":
        if not data:
            return DisputeRecord()
        reason = _opt_str(data.get("reason"))
        if reason is not None and reason not in DISPUTE_REASONS:
            raise ValidationError(f"order.dispute.reason has unknown value {reason!r}")
        return DisputeRecord(
            status=_literal(data.get("status"), allowed=DISPUTE_STATUSES, key="dispute.status", default="none"),
            reason=reason,
            notes=_opt_str(data.get("notes")),
            evidence=tuple(EvidenceItem.from_firestore(e) for e in (data.get("evidence") or []) if isinstance(e, Mapping)),
            opened_at=as_utc(data.get("opened_at")),
            resolved_at=as_utc(data.get("resolved_at")),
        )


@dataclass(frozen=True, slots=True)
class Order:
    order_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    status: str
    amount_cents: int = 0
    platform_fee_cents: int = 0
    seller_amount_cents: int = 0
    quantity: int = 1
    transaction_status: Optional[str] = None
    payout_hold_reason: str = "none"
    dispute: DisputeRecord = field(default_factory=DisputeRecord)
    dispute_deadline_at: Optional[datetime] = None
    reservation_expires_at: Optional[datetime] = None
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    seller_payout_account_id: Optional[str] = None
    protected_transaction_days: Optional[int] = None
    transfer_permit_required: bool = False
    delivery_confirmed_at: Optional[datetime] = None
    protection_ends_at: Optional[datetime] = None
    refund_amount_cents: Optional[int] = None
    refund_id: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in ORDER_STATUSES:
            raise ValidationError(f"order.status has unknown value {self.status!r}")
        if self.payout_hold_reason not in PAYOUT_HOLD_REASONS:
            raise ValidationError(f"order.payout_hold_reason has unknown value {self.payout_hold_reason!r}")
        if min(self.amount_cents, self.platform_fee_cents, self.seller_amount_cents) < 0:
            raise ValidationError("order amounts must be >= 0")
        if self.amount_cents != self.platform_fee_cents + self.seller_amount_cents:
            raise ValidationError(
                f"order {self.order_id}: amount_cents={self.amount_cents} != "
                f"platform_fee_cents={self.platform_fee_cents} + seller_amount_cents={self.seller_amount_cents}"
            )
        if self.quantity < 1:
            raise ValidationError("order.quantity must be >= 1")

    def with_updates(self, **changes: Any) -> "Order":
        return replace(self, **changes)

    def to_firestore(self) -> dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "seller_amount_cents": self.seller_amount_cents,
            "quantity": self.quantity,
            "transaction_status": self.transaction_status,
            "payout_hold_reason": self.payout_hold_reason,
            "dispute": self.dispute.to_firestore(),
            "dispute_deadline_at": self.dispute_deadline_at,
            "reservation_expires_at": self.reservation_expires_at,
            "checkout_session_id": self.checkout_session_id,
            "payment_intent_id": self.payment_intent_id,
            "seller_payout_account_id": self.seller_payout_account_id,
            "protected_transaction_days": self.protected_transaction_days,
            "transfer_permit_required": self.transfer_permit_required,
            "delivery_confirmed_at": self.delivery_confirmed_at,
            "protection_ends_at": self.protection_ends_at,
            "refund_amount_cents": self.refund_amount_cents,
            "refund_id": self.refund_id,
            "created_at": self.created_at,
            "paid_at": self.paid_at,
        }

    @staticmethod
    def from_firestore(order_id: str, data: Mapping[str, Any]) -> "Order":
        days = data.get("protected_transaction_days")
        refund = data.get("refund_amount_cents")
        return Order(
            order_id=str(order_id),
            listing_id=_req_str(data, "listing_id"),
            buyer_id=_req_str(data, "buyer_id"),
            seller_id=_req_str(data, "seller_id"),
            status=_literal(data.get("status"), allowed=ORDER_STATUSES, key="status", default="pending"),
            amount_cents=_cents(data.get("amount_cents"), key="amount_cents"),
            platform_fee_cents=_cents(data.get("platform_fee_cents"), key="platform_fee_cents"),
            seller_amount_cents=_cents(data.get("seller_amount_cents"), key="seller_amount_cents"),
            quantity=int(data.get("quantity") or 1),
            transaction_status=_opt_str(data.get("transaction_status")),
            payout_hold_reason=_literal(
                data.get("payout_hold_reason"), allowed=PAYOUT_HOLD_REASONS, key="payout_hold_reason", default="none"
            ),
            dispute=DisputeRecord.from_firestore(data.get("dispute")),
            dispute_deadline_at=as_utc(data.get("dispute_deadline_at")),
            reservation_expires_at=as_utc(data.get("reservation_expires_at")),
            checkout_session_id=_opt_str(data.get("checkout_session_id")),
            payment_intent_id=_opt_str(data.get("payment_intent_id")),
            seller_payout_account_id=_opt_str(data.get("seller_payout_account_id")),
            protected_transaction_days=int(days) if isinstance(days, (int, float)) and not isinstance(days, bool) else None,
            transfer_permit_required=bool(data.get("transfer_permit_required") or False),
            delivery_confirmed_at=as_utc(data.get("delivery_confirmed_at")),
            protection_ends_at=as_utc(data.get("protection_ends_at")),
            refund_amount_cents=_cents(refund, key="refund_amount_cents") if refund is not None else None,
            refund_id=_opt_str(data.get("refund_id")),
            created_at=as_utc(data.get("created_at")),
            paid_at=as_utc(data.get("paid_at")),
        )
