from __future__ import annotations

"""
Dispute & Resolution Engine.

Dispute states:
  none -> open | needs_evidence -> resolved_release | resolved_refund | resolved_partial_refund

Opening guards (all measured at `now`):
- order is paid, delivery is confirmed and the protection window is still open
- reason-specific filing deadline from delivery confirmation (see REASON_DEADLINE_HOURS)
- at least one photo or video
- buyer still eligible for protection

Death / serious-illness claims without a vet report start as needs_evidence.

Resolution moves money first (gateway refund with a deterministic idempotency key)
and then commits the order transition; a retried resolution re-uses the same key,
so the gateway never refunds twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence, Union

from ranchmarket.common.errors import DisputeRejected, NotFoundError, ValidationError
from ranchmarket.common.keys import refund_key_dispute_full, refund_key_dispute_partial
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import hours_between, utc_now
from ranchmarket.notifications import models as events
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.orders import models
from ranchmarket.orders.models import DisputeRecord, EvidenceItem, Order
from ranchmarket.payments.gateway import PaymentGateway, RefundInfo
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

Resolution = Literal["release", "refund", "partial_refund"]

REASON_DEADLINE_HOURS: dict[str, int] = {
    "death": 48,
    "wrong_item": 24,
    "injury": 72,
    "escape": 72,
}
VET_REPORT_REASONS: frozenset[str] = frozenset({"death", "serious_illness"})
MEDIA_EVIDENCE: tuple[str, ...] = ("photo", "video")

FRAUD_RISK_INCREMENT = 20
FRAUD_RISK_CAP = 100
FRAUD_INELIGIBLE_AT = 2

_RESOLVED_STATUS: dict[str, str] = {
    "release": "resolved_release",
    "refund": "resolved_refund",
    "partial_refund": "resolved_partial_refund",
}

EvidenceInput = Union[EvidenceItem, Mapping[str, Any]]


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    order_id: str
    resolution: str
    order_status: str
    dispute_status: str
    refund_id: Optional[str] = None
    refund_amount_cents: Optional[int] = None
    fraud_marked: bool = False


@dataclass(frozen=True, slots=True)
class BuyerRisk:
    confirmed_fraud_count: int
    risk_score: int
    protection_eligible: bool


def _coerce_evidence(items: Iterable[EvidenceInput], *, now: datetime) -> tuple[EvidenceItem, ...]:
    out: list[EvidenceItem] = []
    for item in items:
        if isinstance(item, EvidenceItem):
            out.append(item if item.uploaded_at else EvidenceItem(type=item.type, url=item.url, uploaded_at=now))
        else:
            out.append(EvidenceItem(type=str(item.get("type") or ""), url=str(item.get("url") or ""), uploaded_at=now))
    return tuple(out)


def evaluate_dispute_open(
    *,
    order: Order,
    reason: str,
    evidence: Sequence[EvidenceItem],
    buyer_eligible: bool,
    now: datetime,
) -> str:
    """
    Pure guard: returns the initial dispute status ("open" or "needs_evidence")
    or raises DisputeRejected with a reason code.
    """
    if reason not in models.DISPUTE_REASONS:
        raise ValidationError(f"unknown dispute reason {reason!r}")
    if not evidence:
        raise ValidationError("at least one evidence item is required")

    if order.status != "paid":
        raise DisputeRejected("order_not_disputable", f"order {order.order_id} is {order.status}")
    if order.dispute.status != "none":
        raise DisputeRejected("dispute_exists", f"order {order.order_id} dispute is {order.dispute.status}")
    if not buyer_eligible:
        raise DisputeRejected("buyer_ineligible", "buyer is not eligible for buyer protection")
    if order.protected_transaction_days is None:
        raise DisputeRejected("not_protected", f"order {order.order_id} has no protection window")
    if order.delivery_confirmed_at is None:
        raise DisputeRejected("delivery_not_confirmed", f"order {order.order_id} has no confirmed delivery")
    if order.protection_ends_at is None or now > order.protection_ends_at:
        raise DisputeRejected("protection_window_expired", f"protection window for order {order.order_id} has ended")

    limit_h = REASON_DEADLINE_HOURS.get(reason)
    if limit_h is not None and hours_between(order.delivery_confirmed_at, now) > limit_h:
        raise DisputeRejected(
            "dispute_window_expired",
            f"{reason} disputes must be filed within {limit_h}h of delivery confirmation",
        )

    if not any(e.type in MEDIA_EVIDENCE for e in evidence):
        raise DisputeRejected("missing_media_evidence", "at least one photo or video is required")

    if reason in VET_REPORT_REASONS and not any(e.type == "vet_report" for e in evidence):
        return "needs_evidence"
    return "open"


def apply_fraud_mark(*, user_data: Mapping[str, Any]) -> BuyerRisk:
    count = int(user_data.get("buyer_confirmed_fraud_count") or 0) + 1
    score = min(FRAUD_RISK_CAP, int(user_data.get("buyer_risk_score") or 0) + FRAUD_RISK_INCREMENT)
    return BuyerRisk(confirmed_fraud_count=count, risk_score=score, protection_eligible=count < FRAUD_INELIGIBLE_AT)


def resolution_patch(
    *,
    order: Order,
    resolution: Resolution,
    refund: Optional[RefundInfo],
    refund_amount_cents: Optional[int],
    now: datetime,
) -> dict[str, Any]:
    dispute = DisputeRecord(
        status=_RESOLVED_STATUS[resolution],
        reason=order.dispute.reason,
        notes=order.dispute.notes,
        evidence=order.dispute.evidence,
        opened_at=order.dispute.opened_at,
        resolved_at=now,
    )
    patch: dict[str, Any] = {
        "dispute": dispute.to_firestore(),
        "payout_hold_reason": "none",
        "updated_at": now,
    }
    if resolution == "refund":
        patch.update(
            {
                "status": "refunded",
                "transaction_status": models.TX_REFUNDED,
                "refund_id": refund.id if refund else None,
                "refund_amount_cents": order.amount_cents,
                "is_full_refund": True,
                "refunded_at": now,
            }
        )
    elif resolution == "partial_refund":
        patch.update(
            {
                "status": "completed",
                "transaction_status": models.TX_COMPLETED,
                "refund_id": refund.id if refund else None,
                "refund_amount_cents": int(refund_amount_cents or 0),
                "is_full_refund": False,
                "refunded_at": now,
                "completed_at": now,
            }
        )
    else:
        patch.update({"status": "completed", "transaction_status": models.TX_COMPLETED, "completed_at": now})
    return patch


class DisputeEngine:
    def __init__(
        self,
        *,
        store: DocumentStore,
        gateway: PaymentGateway,
        pipeline: NotificationPipeline,
        admin_user_ids: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._pipeline = pipeline
        self._admins = tuple(admin_user_ids)

    # ---- open ----

    def open_dispute(
        self,
        *,
        order_id: str,
        buyer_id: str,
        reason: str,
        evidence: Sequence[EvidenceInput],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DisputeRecord:
        now = now or utc_now()
        items = _coerce_evidence(evidence, now=now)
        order_ref = self._store.order_ref(order_id)
        user_ref = self._store.user_ref(buyer_id)

        def _txn(txn: Any) -> tuple[Order, DisputeRecord]:
            order_snap = order_ref.get(transaction=txn)
            user_snap = user_ref.get(transaction=txn)
            if not order_snap.exists:
                raise NotFoundError(f"order {order_id} not found")
            order = Order.from_firestore(order_id, order_snap.to_dict() or {})
            if order.buyer_id != buyer_id:
                raise DisputeRejected("not_order_buyer", "only the buyer can open a dispute")
            user = (user_snap.to_dict() or {}) if user_snap.exists else {}
            eligible = user.get("buyer_protection_eligible") is not False

            status = evaluate_dispute_open(order=order, reason=reason, evidence=items, buyer_eligible=eligible, now=now)
            record = DisputeRecord(status=status, reason=reason, notes=notes, evidence=items, opened_at=now)
            patch: dict[str, Any] = {
                "dispute": record.to_firestore(),
                "transaction_status": models.TX_DISPUTE_OPENED,
                "updated_at": now,
            }
            if order.payout_hold_reason != "admin_hold":
                patch["payout_hold_reason"] = "dispute_open"
            txn.update(order_ref, patch)
            return order, record

        order, record = self._store.run_transaction(_txn)
        log_event(
            logger,
            "dispute.opened",
            order_id=order_id,
            reason=reason,
            dispute_status=record.status,
            evidence_count=len(items),
        )

        self._bump_claims_count(buyer_id)
        self._pipeline.try_emit(
            event_type=events.ORDER_DISPUTE_OPENED,
            entity_type="order",
            entity_id=order_id,
            target_user_id=order.seller_id,
            payload={"order_id": order_id, "reason": reason, "dispute_status": record.status},
            optional_hash=f"dispute_opened:{order_id}",
            actor_id=buyer_id,
        )
        for admin_id in self._admins:
            self._pipeline.try_emit(
                event_type=events.ADMIN_DISPUTE_OPENED,
                entity_type="order",
                entity_id=order_id,
                target_user_id=admin_id,
                payload={"order_id": order_id, "reason": reason, "buyer_id": buyer_id},
                optional_hash=f"admin_dispute_opened:{order_id}",
                actor_id=buyer_id,
            )
        return record

    def _bump_claims_count(self, buyer_id: str) -> None:
        user_ref = self._store.user_ref(buyer_id)

        def _txn(txn: Any) -> None:
            snap = user_ref.get(transaction=txn)
            data = (snap.to_dict() or {}) if snap.exists else {}
            txn.set(user_ref, {"buyer_claims_count": int(data.get("buyer_claims_count") or 0) + 1}, merge=True)

        try:
            self._store.run_transaction(_txn)
        except Exception as e:  # noqa: BLE001
            log_event(logger, "dispute.claims_count_failed", severity="WARNING", buyer_id=buyer_id, error=str(e)[:500])

    # ---- evidence ----

    def add_evidence(
        self,
        *,
        order_id: str,
        buyer_id: str,
        evidence: EvidenceInput,
        now: Optional[datetime] = None,
    ) -> DisputeRecord:
        """Append evidence; a needs_evidence claim opens once its vet report arrives."""
        now = now or utc_now()
        (item,) = _coerce_evidence([evidence], now=now)
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> DisputeRecord:
            snap = order_ref.get(transaction=txn)
            if not snap.exists:
                raise NotFoundError(f"order {order_id} not found")
            order = Order.from_firestore(order_id, snap.to_dict() or {})
            if order.buyer_id != buyer_id:
                raise DisputeRejected("not_order_buyer", "only the buyer can add evidence")
            if not order.dispute.is_active:
                raise DisputeRejected("no_active_dispute", f"order {order_id} dispute is {order.dispute.status}")

            evidence_all = order.dispute.evidence + (item,)
            status = order.dispute.status
            if (
                status == "needs_evidence"
                and order.dispute.reason in VET_REPORT_REASONS
                and any(e.type == "vet_report" for e in evidence_all)
            ):
                status = "open"
            record = DisputeRecord(
                status=status,
                reason=order.dispute.reason,
                notes=order.dispute.notes,
                evidence=evidence_all,
                opened_at=order.dispute.opened_at,
            )
            txn.update(order_ref, {"dispute": record.to_firestore(), "updated_at": now})
            return record

        record = self._store.run_transaction(_txn)
        log_event(logger, "dispute.evidence_added", order_id=order_id, evidence_type=item.type, dispute_status=record.status)
        return record

    # ---- resolve ----

    def resolve_dispute(
        self,
        *,
        order_id: str,
        resolution: Resolution,
        admin_id: str,
        refund_amount_cents: Optional[int] = None,
        mark_fraudulent: bool = False,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ResolutionResult:
        if resolution not in _RESOLVED_STATUS:
            raise ValidationError(f"unknown resolution {resolution!r}")
        now = now or utc_now()

        snap_data = self._store.get(self._store.order_ref(order_id))
        if snap_data is None:
            raise NotFoundError(f"order {order_id} not found")
        order = Order.from_firestore(order_id, snap_data)
        self._check_resolvable(order)

        refund: Optional[RefundInfo] = None
        if resolution == "partial_refund":
            if refund_amount_cents is None or not (0 < int(refund_amount_cents) < order.amount_cents):
                raise DisputeRejected(
                    "refund_amount_invalid",
                    f"partial refund must be between 0 and {order.amount_cents} cents (exclusive)",
                )
        if resolution in ("refund", "partial_refund"):
            if not order.payment_intent_id:
                raise DisputeRejected("missing_payment_intent", f"order {order_id} has no payment intent")
            if resolution == "refund":
                key = refund_key_dispute_full(order_id)
                amount = None
            else:
                key = refund_key_dispute_partial(order_id, int(refund_amount_cents or 0))
                amount = int(refund_amount_cents or 0)
            refund = self._gateway.create_refund(
                payment_intent_id=order.payment_intent_id,
                idempotency_key=key,
                amount_cents=amount,
                metadata={"order_id": order_id, "reason": f"dispute_{resolution}", "admin_id": admin_id},
            )

        order_ref = self._store.order_ref(order_id)
        user_ref = self._store.user_ref(order.buyer_id)

        def _txn(txn: Any) -> ResolutionResult:
            o_snap = order_ref.get(transaction=txn)
            u_snap = user_ref.get(transaction=txn)
            current = Order.from_firestore(order_id, o_snap.to_dict() or {})
            self._check_resolvable(current)

            raw = o_snap.to_dict() or {}
            patch = resolution_patch(
                order=current, resolution=resolution, refund=refund, refund_amount_cents=refund_amount_cents, now=now
            )
            patch["admin_action_notes"] = list(raw.get("admin_action_notes") or []) + [
                {"admin_id": admin_id, "action": f"dispute_{resolution}", "notes": notes, "at": now}
            ]
            txn.update(order_ref, patch)

            if mark_fraudulent:
                risk = apply_fraud_mark(user_data=(u_snap.to_dict() or {}) if u_snap.exists else {})
                txn.set(
                    user_ref,
                    {
                        "buyer_confirmed_fraud_count": risk.confirmed_fraud_count,
                        "buyer_risk_score": risk.risk_score,
                        "buyer_protection_eligible": risk.protection_eligible,
                        "updated_at": now,
                    },
                    merge=True,
                )
            return ResolutionResult(
                order_id=order_id,
                resolution=resolution,
                order_status=patch["status"],
                dispute_status=patch["dispute"]["status"],
                refund_id=refund.id if refund else None,
                refund_amount_cents=patch.get("refund_amount_cents"),
                fraud_marked=bool(mark_fraudulent),
            )

        result = self._store.run_transaction(_txn)
        log_event(
            logger,
            "dispute.resolved",
            order_id=order_id,
            resolution=resolution,
            admin_id=admin_id,
            refund_id=result.refund_id,
            refund_amount_cents=result.refund_amount_cents,
            fraud_marked=result.fraud_marked,
        )
        for uid in (order.buyer_id, order.seller_id):
            self._pipeline.try_emit(
                event_type=events.ORDER_DISPUTE_RESOLVED,
                entity_type="order",
                entity_id=order_id,
                target_user_id=uid,
                payload={"order_id": order_id, "resolution": resolution, "refund_amount_cents": result.refund_amount_cents},
                optional_hash=f"dispute_resolved:{order_id}",
                actor_id=admin_id,
            )
        return result

    @staticmethod
    def _check_resolvable(order: Order) -> None:
        if not order.dispute.is_active:
            raise DisputeRejected("dispute_not_resolvable", f"order {order.order_id} dispute is {order.dispute.status}")
        if order.status != "paid":
            raise DisputeRejected("dispute_not_resolvable", f"order {order.order_id} is {order.status}")
