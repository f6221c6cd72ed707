from __future__ import annotations

"""
Payment Webhook Ingestor.

Consumes checkout-session callbacks from the payment gateway. The gateway may
deliver the same callback several times, concurrently or hours apart, so every
path is idempotent:

- completed: settled orders for the session short-circuit; the order document id
  is fixed per session and created inside the same transaction that sells the
  listing, so two racing deliveries cannot both create it
- region violation: refund carries a per-session idempotency key and the audit
  order is written to the same fixed order id
- completed but unpaid (delayed payment methods): a pending order is recorded
  and its inventory hold pinned; async_payment_succeeded later runs the paid
  path and async_payment_failed cancels it
- expired: cancellation only ever applies to a pending order
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping, Optional, Union

from ranchmarket.common.config import MarketplaceSettings
from ranchmarket.common.errors import BusinessRuleViolation, GatewayError, ReservationRejected, ValidationError
from ranchmarket.common.keys import order_id_for_checkout_session, refund_key_compliance
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.listings.availability import ListingAvailabilityController, plan_sale
from ranchmarket.listings.models import Listing
from ranchmarket.notifications import models as events
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.orders import models
from ranchmarket.orders.ledger import OrderLedger
from ranchmarket.orders.models import Order
from ranchmarket.payments.compliance import PolicyEvaluator, RegionResolution, resolve_buyer_region
from ranchmarket.payments.fees import FeeSplit, split_amount
from ranchmarket.payments.gateway import PaymentGateway
from ranchmarket.payments.payloads import CheckoutMetadata, CheckoutSession, parse_checkout_session
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

IngestOutcome = Literal[
    "created",
    "awaiting_payment",
    "duplicate",
    "refunded_compliance",
    "duplicate_refund",
    "listing_unavailable",
    "cancelled",
    "noop_not_pending",
    "noop_missing",
    "ignored",
]

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"


@dataclass(frozen=True, slots=True)
class IngestResult:
    outcome: IngestOutcome
    order_id: Optional[str] = None
    refund_id: Optional[str] = None
    detail: Optional[str] = None


class PaymentWebhookIngestor:
    def __init__(
        self,
        *,
        store: DocumentStore,
        gateway: PaymentGateway,
        listings: ListingAvailabilityController,
        ledger: OrderLedger,
        pipeline: NotificationPipeline,
        policy: PolicyEvaluator,
        settings: MarketplaceSettings,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._listings = listings
        self._ledger = ledger
        self._pipeline = pipeline
        self._policy = policy
        self._settings = settings

    def handle_event(self, event: Mapping[str, Any], *, now: Optional[datetime] = None) -> IngestResult:
        """Route a verified gateway event to its handler."""
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == CHECKOUT_COMPLETED:
            return self.handle_checkout_completed(obj, now=now)
        if event_type == ASYNC_PAYMENT_SUCCEEDED:
            return self.handle_async_payment_succeeded(obj, now=now)
        if event_type == ASYNC_PAYMENT_FAILED:
            return self.handle_async_payment_failed(obj, now=now)
        if event_type == CHECKOUT_EXPIRED:
            return self.handle_checkout_expired(obj, now=now)
        log_event(logger, "webhook.ignored", severity="DEBUG", gateway_event_type=event_type)
        return IngestResult(outcome="ignored", detail=event_type)

    # ---- completed ----

    def handle_checkout_completed(
        self,
        payload: Union[CheckoutSession, Mapping[str, Any]],
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """
        Turn a completed checkout into a paid order. A session completed with a
        delayed payment method is recorded as a pending order instead.
        """
        now = now or utc_now()
        session = _parse(payload)
        meta = session.checkout_metadata()
        order_id = meta.order_id or order_id_for_checkout_session(session.id)
        duplicate = self._settled_duplicate(session)
        if duplicate is not None:
            return duplicate
        if not session.payment_captured:
            return self._record_awaiting_payment(session, meta, order_id, now=now)
        return self._settle_paid(session, meta, order_id, now=now)

    def handle_async_payment_succeeded(
        self,
        payload: Union[CheckoutSession, Mapping[str, Any]],
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Promote the order of a delayed payment to paid once the gateway has captured it."""
        now = now or utc_now()
        session = _parse(payload)
        meta = session.checkout_metadata()
        order_id = meta.order_id or order_id_for_checkout_session(session.id)
        duplicate = self._settled_duplicate(session)
        if duplicate is not None:
            return duplicate
        existing = self._store.get(self._store.order_ref(order_id))
        log_event(
            logger,
            "webhook.async_payment_succeeded",
            checkout_session_id=session.id,
            order_id=order_id,
            prior_status=(existing or {}).get("status"),
        )
        return self._settle_paid(session, meta, order_id, now=now)

    def handle_async_payment_failed(
        self,
        payload: Union[CheckoutSession, Mapping[str, Any]],
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Cancel the pending order of a delayed payment that bounced and give its hold back."""
        return self._cancel_for_session(_parse(payload), reason="async_payment_failed", now=now)

    def _settled_duplicate(self, session: CheckoutSession) -> Optional[IngestResult]:
        for existing_id, data in self._ledger.find_by_checkout_session(session.id):
            if str(data.get("status") or "") in models.SETTLED_STATUSES:
                log_event(
                    logger,
                    "webhook.duplicate",
                    checkout_session_id=session.id,
                    order_id=existing_id,
                    status=data.get("status"),
                )
                return IngestResult(outcome="duplicate", order_id=existing_id)
        return None

    def _fee_split(self, session: CheckoutSession, meta: CheckoutMetadata) -> FeeSplit:
        amount_cents = self._resolve_amount(session)
        split = split_amount(
            amount_cents=amount_cents,
            platform_fee_cents=meta.platform_fee_cents,
            seller_amount_cents=meta.seller_amount_cents,
            platform_fee_percent=meta.platform_fee_percent,
            default_percent=self._settings.platform_fee_percent,
        )
        if split.source == "default_percent":
            log_event(
                logger,
                "webhook.fee_snapshot_missing",
                severity="WARNING",
                checkout_session_id=session.id,
                platform_fee_cents=split.platform_fee_cents,
            )
        return split

    def _settle_paid(
        self,
        session: CheckoutSession,
        meta: CheckoutMetadata,
        order_id: str,
        *,
        now: datetime,
    ) -> IngestResult:
        split = self._fee_split(session, meta)
        listing_data = self._store.get(self._store.listing_ref(meta.listing_id))
        if listing_data is None:
            return self._listing_unavailable(session, meta, order_id, reason="listing_missing")
        listing = Listing.from_firestore(meta.listing_id, listing_data)

        if self._policy.requires_region_check(category=listing.category):
            resolution = resolve_buyer_region(session, self._gateway)
            if not self._policy.is_region_allowed(category=listing.category, region=resolution.region):
                return self._refund_region_violation(session, meta, order_id, split, listing, resolution, now=now)
            log_event(
                logger,
                "compliance.region_verified",
                checkout_session_id=session.id,
                listing_id=listing.listing_id,
                buyer_region=resolution.region,
                source=resolution.source,
            )

        result = self._create_paid_order(session, meta, order_id, split, now=now)
        if result.outcome == "created":
            self._emit_order_created(session, meta, order_id, split, listing)
        return result

    def _resolve_amount(self, session: CheckoutSession) -> int:
        if session.payment_intent:
            try:
                pi = self._gateway.retrieve_payment_intent(session.payment_intent)
                if pi.amount_cents is not None:
                    return int(pi.amount_cents)
            except GatewayError as e:
                log_event(
                    logger,
                    "webhook.amount_lookup_failed",
                    severity="WARNING",
                    checkout_session_id=session.id,
                    payment_intent_id=session.payment_intent,
                    error=str(e)[:500],
                )
        if session.amount_total is None:
            raise ValidationError(f"checkout session {session.id} carries no amount")
        log_event(
            logger,
            "webhook.amount_from_session",
            severity="WARNING",
            checkout_session_id=session.id,
            amount_cents=session.amount_total,
        )
        return int(session.amount_total)

    def _create_paid_order(
        self,
        session: CheckoutSession,
        meta: CheckoutMetadata,
        order_id: str,
        split: FeeSplit,
        *,
        now: datetime,
    ) -> IngestResult:
        order_ref = self._store.order_ref(order_id)
        listing_ref = self._store.listing_ref(meta.listing_id)
        res_ref = self._store.purchase_reservation_ref(meta.listing_id, order_id)

        def _txn(txn: Any) -> IngestResult:
            order_snap = order_ref.get(transaction=txn)
            listing_snap = listing_ref.get(transaction=txn)
            res_snap = res_ref.get(transaction=txn)

            existing = (order_snap.to_dict() or {}) if order_snap.exists else {}
            if str(existing.get("status") or "") in models.SETTLED_STATUSES:
                return IngestResult(outcome="duplicate", order_id=order_id)
            if not listing_snap.exists:
                return IngestResult(outcome="listing_unavailable", order_id=order_id, detail="listing_missing")

            listing = Listing.from_firestore(meta.listing_id, listing_snap.to_dict() or {})
            try:
                sale = plan_sale(
                    listing=listing,
                    order_id=order_id,
                    quantity=meta.quantity,
                    reservation_data=res_snap.to_dict() if res_snap.exists else None,
                    now=now,
                )
            except ReservationRejected as e:
                return IngestResult(outcome="listing_unavailable", order_id=order_id, detail=e.code)

            permit = listing.transfer_permit_required or self._policy.requires_transfer_permit(category=listing.category)
            days = listing.protected_transaction_days
            order = Order(
                order_id=order_id,
                listing_id=meta.listing_id,
                buyer_id=meta.buyer_id,
                seller_id=meta.seller_id,
                status="paid",
                amount_cents=split.amount_cents,
                platform_fee_cents=split.platform_fee_cents,
                seller_amount_cents=split.seller_amount_cents,
                quantity=meta.quantity,
                transaction_status=models.TX_AWAITING_TRANSFER_COMPLIANCE if permit else models.TX_FULFILLMENT_REQUIRED,
                payout_hold_reason="protection_window" if days else "none",
                dispute_deadline_at=now + timedelta(hours=self._settings.dispute_window_hours),
                reservation_expires_at=None,
                checkout_session_id=session.id,
                payment_intent_id=session.payment_intent,
                seller_payout_account_id=meta.seller_payout_account_id,
                protected_transaction_days=days,
                transfer_permit_required=permit,
                created_at=existing.get("created_at") or now,
                paid_at=now,
            )
            doc = order.to_firestore()
            doc.update(
                {
                    "fee_source": split.source,
                    "platform_fee_percent": meta.platform_fee_percent,
                    "seller_tier_snapshot": meta.seller_tier_snapshot,
                    "updated_at": now,
                }
            )
            if order_snap.exists:
                txn.set(order_ref, doc, merge=True)
            else:
                txn.create(order_ref, doc)
            self._listings.stage_sale(txn, listing_id=meta.listing_id, order_id=order_id, plan=sale)
            return IngestResult(outcome="created", order_id=order_id, detail="sold_out" if sale.sold_out else "partial")

        result = self._store.run_transaction(_txn)
        if result.outcome == "listing_unavailable":
            return self._listing_unavailable(session, meta, order_id, reason=result.detail or "listing_unavailable")
        log_event(
            logger,
            "webhook.order_created" if result.outcome == "created" else "webhook.duplicate",
            checkout_session_id=session.id,
            order_id=order_id,
            listing_id=meta.listing_id,
            amount_cents=split.amount_cents,
            platform_fee_cents=split.platform_fee_cents,
            seller_amount_cents=split.seller_amount_cents,
            listing_state=result.detail,
        )
        return result

    def _listing_unavailable(self, session: CheckoutSession, meta: CheckoutMetadata, order_id: str, *, reason: str) -> IngestResult:
        # Payment stays captured at the gateway; an admin refunds it manually.
        log_event(
            logger,
            "webhook.listing_unavailable",
            severity="ERROR",
            checkout_session_id=session.id,
            payment_intent_id=session.payment_intent,
            listing_id=meta.listing_id,
            buyer_id=meta.buyer_id,
            order_id=order_id,
            reason=reason,
        )
        return IngestResult(outcome="listing_unavailable", order_id=order_id, detail=reason)

    def _record_awaiting_payment(
        self,
        session: CheckoutSession,
        meta: CheckoutMetadata,
        order_id: str,
        *,
        now: datetime,
    ) -> IngestResult:
        split = self._fee_split(session, meta)
        order_ref = self._store.order_ref(order_id)
        listing_ref = self._store.listing_ref(meta.listing_id)

        def _txn(txn: Any) -> IngestResult:
            order_snap = order_ref.get(transaction=txn)
            listing_snap = listing_ref.get(transaction=txn)
            existing = (order_snap.to_dict() or {}) if order_snap.exists else {}
            status = str(existing.get("status") or "")
            if status in models.SETTLED_STATUSES:
                return IngestResult(outcome="duplicate", order_id=order_id)
            if status == "cancelled":
                return IngestResult(outcome="noop_not_pending", order_id=order_id, detail="cancelled")

            order = Order(
                order_id=order_id,
                listing_id=meta.listing_id,
                buyer_id=meta.buyer_id,
                seller_id=meta.seller_id,
                status="pending",
                amount_cents=split.amount_cents,
                platform_fee_cents=split.platform_fee_cents,
                seller_amount_cents=split.seller_amount_cents,
                quantity=meta.quantity,
                transaction_status=models.TX_PENDING_PAYMENT,
                payout_hold_reason="none",
                reservation_expires_at=None,
                checkout_session_id=session.id,
                payment_intent_id=session.payment_intent,
                seller_payout_account_id=meta.seller_payout_account_id,
                created_at=existing.get("created_at") or now,
            )
            doc = order.to_firestore()
            doc.update(
                {
                    "fee_source": split.source,
                    "platform_fee_percent": meta.platform_fee_percent,
                    "seller_tier_snapshot": meta.seller_tier_snapshot,
                    "checkout_payment_status": session.payment_status,
                    "updated_at": now,
                }
            )
            # The hold now lasts until the gateway reports the delayed payment's result.
            self._listings.stage_pin_hold(
                txn,
                listing_id=meta.listing_id,
                order_id=order_id,
                listing_data=listing_snap.to_dict() if listing_snap.exists else None,
                now=now,
            )
            if order_snap.exists:
                txn.set(order_ref, doc, merge=True)
            else:
                txn.create(order_ref, doc)
            return IngestResult(outcome="awaiting_payment", order_id=order_id)

        result = self._store.run_transaction(_txn)
        log_event(
            logger,
            "webhook.awaiting_payment" if result.outcome == "awaiting_payment" else "webhook.duplicate",
            checkout_session_id=session.id,
            order_id=order_id,
            listing_id=meta.listing_id,
            payment_status=session.payment_status,
            outcome=result.outcome,
        )
        return result

    def _emit_order_created(
        self,
        session: CheckoutSession,
        meta: CheckoutMetadata,
        order_id: str,
        split: FeeSplit,
        listing: Listing,
    ) -> None:
        payload = {
            "order_id": order_id,
            "listing_id": meta.listing_id,
            "listing_title": listing.title,
            "amount_cents": split.amount_cents,
            "quantity": meta.quantity,
        }
        for role, uid in (("buyer", meta.buyer_id), ("seller", meta.seller_id)):
            self._pipeline.try_emit(
                event_type=events.ORDER_CREATED,
                entity_type="order",
                entity_id=order_id,
                target_user_id=uid,
                payload={**payload, "role": role},
                optional_hash=f"checkout:{session.id}",
                actor_id=meta.buyer_id,
            )

    # ---- region violation ----

    def _refund_region_violation(
        self,
        session: CheckoutSession,
        meta: CheckoutMetadata,
        order_id: str,
        split: FeeSplit,
        listing: Listing,
        resolution: RegionResolution,
        *,
        now: datetime,
    ) -> IngestResult:
        buyer_region = resolution.region or "NOT_FOUND"
        for existing_id, data in self._ledger.find_by_checkout_session(session.id):
            if data.get("status") == "refunded":
                log_event(logger, "compliance.refund_duplicate", checkout_session_id=session.id, order_id=existing_id)
                return IngestResult(outcome="duplicate_refund", order_id=existing_id, refund_id=data.get("refund_id"))

        if not session.payment_intent:
            raise BusinessRuleViolation(
                "missing_payment_intent", f"checkout session {session.id} cannot be refunded without a payment intent"
            )

        log_event(
            logger,
            "compliance.region_violation",
            severity="WARNING",
            checkout_session_id=session.id,
            listing_id=listing.listing_id,
            category=listing.category,
            buyer_region=buyer_region,
            source=resolution.source,
        )
        refund = self._gateway.create_refund(
            payment_intent_id=session.payment_intent,
            idempotency_key=refund_key_compliance(session.id),
            metadata={
                "reason": "region_violation",
                "listing_id": listing.listing_id,
                "buyer_id": meta.buyer_id,
                "buyer_region": buyer_region,
            },
        )

        order_ref = self._store.order_ref(order_id)
        listing_ref = self._store.listing_ref(listing.listing_id)
        res_ref = self._store.purchase_reservation_ref(listing.listing_id, order_id)
        reason = f"Regulated category requires a buyer in the allowed region. Buyer region: {buyer_region}"

        def _txn(txn: Any) -> IngestResult:
            order_snap = order_ref.get(transaction=txn)
            listing_snap = listing_ref.get(transaction=txn)
            res_snap = res_ref.get(transaction=txn)
            existing = (order_snap.to_dict() or {}) if order_snap.exists else {}
            if existing.get("status") == "refunded":
                return IngestResult(outcome="duplicate_refund", order_id=order_id, refund_id=existing.get("refund_id"))

            audit = Order(
                order_id=order_id,
                listing_id=listing.listing_id,
                buyer_id=meta.buyer_id,
                seller_id=meta.seller_id,
                status="refunded",
                amount_cents=split.amount_cents,
                platform_fee_cents=split.platform_fee_cents,
                seller_amount_cents=split.seller_amount_cents,
                quantity=meta.quantity,
                transaction_status=models.TX_REFUNDED,
                payout_hold_reason="none",
                checkout_session_id=session.id,
                payment_intent_id=session.payment_intent,
                seller_payout_account_id=meta.seller_payout_account_id,
                refund_amount_cents=refund.amount_cents if refund.amount_cents is not None else split.amount_cents,
                refund_id=refund.id,
                created_at=existing.get("created_at") or now,
            )
            doc = audit.to_firestore()
            doc.update(
                {
                    "compliance_violation": True,
                    "compliance_violation_reason": reason,
                    "buyer_region": resolution.region,
                    "buyer_region_source": resolution.source,
                    "refunded_at": now,
                    "refunded_by": "system",
                    "updated_at": now,
                }
            )
            # Give back any inventory hold; listing status is left as is.
            self._listings.stage_release(
                txn,
                listing_id=listing.listing_id,
                order_id=order_id,
                listing_data=listing_snap.to_dict() if listing_snap.exists else None,
                reservation_data=res_snap.to_dict() if res_snap.exists else None,
            )
            txn.set(order_ref, doc)
            return IngestResult(outcome="refunded_compliance", order_id=order_id, refund_id=refund.id)

        result = self._store.run_transaction(_txn)
        log_event(
            logger,
            "audit.order_refunded_region_violation",
            severity="WARNING",
            checkout_session_id=session.id,
            order_id=order_id,
            refund_id=refund.id,
            listing_id=listing.listing_id,
            buyer_region=buyer_region,
        )
        return result

    # ---- expired ----

    def handle_checkout_expired(
        self,
        payload: Union[CheckoutSession, Mapping[str, Any]],
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Cancel the abandoned order and give its inventory hold back."""
        return self._cancel_for_session(_parse(payload), reason="checkout_expired", now=now)

    def _cancel_for_session(self, session: CheckoutSession, *, reason: str, now: Optional[datetime]) -> IngestResult:
        meta = session.checkout_metadata()
        order_id = meta.order_id
        if not order_id:
            found = self._ledger.find_by_checkout_session(session.id, limit=1)
            order_id = found[0][0] if found else order_id_for_checkout_session(session.id)

        cancel = self._ledger.cancel_order(order_id, reason=reason, now=now)
        if cancel.outcome == "noop_missing":
            self._listings.release_reservation(listing_id=meta.listing_id, order_id=order_id)
        log_event(
            logger,
            f"webhook.{reason}",
            severity="WARNING" if cancel.outcome == "noop_not_pending" else "INFO",
            checkout_session_id=session.id,
            order_id=order_id,
            outcome=cancel.outcome,
        )
        return IngestResult(outcome=cancel.outcome, order_id=order_id)


def _parse(payload: Union[CheckoutSession, Mapping[str, Any]]) -> CheckoutSession:
    return payload if isinstance(payload, CheckoutSession) else parse_checkout_session(dict(payload))
