from __future__ import annotations

"""
Order Ledger: reads and non-dispute transitions of orders/{order_id}.

Terminal statuses (completed, refunded, cancelled) are never left. Orders are
never deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from ranchmarket.common.errors import BusinessRuleViolation, NotFoundError
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.listings.availability import ListingAvailabilityController
from ranchmarket.orders import models
from ranchmarket.orders.models import Order
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

CancelOutcome = Literal["cancelled", "noop_missing", "noop_not_pending"]


@dataclass(frozen=True, slots=True)
class CancelResult:
    order_id: str
    outcome: CancelOutcome
    restored_quantity: int = 0
    legacy_cleared: bool = False


def cancellation_patch(*, now: datetime, reason: str) -> dict[str, Any]:
    return {
        "status": "cancelled",
        "transaction_status": models.TX_CANCELLED,
        "cancelled_at": now,
        "cancel_reason": reason,
        "reservation_expires_at": None,
        "updated_at": now,
    }


class OrderLedger:
    def __init__(self, store: DocumentStore, listings: ListingAvailabilityController) -> None:
        self._store = store
        self._listings = listings

    def get(self, order_id: str) -> Order:
        data = self._store.get(self._store.order_ref(order_id))
        if data is None:
            raise NotFoundError(f"order {order_id} not found")
        return Order.from_firestore(order_id, data)

    def find_by_checkout_session(self, session_id: str, *, limit: int = 5) -> list[tuple[str, dict[str, Any]]]:
        q = (
            self._store.collection(schema.COLLECTION_ORDERS)
            .where("checkout_session_id", "==", str(session_id))
            .limit(int(limit))
        )
        return [(s.id, s.to_dict() or {}) for s in self._store.stream(q)]

    def cancel_order(self, order_id: str, *, reason: str, now: Optional[datetime] = None) -> CancelResult:
        """
        Cancel a pre-payment order and give back its inventory hold in the same
        transaction. Paid or terminal orders are left untouched.
        """
        now = now or utc_now()
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> CancelResult:
            order_snap = order_ref.get(transaction=txn)
            if not order_snap.exists:
                return CancelResult(order_id=order_id, outcome="noop_missing")
            order = Order.from_firestore(order_id, order_snap.to_dict() or {})
            if order.status not in models.PRE_PAYMENT_STATUSES:
                return CancelResult(order_id=order_id, outcome="noop_not_pending")

            listing_ref = self._store.listing_ref(order.listing_id)
            res_ref = self._store.purchase_reservation_ref(order.listing_id, order_id)
            listing_snap = listing_ref.get(transaction=txn)
            res_snap = res_ref.get(transaction=txn)

            plan = self._listings.stage_release(
                txn,
                listing_id=order.listing_id,
                order_id=order_id,
                listing_data=listing_snap.to_dict() if listing_snap.exists else None,
                reservation_data=res_snap.to_dict() if res_snap.exists else None,
            )
            txn.update(order_ref, cancellation_patch(now=now, reason=reason))
            return CancelResult(
                order_id=order_id,
                outcome="cancelled",
                restored_quantity=plan.restored_quantity,
                legacy_cleared=plan.legacy_cleared,
            )

        result = self._store.run_transaction(_txn)
        log_event(
            logger,
            "order.cancel",
            order_id=order_id,
            outcome=result.outcome,
            reason=reason,
            restored_quantity=result.restored_quantity,
        )
        return result

    def confirm_delivery(self, order_id: str, *, now: Optional[datetime] = None) -> Order:
        """
        Record delivery and start the buyer protection window (if the order has one).
        Idempotent: a second confirmation keeps the first timestamp.
        """
        now = now or utc_now()
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> Order:
            snap = order_ref.get(transaction=txn)
            if not snap.exists:
                raise NotFoundError(f"order {order_id} not found")
            order = Order.from_firestore(order_id, snap.to_dict() or {})
            if order.delivery_confirmed_at is not None:
                return order
            if order.status != "paid":
                raise BusinessRuleViolation("order_not_paid", f"order {order_id} is {order.status}")

            ends_at = None
            if order.protected_transaction_days:
                ends_at = now + timedelta(days=int(order.protected_transaction_days))
            patch = {
                "delivery_confirmed_at": now,
                "protection_ends_at": ends_at,
                "transaction_status": models.TX_DELIVERED,
                "updated_at": now,
            }
            txn.update(order_ref, patch)
            return order.with_updates(
                delivery_confirmed_at=now, protection_ends_at=ends_at, transaction_status=models.TX_DELIVERED
            )

        order = self._store.run_transaction(_txn)
        log_event(logger, "order.delivery_confirmed", order_id=order_id, protection_ends_at=order.protection_ends_at)
        return order

    def set_admin_hold(self, order_id: str, *, hold: bool, note: Optional[str] = None, now: Optional[datetime] = None) -> Order:
        """
        Freeze or unfreeze the payout. Clearing restores whatever hold applied before.
        """
        now = now or utc_now()
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> Order:
            snap = order_ref.get(transaction=txn)
            if not snap.exists:
                raise NotFoundError(f"order {order_id} not found")
            data = snap.to_dict() or {}
            order = Order.from_firestore(order_id, data)
            if order.status in ("refunded", "cancelled"):
                raise BusinessRuleViolation("order_terminal", f"order {order_id} is {order.status}")

            if hold:
                if order.payout_hold_reason == "admin_hold":
                    return order
                patch: dict[str, Any] = {
                    "payout_hold_reason": "admin_hold",
                    "previous_payout_hold_reason": order.payout_hold_reason,
                    "admin_hold_note": note,
                    "updated_at": now,
                }
            else:
                if order.payout_hold_reason != "admin_hold":
                    return order
                if order.dispute.is_active:
                    restored = "dispute_open"
                else:
                    restored = str(data.get("previous_payout_hold_reason") or "none")
                    if restored not in models.PAYOUT_HOLD_REASONS or restored == "admin_hold":
                        restored = "none"
                patch = {"payout_hold_reason": restored, "previous_payout_hold_reason": None, "updated_at": now}

            txn.update(order_ref, patch)
            return order.with_updates(payout_hold_reason=patch["payout_hold_reason"])

        order = self._store.run_transaction(_txn)
        log_event(logger, "order.admin_hold", order_id=order_id, hold=hold, payout_hold_reason=order.payout_hold_reason)
        return order
