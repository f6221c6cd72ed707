from __future__ import annotations

"""
Reservation Expiry Sweeper.

Two passes per run:
1. legacy slot: listings whose purchase_reserved_until has passed get the pointer
   cleared; a still-pending holding order with a live checkout session is cancelled
2. quantity ledger: pending orders whose reservation_expires_at has passed get
   their sub-document quantity restored, the sub-document deleted and the order
   cancelled, all in one transaction

The second pass only starts when enough of the time budget remains. Both passes
re-validate inside the transaction, so an overlapping run or a concurrent
cancellation cannot restore the same quantity twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import as_utc, is_due, utc_now
from ranchmarket.jobs.runner import SweepReport, TimeBudget
from ranchmarket.listings.availability import ListingAvailabilityController
from ranchmarket.listings.models import LEGACY_RESERVATION_CLEARED
from ranchmarket.orders import models
from ranchmarket.orders.ledger import cancellation_patch
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

LIVE_SESSION_PREFIX = "cs_"
CANCEL_REASON = "reservation_expired"


@dataclass(frozen=True, slots=True)
class SweepItemResult:
    item_id: str
    outcome: str
    restored_quantity: int = 0
    cancelled_order_id: Optional[str] = None


class ReservationExpirySweeper:
    JOB_NAME = "clear_expired_reservations"

    def __init__(
        self,
        store: DocumentStore,
        listings: ListingAvailabilityController,
        *,
        max_per_run: int = 200,
        quantity_min_remaining_s: float = 5.0,
    ) -> None:
        self._store = store
        self._listings = listings
        self._max = max(1, int(max_per_run))
        self._min_remaining_s = float(quantity_min_remaining_s)

    def run(self, budget: TimeBudget, *, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport(job=self.JOB_NAME)
        self.sweep_legacy(budget, report, now=now)
        if budget.remaining_s >= self._min_remaining_s:
            self.sweep_quantity(budget, report, now=now)
        else:
            report.budget_exhausted = True
            log_event(
                logger,
                "sweep.quantity_pass_skipped",
                severity="WARNING",
                remaining_s=round(budget.remaining_s, 3),
            )
        return report

    # ---- legacy single slot ----

    def _expired_listing_rows(self, now: datetime) -> list[Any]:
        listings = self._store.collection(schema.COLLECTION_LISTINGS)
        n = self._max
        return self._store.query_with_fallback(
            label="listings.purchase_reserved_until",
            primary=lambda: listings.where("purchase_reserved_until", "<=", now).order_by("purchase_reserved_until").limit(n),
            fallback=lambda: listings.where("status", "==", "active").limit(n * 4),
            keep=lambda d: is_due(d.get("purchase_reserved_until"), now),
            sort_key=lambda d: as_utc(d.get("purchase_reserved_until")),
            limit=n,
        )

    def sweep_legacy(self, budget: TimeBudget, report: SweepReport, *, now: datetime) -> None:
        for snap in self._expired_listing_rows(now):
            if budget.exhausted:
                report.budget_exhausted = True
                break
            report.scanned += 1
            try:
                result = self.clear_legacy_slot(snap.id, now=now)
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
                continue
            report.count(result.outcome)
            if result.outcome.startswith("cleared"):
                report.processed += 1

    def clear_legacy_slot(self, listing_id: str, *, now: Optional[datetime] = None) -> SweepItemResult:
        now = now or utc_now()
        listing_ref = self._store.listing_ref(listing_id)

        def _txn(txn: Any) -> SweepItemResult:
            snap = listing_ref.get(transaction=txn)
            if not snap.exists:
                return SweepItemResult(item_id=listing_id, outcome="noop_missing")
            live = snap.to_dict() or {}
            order_id = str(live.get("purchase_reserved_by_order_id") or "").strip()
            if not order_id:
                return SweepItemResult(item_id=listing_id, outcome="noop_no_order")
            if not is_due(live.get("purchase_reserved_until"), now):
                return SweepItemResult(item_id=listing_id, outcome="noop_not_expired")

            order_ref = self._store.order_ref(order_id)
            order_snap = order_ref.get(transaction=txn)
            cancel = False
            if order_snap.exists:
                order = order_snap.to_dict() or {}
                session_id = str(order.get("checkout_session_id") or "")
                cancel = order.get("status") in models.PRE_PAYMENT_STATUSES and session_id.startswith(LIVE_SESSION_PREFIX)

            if cancel:
                txn.update(order_ref, cancellation_patch(now=now, reason=CANCEL_REASON))
            txn.update(listing_ref, {**LEGACY_RESERVATION_CLEARED, "updated_at": now, "updated_by": "system"})
            return SweepItemResult(
                item_id=listing_id,
                outcome="cleared_and_cancelled" if cancel else "cleared",
                cancelled_order_id=order_id if cancel else None,
            )

        result = self._store.run_transaction(_txn)
        if result.outcome.startswith("cleared"):
            log_event(
                logger,
                "sweep.reservation_released",
                listing_id=listing_id,
                kind="legacy",
                cancelled_order_id=result.cancelled_order_id,
            )
        return result

    # ---- quantity ledger ----

    def _expired_order_rows(self, now: datetime) -> list[Any]:
        orders = self._store.collection(schema.COLLECTION_ORDERS)
        n = self._max
        return self._store.query_with_fallback(
            label="orders.pending_by_reservation_expires_at",
            primary=lambda: orders.where("status", "==", "pending")
            .where("reservation_expires_at", "<=", now)
            .order_by("reservation_expires_at")
            .limit(n),
            fallback=lambda: orders.where("status", "==", "pending").limit(n * 4),
            keep=lambda d: is_due(d.get("reservation_expires_at"), now),
            sort_key=lambda d: as_utc(d.get("reservation_expires_at")),
            limit=n,
        )

    def sweep_quantity(self, budget: TimeBudget, report: SweepReport, *, now: datetime) -> None:
        for snap in self._expired_order_rows(now):
            if budget.exhausted:
                report.budget_exhausted = True
                break
            report.scanned += 1
            try:
                result = self.expire_order_reservation(snap.id, now=now)
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
                continue
            report.count(result.outcome)
            if result.outcome == "cleared_order":
                report.processed += 1

    def expire_order_reservation(self, order_id: str, *, now: Optional[datetime] = None) -> SweepItemResult:
        now = now or utc_now()
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> SweepItemResult:
            order_snap = order_ref.get(transaction=txn)
            if not order_snap.exists:
                return SweepItemResult(item_id=order_id, outcome="noop_missing_order")
            order = order_snap.to_dict() or {}
            if order.get("status") not in models.PRE_PAYMENT_STATUSES:
                return SweepItemResult(item_id=order_id, outcome="noop_not_pending")
            if not is_due(order.get("reservation_expires_at"), now):
                return SweepItemResult(item_id=order_id, outcome="noop_not_expired")
            listing_id = str(order.get("listing_id") or "").strip()
            if not listing_id:
                return SweepItemResult(item_id=order_id, outcome="noop_no_listing")

            listing_snap = self._store.listing_ref(listing_id).get(transaction=txn)
            res_snap = self._store.purchase_reservation_ref(listing_id, order_id).get(transaction=txn)
            plan = self._listings.stage_release(
                txn,
                listing_id=listing_id,
                order_id=order_id,
                listing_data=listing_snap.to_dict() if listing_snap.exists else None,
                reservation_data=res_snap.to_dict() if res_snap.exists else None,
            )
            txn.update(order_ref, cancellation_patch(now=now, reason=CANCEL_REASON))
            return SweepItemResult(
                item_id=order_id,
                outcome="cleared_order",
                restored_quantity=plan.restored_quantity,
                cancelled_order_id=order_id,
            )

        result = self._store.run_transaction(_txn)
        if result.outcome == "cleared_order":
            log_event(
                logger,
                "sweep.reservation_released",
                order_id=order_id,
                kind="quantity",
                restored_quantity=result.restored_quantity,
            )
        return result
