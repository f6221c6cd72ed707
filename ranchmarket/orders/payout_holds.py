from __future__ import annotations

"""
Payout-hold release sweep.

Paid orders whose buyer-protection window has ended without an active dispute
move from payout_hold_reason=protection_window to none and are flagged
READY_TO_RELEASE. Admin holds and open disputes are never released here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import as_utc, is_due, utc_now
from ranchmarket.jobs.runner import SweepReport, TimeBudget
from ranchmarket.notifications import models as events
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.orders import models
from ranchmarket.orders.models import Order
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReleaseResult:
    order_id: str
    outcome: str
    seller_id: Optional[str] = None


def release_blocker(order: Order, *, now: datetime) -> Optional[str]:
    """Returns the no-op outcome that keeps the hold in place, or None when it can be released."""
    if order.status != "paid":
        return "noop_not_paid"
    if order.payout_hold_reason != "protection_window":
        return "noop_not_protection_hold"
    if order.dispute.is_active:
        return "noop_dispute_active"
    if order.protection_ends_at is None or order.protection_ends_at > now:
        return "noop_window_open"
    return None


class PayoutHoldReleaser:
    JOB_NAME = "release_payout_holds"

    def __init__(
        self,
        store: DocumentStore,
        *,
        pipeline: Optional[NotificationPipeline] = None,
        max_per_run: int = 200,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._max = max(1, int(max_per_run))

    def _due_rows(self, now: datetime) -> list[Any]:
        orders = self._store.collection(schema.COLLECTION_ORDERS)
        n = self._max
        return self._store.query_with_fallback(
            label="orders.protection_window_by_protection_ends_at",
            primary=lambda: orders.where("payout_hold_reason", "==", "protection_window")
            .where("protection_ends_at", "<=", now)
            .order_by("protection_ends_at")
            .limit(n),
            fallback=lambda: orders.where("payout_hold_reason", "==", "protection_window").limit(n * 4),
            keep=lambda d: is_due(d.get("protection_ends_at"), now),
            sort_key=lambda d: as_utc(d.get("protection_ends_at")),
            limit=n,
        )

    def run(self, budget: TimeBudget, *, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport(job=self.JOB_NAME)
        for snap in self._due_rows(now):
            if budget.exhausted:
                report.budget_exhausted = True
                break
            report.scanned += 1
            try:
                result = self.release(snap.id, now=now)
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
                continue
            report.count(result.outcome)
            if result.outcome == "released":
                report.processed += 1
        return report

    def release(self, order_id: str, *, now: Optional[datetime] = None) -> ReleaseResult:
        now = now or utc_now()
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> ReleaseResult:
            snap = order_ref.get(transaction=txn)
            if not snap.exists:
                return ReleaseResult(order_id=order_id, outcome="noop_missing")
            order = Order.from_firestore(order_id, snap.to_dict() or {})
            blocker = release_blocker(order, now=now)
            if blocker is not None:
                return ReleaseResult(order_id=order_id, outcome=blocker)
            txn.update(
                order_ref,
                {
                    "payout_hold_reason": "none",
                    "transaction_status": models.TX_READY_TO_RELEASE,
                    "payout_hold_released_at": now,
                    "updated_at": now,
                },
            )
            return ReleaseResult(order_id=order_id, outcome="released", seller_id=order.seller_id)

        result = self._store.run_transaction(_txn)
        if result.outcome == "released":
            log_event(logger, "order.payout_hold_released", order_id=order_id)
            if self._pipeline is not None and result.seller_id:
                self._pipeline.try_emit(
                    event_type=events.ORDER_PAYOUT_RELEASED,
                    entity_type="order",
                    entity_id=order_id,
                    target_user_id=result.seller_id,
                    payload={"order_id": order_id},
                )
        return result
