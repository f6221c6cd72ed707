from __future__ import annotations

"""
Daily fulfillment reminders for sellers.

A paid order still waiting on the seller (FULFILLMENT_REQUIRED or
AWAITING_TRANSFER_COMPLIANCE) for longer than the stale threshold produces one
Order.FulfillmentReminder per order per UTC day; the date is part of the dedupe
key, so re-running the job on the same day emits nothing new.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import as_utc, utc_day, utc_now
from ranchmarket.jobs.runner import SweepReport, TimeBudget
from ranchmarket.notifications import models as events
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.orders import models
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

STALLED_STATES: tuple[str, ...] = (models.TX_FULFILLMENT_REQUIRED, models.TX_AWAITING_TRANSFER_COMPLIANCE)


def is_stalled(data: Mapping[str, Any], *, cutoff: datetime) -> bool:
    if data.get("status") != "paid" or data.get("transaction_status") not in STALLED_STATES:
        return False
    paid_at = as_utc(data.get("paid_at")) or as_utc(data.get("created_at"))
    return paid_at is not None and paid_at <= cutoff


class FulfillmentReminderJob:
    JOB_NAME = "send_fulfillment_reminders"

    def __init__(
        self,
        store: DocumentStore,
        pipeline: NotificationPipeline,
        *,
        stale_hours: int = 48,
        max_per_run: int = 200,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._stale = timedelta(hours=int(stale_hours))
        self._max = max(1, int(max_per_run))

    def _stalled_rows(self, cutoff: datetime) -> list[Any]:
        orders = self._store.collection(schema.COLLECTION_ORDERS)
        n = self._max
        return self._store.query_with_fallback(
            label="orders.paid_by_paid_at",
            primary=lambda: orders.where("status", "==", "paid")
            .where("paid_at", "<=", cutoff)
            .order_by("paid_at")
            .limit(n * 2),
            fallback=lambda: orders.where("status", "==", "paid").limit(n * 4),
            keep=lambda d: is_stalled(d, cutoff=cutoff),
            sort_key=lambda d: as_utc(d.get("paid_at")),
            limit=n * 2,
        )

    def run(self, budget: TimeBudget, *, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        cutoff = now - self._stale
        day = utc_day(now)
        report = SweepReport(job=self.JOB_NAME)
        for snap in self._stalled_rows(cutoff):
            if report.processed >= self._max:
                break
            if budget.exhausted:
                report.budget_exhausted = True
                break
            report.scanned += 1
            data = snap.to_dict() or {}
            if not is_stalled(data, cutoff=cutoff):
                report.count("noop_not_stalled")
                continue
            seller_id = str(data.get("seller_id") or "").strip()
            if not seller_id:
                report.count("noop_no_seller")
                continue
            try:
                paid_at = as_utc(data.get("paid_at"))
                result = self._pipeline.emit(
                    event_type=events.ORDER_FULFILLMENT_REMINDER,
                    entity_type="order",
                    entity_id=snap.id,
                    target_user_id=seller_id,
                    payload={
                        "order_id": snap.id,
                        "listing_id": data.get("listing_id"),
                        "transaction_status": data.get("transaction_status"),
                        "hours_since_payment": int((now - paid_at).total_seconds() // 3600) if paid_at else None,
                    },
                    optional_hash=f"reminder:{day}",
                    actor_id="system",
                    now=now,
                )
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
                continue
            if result.created:
                report.processed += 1
                report.count("reminded")
            else:
                report.count("duplicate")
        log_event(logger, "reminders.fulfillment_sweep", day=day, reminded=report.processed, scanned=report.scanned)
        return report
