from __future__ import annotations

"""
Auction Expiry & Relist Scheduler.

Scans auction_results in ended_winner_pending_payment whose payment_due_at has
passed. Per record, in one transaction:
- re-read the record (no-op if it is no longer pending or not yet due)
- original listing missing -> ended_unpaid_expired
- otherwise create a NEW listing (fresh id, so bid history never leaks across
  cycles) with the same auction duration, clear the old listing's reservation
  pointer and mark the record ended_relisted

Old listings and bids are never deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping, Optional

from ranchmarket.auctions.models import PENDING_PAYMENT, RELISTED, UNPAID_EXPIRED, AuctionResult
from ranchmarket.common.errors import ValidationError
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import as_utc, is_due, utc_now
from ranchmarket.jobs.runner import SweepReport, TimeBudget
from ranchmarket.listings.models import LEGACY_RESERVATION_CLEARED, RELIST_COPY_FIELDS, ListingMetrics
from ranchmarket.notifications import models as events
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

RelistOutcome = Literal["relisted", "expired_only", "noop_missing_result", "noop_not_pending", "noop_not_due"]


@dataclass(frozen=True, slots=True)
class RelistResult:
    listing_id: str
    outcome: RelistOutcome
    new_listing_id: Optional[str] = None
    seller_id: Optional[str] = None


def auction_duration(listing_data: Mapping[str, Any]) -> timedelta:
    """end_at - (published_at or created_at); raises when it cannot be derived."""
    end_at = as_utc(listing_data.get("end_at"))
    start = as_utc(listing_data.get("published_at")) or as_utc(listing_data.get("created_at"))
    if end_at is None or start is None or end_at <= start:
        raise ValidationError("cannot compute original auction duration")
    return end_at - start


def build_relisted_listing(
    listing_data: Mapping[str, Any],
    *,
    old_listing_id: str,
    duration: timedelta,
    now: datetime,
) -> dict[str, Any]:
    """
    New listing document for the next auction cycle: descriptive fields are copied,
    bid/reservation/metric state starts empty.
    """
    doc: dict[str, Any] = {k: listing_data[k] for k in RELIST_COPY_FIELDS if listing_data.get(k) is not None}
    doc.update(
        {
            "type": "auction",
            "status": "active",
            "published_at": now,
            "end_at": now + duration,
            "current_bid_cents": None,
            "current_bidder_id": None,
            "metrics": ListingMetrics().to_firestore(),
            "relisted_from_listing_id": old_listing_id,
            "created_at": now,
            "updated_at": now,
            "updated_by": "system",
        }
    )
    doc.update(LEGACY_RESERVATION_CLEARED)
    if doc.get("quantity_total") is not None:
        doc["quantity_available"] = doc["quantity_total"]
    return doc


class AuctionRelistScheduler:
    JOB_NAME = "expire_unpaid_auctions"

    def __init__(
        self,
        store: DocumentStore,
        *,
        pipeline: Optional[NotificationPipeline] = None,
        max_per_run: int = 50,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._max = max(1, int(max_per_run))

    def _due_rows(self, now: datetime) -> list[Any]:
        results = self._store.collection(schema.COLLECTION_AUCTION_RESULTS)
        n = self._max
        return self._store.query_with_fallback(
            label="auction_results.pending_by_payment_due_at",
            primary=lambda: results.where("status", "==", PENDING_PAYMENT)
            .where("payment_due_at", "<=", now)
            .order_by("payment_due_at")
            .limit(n),
            fallback=lambda: results.where("status", "==", PENDING_PAYMENT).limit(n * 4),
            keep=lambda d: is_due(d.get("payment_due_at"), now),
            sort_key=lambda d: as_utc(d.get("payment_due_at")),
            limit=n,
        )

    def run(self, budget: TimeBudget, *, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport(job=self.JOB_NAME)
        for snap in self._due_rows(now):
            if budget.exhausted:
                report.budget_exhausted = True
                log_event(logger, "auction.relist_budget_exhausted", severity="WARNING", scanned=report.scanned)
                break
            report.scanned += 1
            try:
                result = self.process_result(snap.id, now=now)
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
                continue
            report.count(result.outcome)
            if result.outcome in ("relisted", "expired_only"):
                report.processed += 1
        return report

    def process_result(self, listing_id: str, *, now: Optional[datetime] = None) -> RelistResult:
        now = now or utc_now()
        result_ref = self._store.auction_result_ref(listing_id)
        old_ref = self._store.listing_ref(listing_id)
        new_ref = self._store.new_listing_ref()

        def _txn(txn: Any) -> RelistResult:
            result_snap = result_ref.get(transaction=txn)
            listing_snap = old_ref.get(transaction=txn)
            if not result_snap.exists:
                return RelistResult(listing_id=listing_id, outcome="noop_missing_result")
            result = AuctionResult.from_firestore(listing_id, result_snap.to_dict() or {})
            if result.status != PENDING_PAYMENT:
                return RelistResult(listing_id=listing_id, outcome="noop_not_pending")
            if not result.is_due(now=now):
                return RelistResult(listing_id=listing_id, outcome="noop_not_due")

            if not listing_snap.exists:
                txn.set(
                    result_ref,
                    {"status": UNPAID_EXPIRED, "unpaid_expired_at": now, "updated_at": now},
                    merge=True,
                )
                return RelistResult(listing_id=listing_id, outcome="expired_only", seller_id=result.seller_id)

            listing = listing_snap.to_dict() or {}
            seller_id = str(listing.get("seller_id") or result.seller_id or "").strip()
            if not seller_id:
                raise ValidationError(f"listing {listing_id} has no seller_id")
            doc = build_relisted_listing(listing, old_listing_id=listing_id, duration=auction_duration(listing), now=now)
            doc["seller_id"] = seller_id

            txn.set(new_ref, doc)
            txn.set(
                old_ref,
                {**LEGACY_RESERVATION_CLEARED, "relisted_to_listing_id": new_ref.id, "updated_at": now, "updated_by": "system"},
                merge=True,
            )
            txn.set(
                result_ref,
                {
                    "status": RELISTED,
                    "unpaid_expired_at": now,
                    "relisted_to_listing_id": new_ref.id,
                    "relisted_at": now,
                    "updated_at": now,
                },
                merge=True,
            )
            return RelistResult(listing_id=listing_id, outcome="relisted", new_listing_id=new_ref.id, seller_id=seller_id)

        outcome = self._store.run_transaction(_txn)
        if outcome.outcome == "relisted":
            log_event(logger, "auction.relisted", listing_id=listing_id, new_listing_id=outcome.new_listing_id)
            self._notify(outcome)
        elif outcome.outcome == "expired_only":
            log_event(logger, "auction.unpaid_expired", severity="WARNING", listing_id=listing_id)
        return outcome

    def _notify(self, outcome: RelistResult) -> None:
        if self._pipeline is None or not outcome.seller_id:
            return
        self._pipeline.try_emit(
            event_type=events.AUCTION_RELISTED,
            entity_type="listing",
            entity_id=outcome.listing_id,
            target_user_id=outcome.seller_id,
            payload={"listing_id": outcome.listing_id, "new_listing_id": outcome.new_listing_id},
            optional_hash=f"relist:{outcome.new_listing_id}",
        )
