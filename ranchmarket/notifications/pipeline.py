from __future__ import annotations

"""
Notification Event Pipeline.

Emit:
  events/{sha256(dedupe_key)} is written with `create()`, so a repeated emission
  of the same logical occurrence is a no-op.

Process (claim-then-execute):
  1. transaction: re-read the event; skip if no longer pending; fail terminally
     once attempts reached the ceiling; skip if another worker claimed it within
     the lock window; otherwise bump attempts + stamp last_attempt_at (the claim)
  2. outside the transaction: deliver through the channel adapter
  3. mark processed, or record the error and leave it pending for the next run

Delivery is at-least-once.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Literal, Mapping, Optional

from ranchmarket.common.errors import NotFoundError, ValidationError
from ranchmarket.common.keys import event_dedupe_key, stable_doc_id
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.jobs.runner import SweepReport, TimeBudget
from ranchmarket.notifications.channels import ChannelAdapter, DeliveryEnvelope
from ranchmarket.notifications.models import Event, EventProcessing
from ranchmarket.persistence import schema
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

ClaimOutcome = Literal["claimed", "noop_missing", "noop_not_pending", "failed_max_attempts", "skipped_locked"]


@dataclass(frozen=True, slots=True)
class EmitResult:
    created: bool
    event_id: str
    dedupe_key: str


@dataclass(frozen=True, slots=True)
class ClaimResult:
    outcome: ClaimOutcome
    event: Optional[Event] = None


def decide_claim(
    *,
    event: Event,
    now: datetime,
    max_attempts: int,
    lock_window: timedelta,
) -> ClaimOutcome:
    """Pure claim decision for a freshly re-read event."""
    if event.status != "pending":
        return "noop_not_pending"
    if event.processing.attempts >= max_attempts:
        return "failed_max_attempts"
    last = event.processing.last_attempt_at
    if last is not None and now - last < lock_window:
        return "skipped_locked"
    return "claimed"


def _error_payload(exc: BaseException) -> dict[str, Any]:
    return {"code": str(getattr(exc, "code", None) or type(exc).__name__), "message": str(exc)[:2000]}


class NotificationPipeline:
    def __init__(
        self,
        store: DocumentStore,
        channel: ChannelAdapter,
        *,
        batch_size: int = 50,
        max_attempts: int = 5,
        lock_s: int = 120,
    ) -> None:
        self._store = store
        self._channel = channel
        self._batch_size = max(1, int(batch_size))
        self._max_attempts = max(1, int(max_attempts))
        self._lock = timedelta(seconds=int(lock_s))

    # ---- emit ----

    def emit(
        self,
        *,
        event_type: str,
        entity_type: str,
        entity_id: str,
        target_user_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        optional_hash: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EmitResult:
        """
        Write one event for one recipient. The dedupe key includes the recipient so
        the same occurrence can be addressed to several users.
        """
        dedupe_key = event_dedupe_key(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            target_user_id=target_user_id,
            optional_hash=optional_hash,
        )
        event_id = stable_doc_id(scope="event", key=dedupe_key)
        event = Event(
            event_id=event_id,
            type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            target_user_id=target_user_id,
            dedupe_key=dedupe_key,
            payload=dict(payload or {}),
            actor_id=actor_id,
            created_at=now or utc_now(),
        )
        created = self._store.create(self._store.event_ref(event_id), event.to_firestore())
        log_event(
            logger,
            "notifications.emitted" if created else "notifications.emit_duplicate",
            severity="DEBUG",
            event_id=event_id,
            notification_type=event_type,
            entity_id=entity_id,
            target_user_id=target_user_id,
        )
        return EmitResult(created=created, event_id=event_id, dedupe_key=dedupe_key)

    def emit_to_users(self, *, target_user_ids: Iterable[str], **kwargs: Any) -> list[EmitResult]:
        out: list[EmitResult] = []
        for uid in dict.fromkeys(u for u in target_user_ids if u):
            out.append(self.emit(target_user_id=uid, **kwargs))
        return out

    def try_emit(self, **kwargs: Any) -> Optional[EmitResult]:
        """
        Best-effort emission for business operations: a failure is logged and
        never propagates to the caller.
        """
        try:
            return self.emit(**kwargs)
        except Exception as e:  # noqa: BLE001
            log_event(
                logger,
                "notifications.emit_failed",
                severity="WARNING",
                exc_info=True,
                notification_type=kwargs.get("event_type"),
                entity_id=kwargs.get("entity_id"),
                error=str(e)[:500],
            )
            return None

    # ---- process ----

    def claim(self, event_id: str, *, now: Optional[datetime] = None) -> ClaimResult:
        now = now or utc_now()
        ref = self._store.event_ref(event_id)
        dead_ref = self._store.dead_letter_ref(event_id)

        def _txn(txn: Any) -> ClaimResult:
            snap = ref.get(transaction=txn)
            if not snap.exists:
                return ClaimResult(outcome="noop_missing")
            event = Event.from_firestore(event_id, snap.to_dict() or {})
            outcome = decide_claim(event=event, now=now, max_attempts=self._max_attempts, lock_window=self._lock)

            if outcome == "failed_max_attempts":
                dead_snap = dead_ref.get(transaction=txn)
                retries = int((dead_snap.to_dict() or {}).get("manual_retry_count") or 0) if dead_snap.exists else 0
                txn.update(ref, {"status": "failed", "failed_at": now})
                txn.set(dead_ref, self._dead_letter_doc(event, now=now, manual_retry_count=retries))
                return ClaimResult(outcome=outcome, event=event)
            if outcome != "claimed":
                return ClaimResult(outcome=outcome, event=event)

            processing = EventProcessing(
                attempts=event.processing.attempts + 1,
                last_attempt_at=now,
                error=event.processing.error,
            )
            txn.update(ref, {"processing": processing.to_firestore()})
            return ClaimResult(outcome="claimed", event=replace(event, processing=processing))

        return self._store.run_transaction(_txn)

    def _dead_letter_doc(self, event: Event, *, now: datetime, manual_retry_count: int = 0) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "event_type": event.type,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "target_user_id": event.target_user_id,
            "attempts": event.processing.attempts,
            "error": event.processing.error,
            "snapshot": event.to_firestore(),
            "suppressed": False,
            "manual_retry_count": int(manual_retry_count),
            "created_at": now,
        }

    def _pending_rows(self) -> list[Any]:
        events = self._store.collection(schema.COLLECTION_EVENTS)
        n = self._batch_size
        return self._store.query_with_fallback(
            label="events.pending_by_created_at",
            primary=lambda: events.where("status", "==", "pending").order_by("created_at").limit(n),
            fallback=lambda: events.where("status", "==", "pending").limit(n * 4),
            keep=lambda d: d.get("status") == "pending",
            sort_key=lambda d: (d.get("created_at") is None, d.get("created_at")),
            limit=n,
        )

    def process_pending(self, budget: TimeBudget, *, now: Optional[datetime] = None) -> SweepReport:
        report = SweepReport(job="process_notification_events")
        for snap in self._pending_rows():
            if budget.exhausted:
                report.budget_exhausted = True
                break
            report.scanned += 1
            try:
                outcome = self._process_one(snap.id, now=now or utc_now())
                report.count(outcome)
                if outcome == "processed":
                    report.processed += 1
            except Exception as e:  # noqa: BLE001
                report.record_error(snap.id, e)
        return report

    def _process_one(self, event_id: str, *, now: datetime) -> str:
        claim = self.claim(event_id, now=now)
        if claim.outcome == "failed_max_attempts":
            log_event(
                logger,
                "notifications.event_failed",
                severity="ERROR",
                event_id=event_id,
                attempts=claim.event.processing.attempts if claim.event else None,
            )
            return claim.outcome
        if claim.outcome != "claimed" or claim.event is None:
            return claim.outcome

        ref = self._store.event_ref(event_id)
        try:
            self._channel.deliver(DeliveryEnvelope.from_event(claim.event))
        except Exception as e:  # noqa: BLE001
            processing = EventProcessing(
                attempts=claim.event.processing.attempts,
                last_attempt_at=claim.event.processing.last_attempt_at,
                error=_error_payload(e),
            )
            self._store.update(ref, {"processing": processing.to_firestore()})
            log_event(
                logger,
                "notifications.delivery_failed",
                severity="WARNING",
                event_id=event_id,
                attempts=processing.attempts,
                error=str(e)[:500],
            )
            return "delivery_failed"

        self._store.update(ref, {"status": "processed", "processed_at": utc_now()})
        return "processed"

    # ---- dead letters ----

    def retry_dead_letter(self, event_id: str, *, now: Optional[datetime] = None) -> Event:
        """Re-queue a terminally failed event (admin action)."""
        now = now or utc_now()
        ref = self._store.event_ref(event_id)
        dead_ref = self._store.dead_letter_ref(event_id)

        def _txn(txn: Any) -> Event:
            snap = ref.get(transaction=txn)
            dead_snap = dead_ref.get(transaction=txn)
            if not snap.exists:
                raise NotFoundError(f"event {event_id} not found")
            event = Event.from_firestore(event_id, snap.to_dict() or {})
            if event.status != "failed":
                raise ValidationError(f"event {event_id} is {event.status}, only failed events can be retried")

            reset = EventProcessing(attempts=0, last_attempt_at=None, error=event.processing.error)
            txn.update(ref, {"status": "pending", "processing": reset.to_firestore(), "failed_at": None})
            if dead_snap.exists:
                dead = dead_snap.to_dict() or {}
                txn.update(
                    dead_ref,
                    {"manual_retry_count": int(dead.get("manual_retry_count") or 0) + 1, "last_retried_at": now},
                )
            return replace(event, status="pending", processing=reset)

        event = self._store.run_transaction(_txn)
        log_event(logger, "notifications.dead_letter_retried", event_id=event_id)
        return event
