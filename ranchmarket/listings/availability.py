from __future__ import annotations

"""
Listing Availability Controller.

Owns reservation locking and quantity accounting for listings. Every transition
is computed by a pure planner (`plan_reserve`, `plan_release`, `plan_sale`) and
then staged inside the caller's Firestore transaction, so the listing document
and its reservation sub-document are always read and written together.

Reservation precedence:
- listings with quantity_total > 1 use the per-order quantity ledger
- all other listings use the legacy single-slot pointer
- releasing always inspects both: a ledger sub-document is restored if present and
  the legacy pointer is cleared whenever it names the order being released
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping, Optional

from ranchmarket.common.errors import NotFoundError, ReservationRejected, ValidationError
from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.listings.models import LEGACY_RESERVATION_CLEARED, Listing, QuantityReservation
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)

FavoriteAction = Literal["add", "remove"]


@dataclass(frozen=True, slots=True)
class ReservePlan:
    kind: Literal["legacy", "quantity"]
    listing_patch: dict[str, Any]
    reservation: Optional[QuantityReservation]
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class ReleasePlan:
    listing_patch: dict[str, Any] = field(default_factory=dict)
    delete_reservation: bool = False
    restored_quantity: int = 0
    legacy_cleared: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.listing_patch) or self.delete_reservation


@dataclass(frozen=True, slots=True)
class SalePlan:
    listing_patch: dict[str, Any]
    delete_reservation: bool
    sold_out: bool


@dataclass(frozen=True, slots=True)
class ReservationHold:
    listing_id: str
    order_id: str
    kind: Literal["legacy", "quantity"]
    quantity: int
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class FavoriteResult:
    listing_id: str
    state: Literal["added", "removed", "unchanged"]
    favorites: int


def plan_reserve(
    *,
    listing: Listing,
    order_id: str,
    quantity: int,
    existing: Optional[QuantityReservation],
    now: datetime,
    hold_for: timedelta,
) -> ReservePlan:
    """
    Pure transition: reserve inventory on `listing` for `order_id`.

    Re-reserving for an order that already holds the slot (or a ledger entry of
    the same quantity) extends the hold without touching quantity_available.
    """
    if quantity < 1:
        raise ValidationError("quantity must be >= 1")
    if not listing.is_available:
        raise ReservationRejected("listing_unavailable", f"listing {listing.listing_id} is {listing.status}")

    expires_at = now + hold_for

    if not listing.uses_quantity_ledger:
        if quantity != 1:
            raise ReservationRejected("insufficient_quantity", "single-quantity listing")
        holder = listing.purchase_reserved_by_order_id
        if holder and holder != order_id and listing.legacy_slot_held(now=now):
            raise ReservationRejected("reservation_held", f"listing {listing.listing_id} is reserved by another order")
        return ReservePlan(
            kind="legacy",
            listing_patch={
                "purchase_reserved_by_order_id": order_id,
                "purchase_reserved_at": now,
                "purchase_reserved_until": expires_at,
            },
            reservation=None,
            expires_at=expires_at,
        )

    available = listing.quantity_available if listing.quantity_available is not None else int(listing.quantity_total or 0)
    if existing is not None:
        if existing.quantity != quantity:
            raise ReservationRejected(
                "reservation_held",
                f"order {order_id} already holds {existing.quantity} unit(s); cannot change to {quantity}",
            )
        return ReservePlan(
            kind="quantity",
            listing_patch={},
            reservation=QuantityReservation(
                order_id=order_id, quantity=quantity, created_at=existing.created_at, expires_at=expires_at
            ),
            expires_at=expires_at,
        )

    if available < quantity:
        raise ReservationRejected(
            "insufficient_quantity", f"listing {listing.listing_id} has {available} available, requested {quantity}"
        )
    return ReservePlan(
        kind="quantity",
        listing_patch={"quantity_available": available - quantity},
        reservation=QuantityReservation(order_id=order_id, quantity=quantity, created_at=now, expires_at=expires_at),
        expires_at=expires_at,
    )


def plan_release(
    *,
    listing_data: Mapping[str, Any],
    order_id: str,
    reservation_data: Optional[Mapping[str, Any]],
) -> ReleasePlan:
    """
    Pure transition: give back whatever `order_id` holds on the listing.

    Idempotent: once the ledger sub-document is gone nothing is restored again.
    """
    patch: dict[str, Any] = {}
    restored = 0
    if reservation_data is not None:
        held = QuantityReservation.from_firestore(order_id, reservation_data)
        current = listing_data.get("quantity_available")
        current_i = int(current) if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        restored = held.quantity
        patch["quantity_available"] = current_i + restored

    legacy_cleared = str(listing_data.get("purchase_reserved_by_order_id") or "") == str(order_id)
    if legacy_cleared:
        patch.update(LEGACY_RESERVATION_CLEARED)

    return ReleasePlan(
        listing_patch=patch,
        delete_reservation=reservation_data is not None,
        restored_quantity=restored,
        legacy_cleared=legacy_cleared,
    )


def plan_sale(
    *,
    listing: Listing,
    order_id: str,
    quantity: int,
    reservation_data: Optional[Mapping[str, Any]],
    now: datetime,
) -> SalePlan:
    """
    Pure transition: consume inventory for a paid order.

    Raises ReservationRejected when the listing can no longer be sold.
    """
    if not listing.is_available:
        raise ReservationRejected("listing_unavailable", f"listing {listing.listing_id} is {listing.status}")

    patch: dict[str, Any] = {}
    if listing.purchase_reserved_by_order_id == order_id or not listing.uses_quantity_ledger:
        patch.update(LEGACY_RESERVATION_CLEARED)

    if not listing.uses_quantity_ledger:
        patch.update({"status": "sold", "sold_at": now, "sold_order_id": order_id})
        if listing.quantity_available is not None:
            patch["quantity_available"] = 0
        return SalePlan(listing_patch=patch, delete_reservation=reservation_data is not None, sold_out=True)

    available = listing.quantity_available if listing.quantity_available is not None else int(listing.quantity_total or 0)
    if reservation_data is None:
        # Hold already swept: take the units now if they are still there.
        if available < quantity:
            raise ReservationRejected(
                "insufficient_quantity", f"listing {listing.listing_id} has {available} available, sold {quantity}"
            )
        available -= quantity
        patch["quantity_available"] = available

    sold_out = available <= 0
    if sold_out:
        patch.update({"status": "sold", "sold_at": now, "sold_order_id": order_id})
    return SalePlan(listing_patch=patch, delete_reservation=reservation_data is not None, sold_out=sold_out)


class ListingAvailabilityController:
    def __init__(self, store: DocumentStore, *, hold_minutes: int = 20) -> None:
        self._store = store
        self._hold = timedelta(minutes=int(hold_minutes))

    # ---- staging helpers for callers that own the transaction ----

    def stage_release(
        self,
        txn: Any,
        *,
        listing_id: str,
        order_id: str,
        listing_data: Optional[Mapping[str, Any]],
        reservation_data: Optional[Mapping[str, Any]],
    ) -> ReleasePlan:
        if listing_data is None:
            return ReleasePlan()
        plan = plan_release(listing_data=listing_data, order_id=order_id, reservation_data=reservation_data)
        if plan.listing_patch:
            txn.update(self._store.listing_ref(listing_id), plan.listing_patch)
        if plan.delete_reservation:
            txn.delete(self._store.purchase_reservation_ref(listing_id, order_id))
        return plan

    def stage_pin_hold(
        self,
        txn: Any,
        *,
        listing_id: str,
        order_id: str,
        listing_data: Optional[Mapping[str, Any]],
        now: datetime,
    ) -> bool:
        """Drop the expiry of a legacy slot held by `order_id` so sweeps leave it alone."""
        if listing_data is None or listing_data.get("purchase_reserved_by_order_id") != order_id:
            return False
        txn.update(
            self._store.listing_ref(listing_id),
            {"purchase_reserved_until": None, "updated_at": now, "updated_by": "system"},
        )
        return True

    def stage_sale(self, txn: Any, *, listing_id: str, order_id: str, plan: SalePlan) -> None:
        if plan.listing_patch:
            txn.update(self._store.listing_ref(listing_id), plan.listing_patch)
        if plan.delete_reservation:
            txn.delete(self._store.purchase_reservation_ref(listing_id, order_id))

    # ---- transactional operations ----

    def reserve_for_checkout(
        self,
        *,
        listing_id: str,
        order_id: str,
        quantity: int = 1,
        now: Optional[datetime] = None,
    ) -> ReservationHold:
        """
        Hold inventory for a pending checkout and stamp the expiry on the order.
        """
        now = now or utc_now()
        listing_ref = self._store.listing_ref(listing_id)
        res_ref = self._store.purchase_reservation_ref(listing_id, order_id)
        order_ref = self._store.order_ref(order_id)

        def _txn(txn: Any) -> ReservationHold:
            listing_snap = listing_ref.get(transaction=txn)
            res_snap = res_ref.get(transaction=txn)
            order_snap = order_ref.get(transaction=txn)
            if not listing_snap.exists:
                raise NotFoundError(f"listing {listing_id} not found")

            listing = Listing.from_firestore(listing_id, listing_snap.to_dict() or {})
            existing = QuantityReservation.from_firestore(order_id, res_snap.to_dict() or {}) if res_snap.exists else None
            plan = plan_reserve(
                listing=listing, order_id=order_id, quantity=quantity, existing=existing, now=now, hold_for=self._hold
            )

            if plan.listing_patch:
                txn.update(listing_ref, plan.listing_patch)
            if plan.reservation is not None:
                txn.set(res_ref, plan.reservation.to_firestore())
            if order_snap.exists:
                txn.update(order_ref, {"reservation_expires_at": plan.expires_at, "updated_at": now})
            return ReservationHold(
                listing_id=listing_id, order_id=order_id, kind=plan.kind, quantity=quantity, expires_at=plan.expires_at
            )

        hold = self._store.run_transaction(_txn)
        log_event(
            logger,
            "listing.reserved",
            listing_id=listing_id,
            order_id=order_id,
            kind=hold.kind,
            quantity=quantity,
            expires_at=hold.expires_at,
        )
        return hold

    def release_reservation(self, *, listing_id: str, order_id: str) -> ReleasePlan:
        """
        Cancellation-initiated release. Safe to race with the expiry sweeper:
        both re-read the ledger sub-document and only one of them can delete it.
        """
        listing_ref = self._store.listing_ref(listing_id)
        res_ref = self._store.purchase_reservation_ref(listing_id, order_id)

        def _txn(txn: Any) -> ReleasePlan:
            listing_snap = listing_ref.get(transaction=txn)
            res_snap = res_ref.get(transaction=txn)
            return self.stage_release(
                txn,
                listing_id=listing_id,
                order_id=order_id,
                listing_data=listing_snap.to_dict() if listing_snap.exists else None,
                reservation_data=res_snap.to_dict() if res_snap.exists else None,
            )

        plan = self._store.run_transaction(_txn)
        if plan.changed:
            log_event(
                logger,
                "listing.reservation_released",
                listing_id=listing_id,
                order_id=order_id,
                restored_quantity=plan.restored_quantity,
                legacy_cleared=plan.legacy_cleared,
            )
        return plan

    def toggle_favorite(self, *, uid: str, listing_id: str, action: FavoriteAction) -> FavoriteResult:
        """
        Add/remove a listing from a user's watchlist and keep metrics.favorites in step.

        Membership and counter are read in the same transaction, so repeated or
        concurrent adds change the counter at most once.
        """
        if action not in ("add", "remove"):
            raise ValidationError(f"unknown favorite action {action!r}")
        uid = str(uid or "").strip()
        if not uid:
            raise ValidationError("uid is required")

        listing_ref = self._store.listing_ref(listing_id)
        member_ref = self._store.watchlist_ref(uid, listing_id)

        def _txn(txn: Any) -> FavoriteResult:
            listing_snap = listing_ref.get(transaction=txn)
            member_snap = member_ref.get(transaction=txn)
            if not listing_snap.exists:
                raise NotFoundError(f"listing {listing_id} not found")
            favorites = Listing.from_firestore(listing_id, listing_snap.to_dict() or {}).metrics.favorites

            if action == "add":
                if member_snap.exists:
                    return FavoriteResult(listing_id=listing_id, state="unchanged", favorites=favorites)
                txn.create(member_ref, {"listing_id": listing_id, "created_at": utc_now()})
                txn.update(listing_ref, {"metrics.favorites": favorites + 1})
                return FavoriteResult(listing_id=listing_id, state="added", favorites=favorites + 1)

            if not member_snap.exists:
                return FavoriteResult(listing_id=listing_id, state="unchanged", favorites=favorites)
            new_count = max(favorites - 1, 0)
            txn.delete(member_ref)
            txn.update(listing_ref, {"metrics.favorites": new_count})
            return FavoriteResult(listing_id=listing_id, state="removed", favorites=new_count)

        return self._store.run_transaction(_txn)
