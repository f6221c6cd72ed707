from __future__ import annotations

from datetime import timedelta

import pytest

from ranchmarket.common.errors import NotFoundError, ReservationRejected, ValidationError
from ranchmarket.listings.availability import ListingAvailabilityController, plan_release
from tests.factories import listing_doc, order_doc


def test_legacy_reserve_sets_pointer_and_stamps_order(store, db, now) -> None:
    db.put("listings/L1", listing_doc())
    db.put("orders/o1", order_doc(status="pending"))
    controller = ListingAvailabilityController(store, hold_minutes=20)

    hold = controller.reserve_for_checkout(listing_id="L1", order_id="o1", now=now)

    assert hold.kind == "legacy"
    assert hold.expires_at == now + timedelta(minutes=20)
    listing = db.read("listings/L1")
    assert listing["purchase_reserved_by_order_id"] == "o1"
    assert listing["purchase_reserved_until"] == now + timedelta(minutes=20)
    assert db.read("orders/o1")["reservation_expires_at"] == hold.expires_at


def test_legacy_slot_held_by_other_order_is_rejected(store, db, now) -> None:
    db.put("listings/L1", listing_doc())
    controller = ListingAvailabilityController(store)
    controller.reserve_for_checkout(listing_id="L1", order_id="o1", now=now)

    with pytest.raises(ReservationRejected) as exc:
        controller.reserve_for_checkout(listing_id="L1", order_id="o2", now=now + timedelta(minutes=5))
    assert exc.value.code == "reservation_held"

    # Expired holds can be taken over.
    hold = controller.reserve_for_checkout(listing_id="L1", order_id="o2", now=now + timedelta(minutes=30))
    assert hold.order_id == "o2"
    assert db.read("listings/L1")["purchase_reserved_by_order_id"] == "o2"


def test_reserve_rejects_inactive_listing(store, db, now) -> None:
    db.put("listings/L1", listing_doc(status="sold"))
    with pytest.raises(ReservationRejected) as exc:
        ListingAvailabilityController(store).reserve_for_checkout(listing_id="L1", order_id="o1", now=now)
    assert exc.value.code == "listing_unavailable"


def test_reserve_missing_listing(store, now) -> None:
    with pytest.raises(NotFoundError):
        ListingAvailabilityController(store).reserve_for_checkout(listing_id="nope", order_id="o1", now=now)


def test_quantity_reserve_uses_ledger(store, db, now) -> None:
    db.put("listings/L1", listing_doc(quantity_total=5))
    controller = ListingAvailabilityController(store)

    hold = controller.reserve_for_checkout(listing_id="L1", order_id="o1", quantity=3, now=now)

    assert hold.kind == "quantity"
    assert db.read("listings/L1")["quantity_available"] == 2
    res = db.read("listings/L1/purchase_reservations/o1")
    assert res["quantity"] == 3
    assert "purchase_reserved_by_order_id" not in db.read("listings/L1")

    with pytest.raises(ReservationRejected) as exc:
        controller.reserve_for_checkout(listing_id="L1", order_id="o2", quantity=3, now=now)
    assert exc.value.code == "insufficient_quantity"
    assert db.read("listings/L1")["quantity_available"] == 2


def test_quantity_re_reserve_extends_without_double_counting(store, db, now) -> None:
    db.put("listings/L1", listing_doc(quantity_total=5))
    controller = ListingAvailabilityController(store, hold_minutes=20)
    controller.reserve_for_checkout(listing_id="L1", order_id="o1", quantity=2, now=now)

    hold = controller.reserve_for_checkout(listing_id="L1", order_id="o1", quantity=2, now=now + timedelta(minutes=10))

    assert hold.expires_at == now + timedelta(minutes=30)
    assert db.read("listings/L1")["quantity_available"] == 3


def test_release_restores_quantity_exactly_once(store, db, now) -> None:
    db.put("listings/L1", listing_doc(quantity_total=4))
    controller = ListingAvailabilityController(store)
    controller.reserve_for_checkout(listing_id="L1", order_id="o1", quantity=2, now=now)

    first = controller.release_reservation(listing_id="L1", order_id="o1")
    second = controller.release_reservation(listing_id="L1", order_id="o1")

    assert first.restored_quantity == 2
    assert second.changed is False
    assert db.read("listings/L1")["quantity_available"] == 4
    assert db.read("listings/L1/purchase_reservations/o1") is None


def test_release_clears_legacy_pointer_only_for_holder() -> None:
    listing = {"purchase_reserved_by_order_id": "o1", "status": "active"}

    other = plan_release(listing_data=listing, order_id="o2", reservation_data=None)
    holder = plan_release(listing_data=listing, order_id="o1", reservation_data=None)

    assert other.changed is False
    assert holder.legacy_cleared is True
    assert holder.listing_patch["purchase_reserved_by_order_id"] is None


def test_double_favorite_add_counts_once(store, db) -> None:
    db.put("listings/L1", listing_doc())
    controller = ListingAvailabilityController(store)
    racing = []
    db.before_commit = lambda: racing.append(controller.toggle_favorite(uid="u1", listing_id="L1", action="add"))

    first = controller.toggle_favorite(uid="u1", listing_id="L1", action="add")

    assert (racing[0].state, first.state) == ("added", "unchanged")
    assert first.favorites == 1
    assert db.read("listings/L1")["metrics"]["favorites"] == 1
    assert db.paths("users/u1/watchlist") == ["users/u1/watchlist/L1"]
    assert controller.toggle_favorite(uid="u1", listing_id="L1", action="add").state == "unchanged"
    assert db.read("listings/L1")["metrics"]["favorites"] == 1


def test_favorite_remove_never_goes_negative(store, db) -> None:
    db.put("listings/L1", listing_doc())
    db.put("users/u1/watchlist/L1", {"listing_id": "L1"})
    controller = ListingAvailabilityController(store)

    result = controller.toggle_favorite(uid="u1", listing_id="L1", action="remove")

    assert result.state == "removed"
    assert result.favorites == 0
    assert db.read("listings/L1")["metrics"]["favorites"] == 0
    assert controller.toggle_favorite(uid="u1", listing_id="L1", action="remove").state == "unchanged"


def test_favorite_rejects_unknown_action(store, db) -> None:
    db.put("listings/L1", listing_doc())
    with pytest.raises(ValidationError):
        ListingAvailabilityController(store).toggle_favorite(uid="u1", listing_id="L1", action="toggle")  # type: ignore[arg-type]
