from __future__ import annotations

from datetime import timedelta

from ranchmarket.jobs.runner import TimeBudget
from tests.factories import listing_doc, order_doc


def _frozen_budget(seconds: float) -> TimeBudget:
    return TimeBudget(seconds, clock=lambda: 0.0)


def _seed_quantity_hold(db, now, *, order_id: str = "o1", quantity: int = 2) -> None:
    db.put("listings/L1", listing_doc(quantity_total=4, quantity_available=4 - quantity))
    db.put(
        f"listings/L1/purchase_reservations/{order_id}",
        {"quantity": quantity, "created_at": now - timedelta(minutes=30), "expires_at": now - timedelta(minutes=10)},
    )
    db.put(
        f"orders/{order_id}",
        order_doc(
            status="pending",
            quantity=quantity,
            checkout_session_id="cs_test_1",
            reservation_expires_at=now - timedelta(minutes=10),
        ),
    )


def test_legacy_expiry_cancels_only_live_checkout_orders(services, db, now) -> None:
    expired = now - timedelta(minutes=1)
    db.put("listings/L1", listing_doc(purchase_reserved_by_order_id="o1", purchase_reserved_until=expired))
    db.put("listings/L2", listing_doc(purchase_reserved_by_order_id="o2", purchase_reserved_until=expired))
    db.put("orders/o1", order_doc(listing_id="L1", status="pending", checkout_session_id="cs_live_1"))
    db.put("orders/o2", order_doc(listing_id="L2", status="pending", checkout_session_id="manual_2"))

    report = services.sweeper.run(_frozen_budget(60), now=now)

    assert report.outcomes == {"cleared_and_cancelled": 1, "cleared": 1}
    assert report.processed == 2
    for listing_id in ("L1", "L2"):
        assert db.read(f"listings/{listing_id}")["purchase_reserved_by_order_id"] is None
    assert db.read("orders/o1")["status"] == "cancelled"
    assert db.read("orders/o1")["cancel_reason"] == "reservation_expired"
    assert db.read("orders/o2")["status"] == "pending"


def test_unexpired_legacy_hold_is_left_alone(services, db, now) -> None:
    db.put("listings/L1", listing_doc(purchase_reserved_by_order_id="o1", purchase_reserved_until=now + timedelta(minutes=5)))

    result = services.sweeper.clear_legacy_slot("L1", now=now)

    assert result.outcome == "noop_not_expired"
    assert db.read("listings/L1")["purchase_reserved_by_order_id"] == "o1"


def test_quantity_sweep_restores_units_and_cancels_order(services, db, now) -> None:
    _seed_quantity_hold(db, now)

    report = services.sweeper.run(_frozen_budget(60), now=now)

    assert report.outcomes == {"cleared_order": 1}
    assert db.read("listings/L1")["quantity_available"] == 4
    assert db.read("listings/L1/purchase_reservations/o1") is None
    order = db.read("orders/o1")
    assert order["status"] == "cancelled"
    assert order["reservation_expires_at"] is None


def test_sweep_racing_a_cancellation_restores_quantity_once(services, db, now) -> None:
    _seed_quantity_hold(db, now)
    cancelled = []
    db.before_commit = lambda: cancelled.append(services.ledger.cancel_order("o1", reason="buyer_cancelled", now=now))

    result = services.sweeper.expire_order_reservation("o1", now=now)

    assert cancelled[0].outcome == "cancelled"
    assert cancelled[0].restored_quantity == 2
    assert result.outcome == "noop_not_pending"
    assert db.read("listings/L1")["quantity_available"] == 4
    assert db.read("orders/o1")["cancel_reason"] == "buyer_cancelled"


def test_second_run_is_a_noop(services, db, now) -> None:
    _seed_quantity_hold(db, now)
    services.sweeper.run(_frozen_budget(60), now=now)

    report = services.sweeper.run(_frozen_budget(60), now=now + timedelta(minutes=5))

    assert report.processed == 0
    assert db.read("listings/L1")["quantity_available"] == 4


def test_missing_index_falls_back_to_in_memory_filter(services, db, now) -> None:
    _seed_quantity_hold(db, now, order_id="o1")
    db.put("orders/o_future", order_doc(status="pending", reservation_expires_at=now + timedelta(minutes=10)))
    db.missing_indexes.update({"orders", "listings"})

    report = services.sweeper.run(_frozen_budget(60), now=now)

    assert report.errors == 0
    assert report.outcomes == {"cleared_order": 1}
    assert db.read("orders/o_future")["status"] == "pending"
    assert any(q.path == "orders" and not q.orders for q in db.queries)


def test_quantity_pass_skipped_when_budget_is_low(services, db, now) -> None:
    _seed_quantity_hold(db, now)

    report = services.sweeper.run(_frozen_budget(3), now=now)

    assert report.budget_exhausted is True
    assert report.processed == 0
    assert db.read("orders/o1")["status"] == "pending"
    assert db.read("listings/L1")["quantity_available"] == 2
