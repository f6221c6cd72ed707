from __future__ import annotations

from datetime import timedelta

import pytest

from ranchmarket.common.errors import BusinessRuleViolation
from ranchmarket.jobs.runner import TimeBudget
from ranchmarket.notifications import models as events
from tests.factories import delivered_order_doc, order_doc


def _budget() -> TimeBudget:
    return TimeBudget(60, clock=lambda: 0.0)


def test_confirm_delivery_starts_protection_window(services, db, now) -> None:
    db.put("orders/o1", order_doc(protected_transaction_days=7, payout_hold_reason="protection_window"))

    order = services.ledger.confirm_delivery("o1", now=now)
    again = services.ledger.confirm_delivery("o1", now=now + timedelta(days=1))

    assert order.protection_ends_at == now + timedelta(days=7)
    assert again.delivery_confirmed_at == now
    stored = db.read("orders/o1")
    assert stored["transaction_status"] == "DELIVERED"
    assert stored["protection_ends_at"] == now + timedelta(days=7)


def test_confirm_delivery_requires_paid_order(services, db, now) -> None:
    db.put("orders/o1", order_doc(status="pending"))
    with pytest.raises(BusinessRuleViolation) as exc:
        services.ledger.confirm_delivery("o1", now=now)
    assert exc.value.code == "order_not_paid"


def test_admin_hold_round_trip_restores_previous_reason(services, db, now) -> None:
    db.put("orders/o1", order_doc(payout_hold_reason="protection_window"))

    held = services.ledger.set_admin_hold("o1", hold=True, note="permit check", now=now)
    released = services.ledger.set_admin_hold("o1", hold=False, now=now)

    assert held.payout_hold_reason == "admin_hold"
    assert released.payout_hold_reason == "protection_window"
    assert db.read("orders/o1")["admin_hold_note"] == "permit check"


def test_cancel_paid_order_is_a_noop(services, db, now) -> None:
    db.put("orders/o1", order_doc(status="paid"))
    result = services.ledger.cancel_order("o1", reason="buyer_cancelled", now=now)
    assert result.outcome == "noop_not_pending"
    assert db.read("orders/o1")["status"] == "paid"


def test_payout_hold_released_after_protection_window(services, db, now) -> None:
    db.put("orders/o_due", delivered_order_doc(delivered_at=now - timedelta(days=15)))
    db.put("orders/o_open", delivered_order_doc(delivered_at=now - timedelta(days=3)))
    db.put(
        "orders/o_disputed",
        delivered_order_doc(delivered_at=now - timedelta(days=20), dispute={"status": "open", "reason": "injury"}),
    )

    report = services.payouts.run(_budget(), now=now)

    assert report.outcomes == {"released": 1, "noop_dispute_active": 1}
    due = db.read("orders/o_due")
    assert due["payout_hold_reason"] == "none"
    assert due["transaction_status"] == "READY_TO_RELEASE"
    assert db.read("orders/o_open")["payout_hold_reason"] == "protection_window"
    assert db.read("orders/o_disputed")["payout_hold_reason"] == "protection_window"
    released = [db.read(p) for p in db.paths("events")]
    assert [(e["type"], e["target_user_id"]) for e in released] == [(events.ORDER_PAYOUT_RELEASED, "seller_1")]


def test_fulfillment_reminder_once_per_day(services, db, now) -> None:
    db.put("orders/o_stale", order_doc(transaction_status="FULFILLMENT_REQUIRED", paid_at=now - timedelta(days=3)))
    db.put("orders/o_fresh", order_doc(transaction_status="FULFILLMENT_REQUIRED", paid_at=now - timedelta(hours=5)))
    db.put("orders/o_delivered", order_doc(transaction_status="DELIVERED", paid_at=now - timedelta(days=4)))

    first = services.reminders.run(_budget(), now=now)
    second = services.reminders.run(_budget(), now=now + timedelta(hours=2))
    next_day = services.reminders.run(_budget(), now=now + timedelta(days=1))

    assert first.outcomes == {"reminded": 1, "noop_not_stalled": 1}
    assert second.outcomes.get("duplicate") == 1
    assert "reminded" not in second.outcomes
    assert next_day.outcomes.get("reminded") == 1
    reminders = [db.read(p) for p in db.paths("events")]
    assert {e["entity_id"] for e in reminders} == {"o_stale"}
    assert len(reminders) == 2


def test_fulfillment_reminders_survive_missing_index(services, db, now) -> None:
    db.put("orders/o_stale", order_doc(transaction_status="AWAITING_TRANSFER_COMPLIANCE", paid_at=now - timedelta(days=3)))
    db.missing_indexes.add("orders")

    report = services.reminders.run(_budget(), now=now)

    assert report.outcomes == {"reminded": 1}
