from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import pytest

from ranchmarket.common.errors import ValidationError
from ranchmarket.common.keys import order_id_for_checkout_session
from ranchmarket.jobs.runner import TimeBudget
from ranchmarket.notifications import models as events
from ranchmarket.payments.gateway import PaymentIntentInfo
from tests.factories import listing_doc, order_doc


def _session(
    *,
    session_id: str = "cs_test_1",
    payment_intent: Optional[str] = "pi_1",
    amount_total: int = 100_000,
    state: Optional[str] = "TX",
    payment_status: str = "paid",
    **metadata: Any,
) -> dict[str, Any]:
    meta = {"order_id": "ord_1", "listing_id": "L1", "buyer_id": "buyer_1", "seller_id": "seller_1", "platform_fee_cents": "5000"}
    meta.update(metadata)
    session: dict[str, Any] = {
        "id": session_id,
        "payment_intent": payment_intent,
        "amount_total": amount_total,
        "currency": "usd",
        "payment_status": payment_status,
        "metadata": {k: v for k, v in meta.items() if v is not None},
    }
    if state is not None:
        session["customer_details"] = {"address": {"state": state, "country": "US"}}
    return session


def _completed(session: dict[str, Any]) -> dict[str, Any]:
    return {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}


@pytest.fixture
def paid_intent(gateway):
    gateway.intents["pi_1"] = PaymentIntentInfo(id="pi_1", amount_cents=100_000, currency="usd", status="succeeded")
    return gateway.intents["pi_1"]


def test_completed_checkout_creates_paid_order(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(protected_transaction_days=14))

    result = services.ingestor.handle_event(_completed(_session()), now=now)

    assert result.outcome == "created"
    assert result.order_id == "ord_1"
    order = db.read("orders/ord_1")
    assert order["status"] == "paid"
    assert (order["amount_cents"], order["platform_fee_cents"], order["seller_amount_cents"]) == (100_000, 5_000, 95_000)
    assert order["fee_source"] == "snapshot_fee"
    assert order["payout_hold_reason"] == "protection_window"
    assert order["transaction_status"] == "FULFILLMENT_REQUIRED"
    assert order["checkout_session_id"] == "cs_test_1"
    listing = db.read("listings/L1")
    assert listing["status"] == "sold"
    assert listing["sold_order_id"] == "ord_1"

    created = sorted((e["type"], e["target_user_id"]) for e in (db.read(p) for p in db.paths("events")))
    assert created == [(events.ORDER_CREATED, "buyer_1"), (events.ORDER_CREATED, "seller_1")]


def test_redelivered_callback_is_a_duplicate(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc())
    services.ingestor.handle_event(_completed(_session()), now=now)

    again = services.ingestor.handle_event(_completed(_session()), now=now)

    assert again.outcome == "duplicate"
    assert db.paths("orders") == ["orders/ord_1"]
    assert len(db.paths("events")) == 2


def test_camel_case_metadata_and_default_fee(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc())
    session = _session(
        order_id=None,
        listing_id=None,
        buyer_id=None,
        seller_id=None,
        platform_fee_cents=None,
        listingId="L1",
        buyerId="buyer_1",
        sellerId="seller_1",
        sellerStripeAccountId="acct_1",
    )

    result = services.ingestor.handle_checkout_completed(session, now=now)

    expected_id = order_id_for_checkout_session("cs_test_1")
    assert result.order_id == expected_id
    order = db.read(f"orders/{expected_id}")
    assert order["seller_payout_account_id"] == "acct_1"
    assert order["fee_source"] == "default_percent"
    assert order["platform_fee_cents"] == 5_000
    assert order["platform_fee_cents"] + order["seller_amount_cents"] == order["amount_cents"]


def test_amount_falls_back_to_session_total(services, db, now) -> None:
    db.put("listings/L1", listing_doc())

    result = services.ingestor.handle_checkout_completed(_session(amount_total=80_000), now=now)

    assert result.outcome == "created"
    assert db.read("orders/ord_1")["amount_cents"] == 80_000


def test_out_of_region_buyer_is_refunded_and_listing_stays_active(services, db, gateway, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(category="whitetail_breeder", purchase_reserved_by_order_id="ord_1"))

    result = services.ingestor.handle_event(_completed(_session(state="OK")), now=now)

    assert result.outcome == "refunded_compliance"
    assert [r["idempotency_key"] for r in gateway.refunds] == ["refund:region_violation:cs_test_1"]
    assert gateway.refunds[0]["metadata"]["buyer_region"] == "OK"
    order = db.read("orders/ord_1")
    assert order["status"] == "refunded"
    assert order["compliance_violation"] is True
    assert order["refund_id"] == "re_1"
    assert "OK" in order["compliance_violation_reason"]
    listing = db.read("listings/L1")
    assert listing["status"] == "active"
    assert listing["purchase_reserved_by_order_id"] is None
    assert db.paths("events") == []

    again = services.ingestor.handle_event(_completed(_session(state="OK")), now=now)
    assert again.outcome == "duplicate"
    assert len(gateway.refunds) == 1


def test_unresolved_region_is_treated_as_violation(services, db, gateway, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(category="whitetail_breeder"))

    result = services.ingestor.handle_checkout_completed(_session(state=None), now=now)

    assert result.outcome == "refunded_compliance"
    assert db.read("orders/ord_1")["buyer_region_source"] == "unresolved"


def test_in_region_regulated_sale_requires_transfer_permit(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(category="whitetail_breeder"))

    result = services.ingestor.handle_checkout_completed(_session(state="tx"), now=now)

    assert result.outcome == "created"
    order = db.read("orders/ord_1")
    assert order["transfer_permit_required"] is True
    assert order["transaction_status"] == "AWAITING_TRANSFER_COMPLIANCE"


def test_sold_listing_creates_no_order(services, db, gateway, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(status="sold"))

    result = services.ingestor.handle_checkout_completed(_session(), now=now)

    assert result.outcome == "listing_unavailable"
    assert result.detail == "listing_unavailable"
    assert db.paths("orders") == []
    assert gateway.refunds == []


def test_quantity_sale_consumes_reservation(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(quantity_total=5))
    services.listings.reserve_for_checkout(listing_id="L1", order_id="ord_1", quantity=2, now=now)

    result = services.ingestor.handle_checkout_completed(_session(quantity="2"), now=now)

    assert result.outcome == "created"
    listing = db.read("listings/L1")
    assert listing["quantity_available"] == 3
    assert listing["status"] == "active"
    assert db.read("listings/L1/purchase_reservations/ord_1") is None
    assert db.read("orders/ord_1")["quantity"] == 2


def test_expired_checkout_cancels_pending_order(services, db, now) -> None:
    db.put("listings/L1", listing_doc())
    db.put("orders/ord_1", order_doc(status="pending", checkout_session_id="cs_test_1"))
    services.listings.reserve_for_checkout(listing_id="L1", order_id="ord_1", now=now)
    event = {"type": "checkout.session.expired", "data": {"object": _session(orderId="ord_1", order_id=None)}}

    result = services.ingestor.handle_event(event, now=now)

    assert result.outcome == "cancelled"
    assert db.read("orders/ord_1")["status"] == "cancelled"
    assert db.read("listings/L1")["purchase_reserved_by_order_id"] is None

    assert services.ingestor.handle_event(event, now=now).outcome == "noop_not_pending"


def test_expired_checkout_never_cancels_paid_order(services, db, now) -> None:
    db.put("listings/L1", listing_doc(status="sold"))
    db.put("orders/ord_1", order_doc(status="paid", checkout_session_id="cs_test_1"))
    event = {"type": "checkout.session.expired", "data": {"object": _session()}}

    assert services.ingestor.handle_event(event, now=now).outcome == "noop_not_pending"
    assert db.read("orders/ord_1")["status"] == "paid"


def test_unrelated_events_are_ignored(services) -> None:
    assert services.ingestor.handle_event({"type": "invoice.paid", "data": {"object": {}}}).outcome == "ignored"


def test_missing_metadata_is_rejected(services, db, now) -> None:
    with pytest.raises(ValidationError):
        services.ingestor.handle_checkout_completed({"id": "cs_bad", "amount_total": 100, "metadata": {}}, now=now)


def _event(event_type: str, session: dict[str, Any]) -> dict[str, Any]:
    return {"id": "evt_async", "type": f"checkout.session.{event_type}", "data": {"object": session}}


@pytest.fixture
def delayed_checkout(services, db, now):
    db.put("listings/L1", listing_doc())
    db.put("orders/ord_1", order_doc(status="pending", checkout_session_id="cs_test_1"))
    services.listings.reserve_for_checkout(listing_id="L1", order_id="ord_1", now=now)
    return _session(payment_status="unpaid")


def test_unpaid_completion_records_pending_order_and_holds_listing(services, db, paid_intent, delayed_checkout, now) -> None:
    result = services.ingestor.handle_event(_event("completed", delayed_checkout), now=now)

    assert result.outcome == "awaiting_payment"
    order = db.read("orders/ord_1")
    assert order["status"] == "pending"
    assert order["transaction_status"] == "PENDING_PAYMENT"
    assert order["reservation_expires_at"] is None
    assert order["paid_at"] is None
    listing = db.read("listings/L1")
    assert listing["status"] == "active"
    assert listing["purchase_reserved_by_order_id"] == "ord_1"
    assert listing["purchase_reserved_until"] is None
    assert db.paths("events") == []

    swept = services.sweeper.run(TimeBudget(30), now=now + timedelta(days=2))
    assert swept.processed == 0
    assert db.read("orders/ord_1")["status"] == "pending"


def test_async_payment_failure_cancels_and_releases(services, db, paid_intent, delayed_checkout, now) -> None:
    services.ingestor.handle_event(_event("completed", delayed_checkout), now=now)

    result = services.ingestor.handle_event(_event("async_payment_failed", delayed_checkout), now=now)

    assert result.outcome == "cancelled"
    assert db.read("orders/ord_1")["status"] == "cancelled"
    listing = db.read("listings/L1")
    assert listing["status"] == "active"
    assert listing["purchase_reserved_by_order_id"] is None
    assert db.paths("events") == []

    redelivered = services.ingestor.handle_event(_event("completed", delayed_checkout), now=now)
    assert redelivered.outcome == "noop_not_pending"
    assert db.read("orders/ord_1")["status"] == "cancelled"


def test_async_payment_success_promotes_order_to_paid(services, db, paid_intent, delayed_checkout, now) -> None:
    services.ingestor.handle_event(_event("completed", delayed_checkout), now=now)
    settled = _session(payment_status="paid")

    result = services.ingestor.handle_event(_event("async_payment_succeeded", settled), now=now)

    assert result.outcome == "created"
    order = db.read("orders/ord_1")
    assert order["status"] == "paid"
    assert order["transaction_status"] == "FULFILLMENT_REQUIRED"
    assert order["paid_at"] == now
    assert db.read("listings/L1")["status"] == "sold"
    assert len(db.paths("events")) == 2

    assert services.ingestor.handle_event(_event("async_payment_succeeded", settled), now=now).outcome == "duplicate"
    assert services.ingestor.handle_event(_event("async_payment_failed", settled), now=now).outcome == "noop_not_pending"
    assert db.read("orders/ord_1")["status"] == "paid"


def test_async_payment_failure_restores_quantity_hold(services, db, paid_intent, now) -> None:
    db.put("listings/L1", listing_doc(quantity_total=5))
    db.put("orders/ord_1", order_doc(status="pending", checkout_session_id="cs_test_1", quantity=2))
    services.listings.reserve_for_checkout(listing_id="L1", order_id="ord_1", quantity=2, now=now)
    session = _session(payment_status="unpaid", quantity="2")

    assert services.ingestor.handle_event(_event("completed", session), now=now).outcome == "awaiting_payment"
    assert db.read("listings/L1")["quantity_available"] == 3

    assert services.ingestor.handle_event(_event("async_payment_failed", session), now=now).outcome == "cancelled"
    assert db.read("listings/L1")["quantity_available"] == 5
    assert db.read("listings/L1/purchase_reservations/ord_1") is None
