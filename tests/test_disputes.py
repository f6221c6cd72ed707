from __future__ import annotations

from datetime import timedelta

import pytest

from ranchmarket.common.errors import DisputeRejected, GatewayError, ValidationError
from ranchmarket.notifications import models as events
from ranchmarket.orders.disputes import apply_fraud_mark
from tests.factories import delivered_order_doc

PHOTO = {"type": "photo", "url": "https://cdn.example.test/p1.jpg"}
VET = {"type": "vet_report", "url": "https://cdn.example.test/vet.pdf"}


def _events(db) -> list[dict]:
    return [db.read(p) for p in db.paths("events")]


def _seed(db, now, *, hours_since_delivery: float, **extra) -> None:
    db.put("orders/o1", delivered_order_doc(delivered_at=now - timedelta(hours=hours_since_delivery), **extra))


def test_death_claim_inside_48h_needs_vet_report(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=47)

    record = services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="death", evidence=[PHOTO], now=now)

    assert record.status == "needs_evidence"
    order = db.read("orders/o1")
    assert order["dispute"]["status"] == "needs_evidence"
    assert order["payout_hold_reason"] == "dispute_open"
    assert order["transaction_status"] == "DISPUTE_OPENED"
    assert db.read("users/buyer_1")["buyer_claims_count"] == 1


def test_death_claim_after_48h_is_rejected(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=49)

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="death", evidence=[PHOTO], now=now)

    assert exc.value.code == "dispute_window_expired"
    assert db.read("orders/o1")["dispute"]["status"] == "none"
    assert db.read("users/buyer_1") is None


@pytest.mark.parametrize(
    ("reason", "hours_since_delivery", "accepted"),
    [
        ("wrong_item", 23, True),
        ("wrong_item", 25, False),
        ("injury", 71, True),
        ("injury", 73, False),
        ("escape", 71, True),
        ("escape", 73, False),
    ],
)
def test_reason_filing_deadlines(services, db, now, reason, hours_since_delivery, accepted) -> None:
    _seed(db, now, hours_since_delivery=hours_since_delivery)

    if accepted:
        record = services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason=reason, evidence=[PHOTO], now=now)
        assert record.status == "open"
        return

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason=reason, evidence=[PHOTO], now=now)
    assert exc.value.code == "dispute_window_expired"
    assert db.read("orders/o1")["dispute"]["status"] == "none"


def test_serious_illness_is_bounded_only_by_protection_window(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=24 * 10)

    record = services.disputes.open_dispute(
        order_id="o1", buyer_id="buyer_1", reason="serious_illness", evidence=[PHOTO, VET], now=now
    )

    assert record.status == "open"


def test_expired_protection_window_is_rejected(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=24 * 15)

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(
            order_id="o1", buyer_id="buyer_1", reason="serious_illness", evidence=[PHOTO], now=now
        )
    assert exc.value.code == "protection_window_expired"


def test_claim_requires_photo_or_video(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=2)

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[VET], now=now)
    assert exc.value.code == "missing_media_evidence"

    with pytest.raises(ValidationError):
        services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[], now=now)


def test_only_buyer_can_open_and_ineligible_buyer_is_rejected(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=2)

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(order_id="o1", buyer_id="someone", reason="injury", evidence=[PHOTO], now=now)
    assert exc.value.code == "not_order_buyer"

    db.put("users/buyer_1", {"buyer_protection_eligible": False})
    with pytest.raises(DisputeRejected) as exc:
        services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)
    assert exc.value.code == "buyer_ineligible"


def test_vet_report_moves_needs_evidence_to_open(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=5)
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="death", evidence=[PHOTO], now=now)

    record = services.disputes.add_evidence(order_id="o1", buyer_id="buyer_1", evidence=VET, now=now + timedelta(hours=1))

    assert record.status == "open"
    assert [e["type"] for e in db.read("orders/o1")["dispute"]["evidence"]] == ["photo", "vet_report"]


def test_admin_hold_survives_dispute_open(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=2, payout_hold_reason="admin_hold")

    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)

    assert db.read("orders/o1")["payout_hold_reason"] == "admin_hold"


def test_open_notifies_seller_and_admins(services, db, now) -> None:
    _seed(db, now, hours_since_delivery=2)

    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)

    by_type = {(e["type"], e["target_user_id"]) for e in _events(db)}
    assert by_type == {
        (events.ORDER_DISPUTE_OPENED, "seller_1"),
        (events.ADMIN_DISPUTE_OPENED, "admin_1"),
    }


def test_partial_refund_not_below_amount_is_rejected_before_gateway(services, db, gateway, now) -> None:
    _seed(db, now, hours_since_delivery=2)
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.resolve_dispute(
            order_id="o1", resolution="partial_refund", admin_id="admin_1", refund_amount_cents=100_000, now=now
        )

    assert exc.value.code == "refund_amount_invalid"
    assert gateway.refunds == []
    assert db.read("orders/o1")["dispute"]["status"] == "open"


def test_partial_refund_completes_order(services, db, gateway, now) -> None:
    _seed(db, now, hours_since_delivery=2)
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)

    result = services.disputes.resolve_dispute(
        order_id="o1", resolution="partial_refund", admin_id="admin_1", refund_amount_cents=25_000, now=now
    )

    assert result.order_status == "completed"
    assert result.dispute_status == "resolved_partial_refund"
    assert gateway.refunds[0]["amount_cents"] == 25_000
    assert gateway.refunds[0]["idempotency_key"] == "dispute-resolve:partial:o1:25000"
    order = db.read("orders/o1")
    assert order["refund_amount_cents"] == 25_000
    assert order["is_full_refund"] is False
    assert order["payout_hold_reason"] == "none"


def test_full_refund_uses_deterministic_key_and_marks_fraud(services, db, gateway, now) -> None:
    _seed(db, now, hours_since_delivery=2)
    db.put("users/buyer_1", {"buyer_confirmed_fraud_count": 1, "buyer_risk_score": 90})
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="escape", evidence=[PHOTO], now=now)

    result = services.disputes.resolve_dispute(
        order_id="o1",
        resolution="refund",
        admin_id="admin_1",
        mark_fraudulent=True,
        notes="tag photos did not match",
        now=now,
    )

    assert result.order_status == "refunded"
    assert result.refund_id == "re_1"
    assert [r["idempotency_key"] for r in gateway.refunds] == ["dispute-resolve:refund:o1"]
    assert gateway.refunds[0]["amount_cents"] is None
    order = db.read("orders/o1")
    assert order["status"] == "refunded"
    assert order["refund_amount_cents"] == 100_000
    assert order["admin_action_notes"][0]["admin_id"] == "admin_1"
    user = db.read("users/buyer_1")
    assert user["buyer_confirmed_fraud_count"] == 2
    assert user["buyer_risk_score"] == 100
    assert user["buyer_protection_eligible"] is False

    with pytest.raises(DisputeRejected) as exc:
        services.disputes.resolve_dispute(order_id="o1", resolution="refund", admin_id="admin_1", now=now)
    assert exc.value.code == "dispute_not_resolvable"
    assert len(gateway.refunds) == 1


def test_gateway_failure_leaves_order_untouched(services, db, gateway, now) -> None:
    _seed(db, now, hours_since_delivery=2)
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="injury", evidence=[PHOTO], now=now)
    gateway.fail_with = GatewayError("card network down", code="api_connection_error", retryable=True)

    with pytest.raises(GatewayError):
        services.disputes.resolve_dispute(order_id="o1", resolution="refund", admin_id="admin_1", now=now)

    order = db.read("orders/o1")
    assert order["status"] == "paid"
    assert order["dispute"]["status"] == "open"


def test_release_resolution_notifies_both_parties(services, db, gateway, now) -> None:
    _seed(db, now, hours_since_delivery=2)
    services.disputes.open_dispute(order_id="o1", buyer_id="buyer_1", reason="wrong_item", evidence=[PHOTO], now=now)

    result = services.disputes.resolve_dispute(order_id="o1", resolution="release", admin_id="admin_1", now=now)

    assert result.order_status == "completed"
    assert gateway.refunds == []
    resolved = sorted(e["target_user_id"] for e in _events(db) if e["type"] == events.ORDER_DISPUTE_RESOLVED)
    assert resolved == ["buyer_1", "seller_1"]


def test_fraud_mark_first_offence_keeps_eligibility() -> None:
    risk = apply_fraud_mark(user_data={})
    assert (risk.confirmed_fraud_count, risk.risk_score, risk.protection_eligible) == (1, 20, True)
