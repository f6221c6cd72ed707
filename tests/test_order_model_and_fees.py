from __future__ import annotations

import pytest

from ranchmarket.common.errors import ValidationError
from ranchmarket.orders.models import Order
from ranchmarket.payments.fees import split_amount
from tests.factories import order_doc


def test_order_rejects_split_that_does_not_add_up() -> None:
    data = order_doc(amount_cents=10_000, platform_fee_cents=500)
    data["seller_amount_cents"] = 9_000
    with pytest.raises(ValidationError):
        Order.from_firestore("o1", data)


def test_order_rejects_fractional_cents_and_unknown_status() -> None:
    with pytest.raises(ValidationError):
        Order.from_firestore("o1", order_doc(amount_cents=100.5, platform_fee_cents=0))
    with pytest.raises(ValidationError):
        Order.from_firestore("o1", order_doc(status="shipped"))


def test_order_round_trips_dispute_evidence() -> None:
    data = order_doc(
        dispute={"status": "open", "reason": "injury", "evidence": [{"type": "photo", "url": "https://x/p.jpg"}]}
    )
    order = Order.from_firestore("o1", data)
    assert order.dispute.is_active
    assert order.dispute.has_evidence("photo")
    assert Order.from_firestore("o1", order.to_firestore()) == order


@pytest.mark.parametrize(
    ("kwargs", "fee", "source"),
    [
        ({"platform_fee_cents": 700}, 700, "snapshot_fee"),
        ({"platform_fee_cents": 50_000}, 10_000, "snapshot_fee"),
        ({"seller_amount_cents": 9_100}, 900, "snapshot_seller_amount"),
        ({"platform_fee_percent": 0.08}, 800, "snapshot_percent"),
        ({}, 500, "default_percent"),
    ],
)
def test_split_amount_sources(kwargs, fee, source) -> None:
    split = split_amount(amount_cents=10_000, default_percent=0.05, **kwargs)
    assert split.platform_fee_cents == fee
    assert split.source == source
    assert split.platform_fee_cents + split.seller_amount_cents == split.amount_cents


def test_split_amount_rounds_half_up() -> None:
    assert split_amount(amount_cents=1_010, default_percent=0.05).platform_fee_cents == 51


def test_split_amount_rejects_negative_amount() -> None:
    with pytest.raises(ValidationError):
        split_amount(amount_cents=-1, default_percent=0.05)
