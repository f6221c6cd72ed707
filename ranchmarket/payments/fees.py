from __future__ import annotations

"""
Platform fee / seller payout split.

Pure-Python (no Firestore dependency). The fee snapshot captured at checkout is
authoritative; the configured percentage is only a fallback for sessions that
carry no snapshot at all.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from ranchmarket.common.errors import ValidationError

FeeSource = Literal["snapshot_fee", "snapshot_seller_amount", "snapshot_percent", "default_percent"]


@dataclass(frozen=True, slots=True)
class FeeSplit:
    amount_cents: int
    platform_fee_cents: int
    seller_amount_cents: int
    source: FeeSource


def _percent_of(amount_cents: int, pct: float) -> int:
    v = (Decimal(amount_cents) * Decimal(str(pct))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(v)


def split_amount(
    *,
    amount_cents: int,
    platform_fee_cents: Optional[int] = None,
    seller_amount_cents: Optional[int] = None,
    platform_fee_percent: Optional[float] = None,
    default_percent: float,
) -> FeeSplit:
    """
    Split a captured amount so that fee + seller amount == amount, always.

    A snapshot fee larger than the captured amount is clamped to the amount.
    """
    amount = int(amount_cents)
    if amount < 0:
        raise ValidationError("amount_cents must be >= 0")

    source: FeeSource
    if platform_fee_cents is not None:
        fee = min(max(0, int(platform_fee_cents)), amount)
        source = "snapshot_fee"
    elif seller_amount_cents is not None:
        fee = amount - min(max(0, int(seller_amount_cents)), amount)
        source = "snapshot_seller_amount"
    elif platform_fee_percent is not None:
        fee = min(_percent_of(amount, platform_fee_percent), amount)
        source = "snapshot_percent"
    else:
        fee = min(_percent_of(amount, default_percent), amount)
        source = "default_percent"

    return FeeSplit(amount_cents=amount, platform_fee_cents=fee, seller_amount_cents=amount - fee, source=source)
