from __future__ import annotations

"""
Auction settlement record.

Firestore:
  auction_results/{listing_id}
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, get_args

from ranchmarket.common.errors import ValidationError
from ranchmarket.common.timeutils import as_utc

AuctionResultStatus = Literal[
    "ended_no_bids",
    "ended_reserve_not_met",
    "ended_winner_pending_payment",
    "ended_paid",
    "ended_unpaid_expired",
    "ended_relisted",
]
AUCTION_RESULT_STATUSES: frozenset[str] = frozenset(get_args(AuctionResultStatus))

PENDING_PAYMENT = "ended_winner_pending_payment"
UNPAID_EXPIRED = "ended_unpaid_expired"
RELISTED = "ended_relisted"


@dataclass(frozen=True, slots=True)
class AuctionResult:
    listing_id: str
    status: str
    seller_id: Optional[str] = None
    winner_user_id: Optional[str] = None
    winning_bid_cents: Optional[int] = None
    payment_due_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    relisted_to_listing_id: Optional[str] = None
    relisted_at: Optional[datetime] = None
    unpaid_expired_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in AUCTION_RESULT_STATUSES:
            raise ValidationError(f"auction_result.status has unknown value {self.status!r}")

    def is_due(self, *, now: datetime) -> bool:
        return self.status == PENDING_PAYMENT and self.payment_due_at is not None and self.payment_due_at <= now

    @staticmethod
    def from_firestore(listing_id: str, data: Mapping[str, Any]) -> "AuctionResult":
        bid = data.get("winning_bid_cents")
        return AuctionResult(
            listing_id=str(listing_id),
            status=str(data.get("status") or "").strip(),
            seller_id=(str(data.get("seller_id") or "").strip() or None),
            winner_user_id=(str(data.get("winner_user_id") or "").strip() or None),
            winning_bid_cents=int(bid) if isinstance(bid, (int, float)) and not isinstance(bid, bool) else None,
            payment_due_at=as_utc(data.get("payment_due_at")),
            ended_at=as_utc(data.get("ended_at")),
            relisted_to_listing_id=(str(data.get("relisted_to_listing_id") or "").strip() or None),
            relisted_at=as_utc(data.get("relisted_at")),
            unpaid_expired_at=as_utc(data.get("unpaid_expired_at")),
        )
