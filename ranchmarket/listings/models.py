from __future__ import annotations

"""
Listing document model.

Firestore:
  listings/{listing_id}
  listings/{listing_id}/purchase_reservations/{order_id}

Two reservation shapes coexist on a listing:
- legacy single slot: purchase_reserved_by_order_id / _at / _until
- quantity ledger: one sub-document per order holding {quantity, created_at, expires_at},
  with the held units already subtracted from quantity_available
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping, Optional, get_args

from ranchmarket.common.errors import ValidationError
from ranchmarket.common.timeutils import as_utc

ListingStatus = Literal["draft", "pending", "active", "sold", "ended"]
LISTING_STATUSES: frozenset[str] = frozenset(get_args(ListingStatus))

# Descriptive fields carried over verbatim when an auction is relisted.
RELIST_COPY_FIELDS: tuple[str, ...] = (
    "seller_id",
    "type",
    "title",
    "description",
    "category",
    "subcategory",
    "location",
    "trust",
    "attributes",
    "images",
    "photos",
    "starting_bid_cents",
    "reserve_price_cents",
    "seller_snapshot",
    "compliance",
    "protected_transaction_days",
    "transfer_permit_required",
    "quantity_total",
)

LEGACY_RESERVATION_CLEARED: dict[str, Any] = {
    "purchase_reserved_by_order_id": None,
    "purchase_reserved_at": None,
    "purchase_reserved_until": None,
}


def _opt_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return int(v)
    return None


@dataclass(frozen=True, slots=True)
class ListingMetrics:
    favorites: int = 0
    views: int = 0
    bid_count: int = 0

    def to_firestore(self) -> dict[str, int]:
        return {"favorites": self.favorites, "views": self.views, "bid_count": self.bid_count}

    @staticmethod
    def from_firestore(data: Optional[Mapping[str, Any]]) -> "ListingMetrics":
        d = data or {}
        return ListingMetrics(
            favorites=max(0, _opt_int(d.get("favorites")) or 0),
            views=max(0, _opt_int(d.get("views")) or 0),
            bid_count=max(0, _opt_int(d.get("bid_count")) or 0),
        )


@dataclass(frozen=True, slots=True)
class Listing:
    listing_id: str
    seller_id: str
    status: str
    category: Optional[str] = None
    listing_type: Optional[str] = None
    title: Optional[str] = None
    end_at: Optional[datetime] = None
    quantity_total: Optional[int] = None
    quantity_available: Optional[int] = None
    purchase_reserved_by_order_id: Optional[str] = None
    purchase_reserved_at: Optional[datetime] = None
    purchase_reserved_until: Optional[datetime] = None
    protected_transaction_days: Optional[int] = None
    transfer_permit_required: bool = False
    metrics: ListingMetrics = ListingMetrics()
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in LISTING_STATUSES:
            raise ValidationError(f"listing.status has unknown value {self.status!r}")
        if self.quantity_available is not None and self.quantity_available < 0:
            raise ValidationError("listing.quantity_available must be >= 0")

    @property
    def uses_quantity_ledger(self) -> bool:
        return self.quantity_total is not None and self.quantity_total > 1

    @property
    def is_available(self) -> bool:
        return self.status == "active"

    def legacy_slot_held(self, *, now: datetime) -> bool:
        if not self.purchase_reserved_by_order_id:
            return False
        until = self.purchase_reserved_until
        return until is None or until > now

    @staticmethod
    def from_firestore(listing_id: str, data: Mapping[str, Any]) -> "Listing":
        seller_id = str(data.get("seller_id") or "").strip()
        if not seller_id:
            raise ValidationError("listing.seller_id is required")
        status = str(data.get("status") or "").strip() or "draft"
        return Listing(
            listing_id=str(listing_id),
            seller_id=seller_id,
            status=status,
            category=(str(data.get("category")).strip() or None) if data.get("category") else None,
            listing_type=(str(data.get("type")).strip() or None) if data.get("type") else None,
            title=data.get("title"),
            end_at=as_utc(data.get("end_at")),
            quantity_total=_opt_int(data.get("quantity_total")),
            quantity_available=_opt_int(data.get("quantity_available")),
            purchase_reserved_by_order_id=(str(data.get("purchase_reserved_by_order_id") or "").strip() or None),
            purchase_reserved_at=as_utc(data.get("purchase_reserved_at")),
            purchase_reserved_until=as_utc(data.get("purchase_reserved_until")),
            protected_transaction_days=_opt_int(data.get("protected_transaction_days")),
            transfer_permit_required=bool(data.get("transfer_permit_required") or False),
            metrics=ListingMetrics.from_firestore(data.get("metrics")),
            published_at=as_utc(data.get("published_at")),
            created_at=as_utc(data.get("created_at")),
        )


@dataclass(frozen=True, slots=True)
class QuantityReservation:
    order_id: str
    quantity: int
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValidationError("reservation quantity must be >= 1")

    def to_firestore(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "quantity": self.quantity,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    @staticmethod
    def from_firestore(order_id: str, data: Mapping[str, Any]) -> "QuantityReservation":
        return QuantityReservation(
            order_id=str(order_id),
            quantity=_opt_int(data.get("quantity")) or 1,
            created_at=as_utc(data.get("created_at")),
            expires_at=as_utc(data.get("expires_at")),
        )
