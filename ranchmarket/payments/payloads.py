from __future__ import annotations

"""
Boundary models for payment-gateway callbacks.

Checkout metadata arrives as a flat string map (Stripe metadata values are always
strings). It is decoded once here into typed fields; both snake_case and the
camelCase keys written by older checkout code are accepted.
"""

from typing import Any, Optional

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ranchmarket.common.errors import ValidationError

# Checkout payment_status values that mean funds are captured. Delayed methods
# (ACH debit, bank transfer) complete as "unpaid" and settle later.
CAPTURED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})


class PayloadFragment(BaseModel):
    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        populate_by_name=True,
    )


class Address(PayloadFragment):
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None

    @property
    def region(self) -> Optional[str]:
        s = str(self.state or "").strip().upper()
        return s or None


class AddressHolder(PayloadFragment):
    address: Optional[Address] = None


class CollectedInformation(PayloadFragment):
    shipping_details: Optional[AddressHolder] = None


class CheckoutMetadata(PayloadFragment):
    order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))
    listing_id: str = Field(..., min_length=1, validation_alias=AliasChoices("listing_id", "listingId"))
    buyer_id: str = Field(..., min_length=1, validation_alias=AliasChoices("buyer_id", "buyerId"))
    seller_id: str = Field(..., min_length=1, validation_alias=AliasChoices("seller_id", "sellerId"))
    seller_payout_account_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("seller_payout_account_id", "sellerStripeAccountId"),
    )
    platform_fee_cents: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("platform_fee_cents", "platformFee")
    )
    seller_amount_cents: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("seller_amount_cents", "sellerAmount")
    )
    platform_fee_percent: Optional[float] = Field(
        default=None, ge=0, le=1, validation_alias=AliasChoices("platform_fee_percent", "platformFeePercent")
    )
    quantity: int = Field(default=1, ge=1)
    seller_tier_snapshot: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("seller_tier_snapshot", "sellerTierSnapshot")
    )

    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CheckoutSession(PayloadFragment):
    id: str = Field(..., min_length=1)
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    customer_details: Optional[AddressHolder] = None
    shipping_details: Optional[AddressHolder] = None
    collected_information: Optional[CollectedInformation] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _intent_id(cls, v: Any) -> Any:
        # Expanded payment_intent objects collapse to their id.
        if isinstance(v, dict):
            return v.get("id")
        return v

    @property
    def payment_captured(self) -> bool:
        return (self.payment_status or "").strip().lower() in CAPTURED_PAYMENT_STATUSES

    @property
    def customer_region(self) -> Optional[str]:
        if self.customer_details and self.customer_details.address:
            return self.customer_details.address.region
        return None

    @property
    def shipping_region(self) -> Optional[str]:
        if self.shipping_details and self.shipping_details.address:
            return self.shipping_details.address.region
        ci = self.collected_information
        if ci and ci.shipping_details and ci.shipping_details.address:
            return ci.shipping_details.address.region
        return None

    def checkout_metadata(self) -> CheckoutMetadata:
        try:
            return CheckoutMetadata.model_validate(self.metadata)
        except pydantic.ValidationError as e:
            raise ValidationError(f"checkout session {self.id} has invalid metadata: {e.errors()}") from e


def parse_checkout_session(data: dict[str, Any]) -> CheckoutSession:
    try:
        return CheckoutSession.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid checkout session payload: {e.errors()}") from e
