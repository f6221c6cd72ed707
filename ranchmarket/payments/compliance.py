from __future__ import annotations

"""
Jurisdiction enforcement for regulated categories.

The rule content lives behind `PolicyEvaluator`; `CategoryRegionPolicy` is the
settings-driven default (regulated categories may only ship to one region).
Buyer region resolution walks a fixed fallback chain and stops at the first hit.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional, Protocol

from ranchmarket.common.config import MarketplaceSettings
from ranchmarket.common.errors import GatewayError
from ranchmarket.common.logging import log_event
from ranchmarket.payments.gateway import PaymentGateway
from ranchmarket.payments.payloads import CheckoutSession

logger = logging.getLogger(__name__)

RegionSource = Literal["customer_details", "shipping_details", "payment_intent", "unresolved"]


class PolicyEvaluator(Protocol):
    def requires_region_check(self, *, category: Optional[str]) -> bool: ...

    def is_region_allowed(self, *, category: Optional[str], region: Optional[str]) -> bool: ...

    def requires_transfer_permit(self, *, category: Optional[str]) -> bool: ...


class CategoryRegionPolicy:
    def __init__(
        self,
        *,
        regulated_categories: frozenset[str],
        allowed_region: str,
        transfer_permit_categories: frozenset[str] = frozenset(),
    ) -> None:
        self._regulated = frozenset(c.strip().lower() for c in regulated_categories)
        self._allowed = str(allowed_region).strip().upper()
        self._permit = frozenset(c.strip().lower() for c in transfer_permit_categories)

    @classmethod
    def from_settings(cls, settings: MarketplaceSettings) -> "CategoryRegionPolicy":
        return cls(
            regulated_categories=settings.regulated_categories,
            allowed_region=settings.allowed_buyer_region,
            transfer_permit_categories=settings.transfer_permit_categories,
        )

    def requires_region_check(self, *, category: Optional[str]) -> bool:
        return str(category or "").strip().lower() in self._regulated

    def is_region_allowed(self, *, category: Optional[str], region: Optional[str]) -> bool:
        if not self.requires_region_check(category=category):
            return True
        return bool(region) and str(region).strip().upper() == self._allowed

    def requires_transfer_permit(self, *, category: Optional[str]) -> bool:
        return str(category or "").strip().lower() in self._permit


@dataclass(frozen=True, slots=True)
class RegionResolution:
    region: Optional[str]
    source: RegionSource


def resolve_buyer_region(session: CheckoutSession, gateway: PaymentGateway) -> RegionResolution:
    """
    customer-details address -> shipping-details address -> payment intent
    (expanded customer / latest charge). A failed lookup counts as unresolved.
    """
    if session.customer_region:
        return RegionResolution(region=session.customer_region, source="customer_details")
    if session.shipping_region:
        return RegionResolution(region=session.shipping_region, source="shipping_details")
    if session.payment_intent:
        try:
            pi = gateway.retrieve_payment_intent(session.payment_intent, expand=("customer", "latest_charge"))
        except GatewayError as e:
            log_event(
                logger,
                "compliance.region_lookup_failed",
                severity="WARNING",
                checkout_session_id=session.id,
                payment_intent_id=session.payment_intent,
                error=str(e)[:500],
            )
        else:
            region = pi.shipping_region or pi.billing_region or pi.customer_region
            if region:
                return RegionResolution(region=region, source="payment_intent")
    return RegionResolution(region=None, source="unresolved")
