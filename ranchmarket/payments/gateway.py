"""
Payment gateway adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level resources (`stripe.PaymentIntent`, `stripe.Refund`, `stripe.Account`)
  with `stripe.api_key` configured once per gateway instance.
- Idempotency keys are passed through the `idempotency_key` kwarg.
- Webhook payloads are verified with `stripe.Webhook.construct_event`.
- Resource objects are converted with `to_dict()` before field access so the
  rest of the engine only ever sees plain dicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

import stripe

from ranchmarket.common.errors import GatewayError, ValidationError
from ranchmarket.common.logging import log_event

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return {k: _plain(v) for k, v in obj.items()}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return {k: _plain(v) for k, v in to_dict().items()}
    return {}


def _plain(v: Any) -> Any:
    if isinstance(v, Mapping) or callable(getattr(v, "to_dict", None)):
        return _as_dict(v)
    if isinstance(v, list):
        return [_plain(x) for x in v]
    return v


def _dig(d: Mapping[str, Any], *path: str) -> Any:
    cur: Any = d
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def _region(v: Any) -> Optional[str]:
    s = str(v or "").strip().upper()
    return s or None


@dataclass(frozen=True, slots=True)
class PaymentIntentInfo:
    id: str
    amount_cents: Optional[int]
    currency: Optional[str]
    status: Optional[str]
    shipping_region: Optional[str] = None
    billing_region: Optional[str] = None
    customer_region: Optional[str] = None

    @staticmethod
    def from_stripe(obj: Any) -> "PaymentIntentInfo":
        d = _as_dict(obj)
        amount = d.get("amount_received") or d.get("amount")
        latest_charge = d.get("latest_charge") if isinstance(d.get("latest_charge"), Mapping) else {}
        legacy_charges = _dig(d, "charges", "data") or []
        first_charge = legacy_charges[0] if legacy_charges and isinstance(legacy_charges[0], Mapping) else {}
        customer = d.get("customer") if isinstance(d.get("customer"), Mapping) else {}
        return PaymentIntentInfo(
            id=str(d.get("id") or ""),
            amount_cents=int(amount) if isinstance(amount, (int, float)) else None,
            currency=d.get("currency"),
            status=d.get("status"),
            shipping_region=_region(_dig(d, "shipping", "address", "state")),
            billing_region=_region(
                _dig(latest_charge, "billing_details", "address", "state")
                or _dig(first_charge, "billing_details", "address", "state")
            ),
            customer_region=_region(
                _dig(customer, "address", "state") or _dig(customer, "shipping", "address", "state")
            ),
        )


@dataclass(frozen=True, slots=True)
class RefundInfo:
    id: str
    amount_cents: Optional[int]
    status: Optional[str]


@dataclass(frozen=True, slots=True)
class AccountStatus:
    id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def can_receive_payouts(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


class PaymentGateway(Protocol):
    def retrieve_payment_intent(self, payment_intent_id: str, *, expand: Sequence[str] = ()) -> PaymentIntentInfo: ...

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundInfo: ...

    def retrieve_account(self, account_id: str) -> AccountStatus: ...


class StripeGateway:
    provider = "stripe"

    def __init__(self, *, api_key: str, webhook_secret: Optional[str] = None) -> None:
        if not str(api_key or "").strip():
            raise RuntimeError("STRIPE_SECRET_KEY not configured")
        stripe.api_key = api_key
        self._webhook_secret = webhook_secret

    @staticmethod
    def _wrap(exc: "stripe.StripeError", *, op: str) -> GatewayError:
        retryable = isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError))
        code = getattr(exc, "code", None) or type(exc).__name__
        log_event(logger, "gateway.call_failed", severity="WARNING", op=op, code=str(code), retryable=retryable)
        return GatewayError(f"{op} failed: {exc}", code=str(code), retryable=retryable)

    def retrieve_payment_intent(self, payment_intent_id: str, *, expand: Sequence[str] = ()) -> PaymentIntentInfo:
        params: dict[str, Any] = {"expand": list(expand)} if expand else {}
        try:
            pi = stripe.PaymentIntent.retrieve(payment_intent_id, **params)
        except stripe.StripeError as exc:
            raise self._wrap(exc, op="payment_intent.retrieve") from exc
        return PaymentIntentInfo.from_stripe(pi)

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundInfo:
        params: dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "reason": "requested_by_customer",
            "metadata": dict(metadata or {}),
        }
        if amount_cents is not None:
            params["amount"] = int(amount_cents)
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            raise self._wrap(exc, op="refund.create") from exc
        d = _as_dict(refund)
        amount = d.get("amount")
        return RefundInfo(
            id=str(d.get("id") or ""),
            amount_cents=int(amount) if isinstance(amount, (int, float)) else None,
            status=d.get("status"),
        )

    def retrieve_account(self, account_id: str) -> AccountStatus:
        try:
            acct = stripe.Account.retrieve(account_id)
        except stripe.StripeError as exc:
            raise self._wrap(exc, op="account.retrieve") from exc
        d = _as_dict(acct)
        return AccountStatus(
            id=str(d.get("id") or account_id),
            charges_enabled=bool(d.get("charges_enabled")),
            payouts_enabled=bool(d.get("payouts_enabled")),
            details_submitted=bool(d.get("details_submitted")),
        )

    def construct_event(self, *, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict."""
        if not self._webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationError(f"invalid webhook payload: {exc}") from exc
        return _as_dict(event)
