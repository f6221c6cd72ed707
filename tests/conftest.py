from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import pytest

from ranchmarket.common.config import MarketplaceSettings
from ranchmarket.common.errors import GatewayError
from ranchmarket.notifications.channels import DeliveryEnvelope, DeliveryError
from ranchmarket.payments.gateway import AccountStatus, PaymentIntentInfo, RefundInfo
from ranchmarket.persistence.store import DocumentStore
from ranchmarket.runtime import Services
from tests.factories import NOW
from tests.fake_firestore import FakeFirestore, make_store


@dataclass
class FakeGateway:
    """Records refunds; refunds with a repeated idempotency key return the first result."""

    intents: dict[str, PaymentIntentInfo] = field(default_factory=dict)
    refunds: list[dict[str, Any]] = field(default_factory=list)
    fail_with: Optional[GatewayError] = None
    _by_key: dict[str, RefundInfo] = field(default_factory=dict)

    def retrieve_payment_intent(self, payment_intent_id: str, *, expand: Sequence[str] = ()) -> PaymentIntentInfo:
        if self.fail_with is not None:
            raise self.fail_with
        info = self.intents.get(payment_intent_id)
        if info is None:
            raise GatewayError(f"no such payment_intent: {payment_intent_id}", code="resource_missing")
        return info

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> RefundInfo:
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        self.refunds.append(
            {
                "payment_intent_id": payment_intent_id,
                "idempotency_key": idempotency_key,
                "amount_cents": amount_cents,
                "metadata": dict(metadata or {}),
            }
        )
        info = RefundInfo(id=f"re_{len(self.refunds)}", amount_cents=amount_cents, status="succeeded")
        self._by_key[idempotency_key] = info
        return info

    def retrieve_account(self, account_id: str) -> AccountStatus:
        return AccountStatus(id=account_id, charges_enabled=True, payouts_enabled=True, details_submitted=True)


@dataclass
class RecordingChannel:
    delivered: list[DeliveryEnvelope] = field(default_factory=list)
    fail: bool = False

    def deliver(self, envelope: DeliveryEnvelope) -> None:
        if self.fail:
            raise DeliveryError("channel unavailable", code="channel_down")
        self.delivered.append(envelope)


@pytest.fixture
def db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def store(db: FakeFirestore) -> DocumentStore:
    return make_store(db)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def settings() -> MarketplaceSettings:
    return MarketplaceSettings(admin_user_ids=frozenset({"admin_1"}))


@pytest.fixture
def services(store: DocumentStore, settings: MarketplaceSettings, gateway: FakeGateway, channel: RecordingChannel) -> Services:
    return Services(store=store, settings=settings, gateway=gateway, channel=channel)


@pytest.fixture
def now() -> datetime:
    return NOW
