from __future__ import annotations

"""
Explicit collaborator wiring.

One `Services` instance per process (or per test) owns the Firestore handle,
the payment gateway and the channel adapter, and builds every component from
them. Nothing in the package reaches for a module-level client.
"""

import os
from functools import cached_property
from typing import Optional

from ranchmarket.auctions.relist import AuctionRelistScheduler
from ranchmarket.common.config import MarketplaceSettings
from ranchmarket.listings.availability import ListingAvailabilityController
from ranchmarket.notifications.channels import ChannelAdapter, InAppChannelAdapter
from ranchmarket.notifications.pipeline import NotificationPipeline
from ranchmarket.orders.disputes import DisputeEngine
from ranchmarket.orders.ledger import OrderLedger
from ranchmarket.orders.payout_holds import PayoutHoldReleaser
from ranchmarket.orders.reminders import FulfillmentReminderJob
from ranchmarket.payments.compliance import CategoryRegionPolicy
from ranchmarket.payments.gateway import PaymentGateway, StripeGateway
from ranchmarket.payments.ingestor import PaymentWebhookIngestor
from ranchmarket.persistence.store import DocumentStore
from ranchmarket.reservations.sweeper import ReservationExpirySweeper


class Services:
    def __init__(
        self,
        *,
        store: DocumentStore,
        settings: Optional[MarketplaceSettings] = None,
        gateway: Optional[PaymentGateway] = None,
        channel: Optional[ChannelAdapter] = None,
    ) -> None:
        self.store = store
        self.settings = settings or MarketplaceSettings.from_env()
        self._gateway = gateway
        self._channel = channel

    @classmethod
    def from_env(cls) -> "Services":
        return cls(store=DocumentStore.from_env())

    @cached_property
    def gateway(self) -> PaymentGateway:
        # Lazy: only payment-adjacent components require Stripe credentials.
        if self._gateway is not None:
            return self._gateway
        return StripeGateway(
            api_key=os.getenv("STRIPE_SECRET_KEY", ""),
            webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        )

    @cached_property
    def channel(self) -> ChannelAdapter:
        return self._channel or InAppChannelAdapter(self.store)

    @cached_property
    def pipeline(self) -> NotificationPipeline:
        s = self.settings
        return NotificationPipeline(
            self.store,
            self.channel,
            batch_size=s.notification_batch_size,
            max_attempts=s.notification_max_attempts,
            lock_s=s.notification_lock_s,
        )

    @cached_property
    def listings(self) -> ListingAvailabilityController:
        return ListingAvailabilityController(self.store, hold_minutes=self.settings.purchase_reservation_minutes)

    @cached_property
    def ledger(self) -> OrderLedger:
        return OrderLedger(self.store, self.listings)

    @cached_property
    def disputes(self) -> DisputeEngine:
        return DisputeEngine(
            store=self.store,
            gateway=self.gateway,
            pipeline=self.pipeline,
            admin_user_ids=sorted(self.settings.admin_user_ids),
        )

    @cached_property
    def ingestor(self) -> PaymentWebhookIngestor:
        return PaymentWebhookIngestor(
            store=self.store,
            gateway=self.gateway,
            listings=self.listings,
            ledger=self.ledger,
            pipeline=self.pipeline,
            policy=CategoryRegionPolicy.from_settings(self.settings),
            settings=self.settings,
        )

    @cached_property
    def auctions(self) -> AuctionRelistScheduler:
        return AuctionRelistScheduler(
            self.store, pipeline=self.pipeline, max_per_run=self.settings.auction_relist_max_per_run
        )

    @cached_property
    def sweeper(self) -> ReservationExpirySweeper:
        return ReservationExpirySweeper(
            self.store,
            self.listings,
            max_per_run=self.settings.reservation_sweep_max_per_run,
            quantity_min_remaining_s=self.settings.reservation_quantity_min_remaining_s,
        )

    @cached_property
    def payouts(self) -> PayoutHoldReleaser:
        return PayoutHoldReleaser(
            self.store, pipeline=self.pipeline, max_per_run=self.settings.payout_release_max_per_run
        )

    @cached_property
    def reminders(self) -> FulfillmentReminderJob:
        return FulfillmentReminderJob(
            self.store,
            self.pipeline,
            stale_hours=self.settings.reminder_stale_hours,
            max_per_run=self.settings.reminder_max_per_run,
        )
