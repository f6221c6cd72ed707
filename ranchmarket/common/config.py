"""
Environment-driven settings for the lifecycle engine.

All knobs are read once via `MarketplaceSettings.from_env()` and passed into
components explicitly. Defaults match production behavior.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return int(default)
    try:
        return int(str(v).strip())
    except Exception:
        return int(default)


def _float_env(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return float(default)
    try:
        return float(str(v).strip())
    except Exception:
        return float(default)


def _str_env(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip()


def _csv_env(name: str, default: str) -> frozenset[str]:
    raw = _str_env(name, default)
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True, slots=True)
class MarketplaceSettings:
    # Orders / disputes
    dispute_window_hours: int = 72
    platform_fee_percent: float = 0.05
    purchase_reservation_minutes: int = 20

    # Jurisdiction
    regulated_categories: frozenset[str] = frozenset({"whitetail_breeder"})
    transfer_permit_categories: frozenset[str] = frozenset({"whitetail_breeder"})
    allowed_buyer_region: str = "TX"

    # Jobs
    job_time_budget_s: int = 45
    auction_relist_max_per_run: int = 50
    reservation_sweep_max_per_run: int = 200
    reservation_quantity_min_remaining_s: int = 5
    reminder_stale_hours: int = 48
    reminder_max_per_run: int = 200
    payout_release_max_per_run: int = 200

    # Notifications
    admin_user_ids: frozenset[str] = frozenset()
    notification_batch_size: int = 50
    notification_max_attempts: int = 5
    notification_lock_s: int = 120

    @staticmethod
    def from_env() -> "MarketplaceSettings":
        return MarketplaceSettings(
            dispute_window_hours=_int_env("DISPUTE_WINDOW_HOURS", 72),
            platform_fee_percent=_float_env("PLATFORM_FEE_PERCENT", 0.05),
            purchase_reservation_minutes=_int_env("PURCHASE_RESERVATION_MINUTES", 20),
            regulated_categories=_csv_env("REGULATED_CATEGORIES", "whitetail_breeder"),
            transfer_permit_categories=_csv_env("TRANSFER_PERMIT_CATEGORIES", "whitetail_breeder"),
            allowed_buyer_region=_str_env("ALLOWED_BUYER_REGION", "TX").upper(),
            job_time_budget_s=_int_env("JOB_TIME_BUDGET_SECONDS", 45),
            auction_relist_max_per_run=_int_env("AUCTION_RELIST_MAX_PER_RUN", 50),
            reservation_sweep_max_per_run=_int_env("RESERVATION_SWEEP_MAX_PER_RUN", 200),
            reservation_quantity_min_remaining_s=_int_env("RESERVATION_QUANTITY_MIN_REMAINING_SECONDS", 5),
            reminder_stale_hours=_int_env("REMINDER_STALE_HOURS", 48),
            reminder_max_per_run=_int_env("REMINDER_MAX_PER_RUN", 200),
            payout_release_max_per_run=_int_env("PAYOUT_RELEASE_MAX_PER_RUN", 200),
            admin_user_ids=_csv_env("ADMIN_USER_IDS", ""),
            notification_batch_size=_int_env("NOTIFICATION_BATCH_SIZE", 50),
            notification_max_attempts=_int_env("NOTIFICATION_MAX_ATTEMPTS", 5),
            notification_lock_s=_int_env("NOTIFICATION_LOCK_SECONDS", 120),
        )
