from __future__ import annotations

"""
Scheduled job catalogue.

Each entry binds a job name to its trigger schedule, time budget and the step
that performs one run against a `Services` instance.
"""

import time
from typing import TYPE_CHECKING, Callable

from ranchmarket.common.config import MarketplaceSettings
from ranchmarket.jobs.runner import Job, SweepReport, TimeBudget, run_job

if TYPE_CHECKING:
    from ranchmarket.runtime import Services

StepFactory = Callable[["Services"], Callable[[TimeBudget], SweepReport]]

EXPIRE_UNPAID_AUCTIONS = "expire_unpaid_auctions"
CLEAR_EXPIRED_RESERVATIONS = "clear_expired_reservations"
PROCESS_NOTIFICATION_EVENTS = "process_notification_events"
RELEASE_PAYOUT_HOLDS = "release_payout_holds"
SEND_FULFILLMENT_REMINDERS = "send_fulfillment_reminders"

SCHEDULES: dict[str, str] = {
    EXPIRE_UNPAID_AUCTIONS: "*/5 * * * *",
    CLEAR_EXPIRED_RESERVATIONS: "*/5 * * * *",
    PROCESS_NOTIFICATION_EVENTS: "*/2 * * * *",
    RELEASE_PAYOUT_HOLDS: "0 * * * *",
    SEND_FULFILLMENT_REMINDERS: "0 15 * * *",
}

_STEPS: dict[str, StepFactory] = {
    EXPIRE_UNPAID_AUCTIONS: lambda s: s.auctions.run,
    CLEAR_EXPIRED_RESERVATIONS: lambda s: s.sweeper.run,
    PROCESS_NOTIFICATION_EVENTS: lambda s: s.pipeline.process_pending,
    RELEASE_PAYOUT_HOLDS: lambda s: s.payouts.run,
    SEND_FULFILLMENT_REMINDERS: lambda s: s.reminders.run,
}


def build_jobs(settings: MarketplaceSettings) -> dict[str, Job]:
    return {
        name: Job(
            name=name,
            schedule=schedule,
            time_budget_s=float(settings.job_time_budget_s),
        )
        for name, schedule in SCHEDULES.items()
    }


def run_named_job(
    name: str,
    services: "Services",
    *,
    clock: Callable[[], float] = time.monotonic,
) -> SweepReport:
    if name not in _STEPS:
        raise KeyError(f"unknown job {name!r}")
    job = build_jobs(services.settings)[name]
    return run_job(job, _STEPS[name](services), store=services.store, clock=clock)
