from __future__ import annotations

"""
Job abstraction for scheduled sweeps.

A job is {name, schedule, time budget} plus a step function that scans its own
query and processes items one transaction at a time. Per-run item caps belong to
the step's component (set from settings in runtime.py). No cursor is persisted:
each run re-issues its query, and records already handled fall out of it
naturally (their status or due-time no longer matches).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ranchmarket.common.logging import bind_run_id, log_event
from ranchmarket.jobs.health import write_ops_health
from ranchmarket.persistence.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Job:
    name: str
    schedule: str
    time_budget_s: float


class TimeBudget:
    """Cooperative wall-clock guard; loops check `exhausted` before each item."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._seconds = float(seconds)
        self._clock = clock
        self._start = clock()

    @property
    def elapsed_s(self) -> float:
        return max(0.0, self._clock() - self._start)

    @property
    def remaining_s(self) -> float:
        return max(0.0, self._seconds - self.elapsed_s)

    @property
    def exhausted(self) -> bool:
        return self.elapsed_s >= self._seconds


@dataclass
class SweepReport:
    job: str
    scanned: int = 0
    processed: int = 0
    errors: int = 0
    budget_exhausted: bool = False
    last_error: Optional[str] = None
    outcomes: dict[str, int] = field(default_factory=dict)

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def record_error(self, item_id: str, exc: BaseException) -> None:
        self.errors += 1
        self.last_error = f"{item_id}: {type(exc).__name__}: {exc}"[:2000]
        log_event(
            logger,
            "job.item_failed",
            severity="ERROR",
            exc_info=True,
            job=self.job,
            item_id=item_id,
            error=str(exc)[:500],
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "scanned": self.scanned,
            "processed": self.processed,
            "errors": self.errors,
            "budget_exhausted": self.budget_exhausted,
            "last_error": self.last_error,
            "outcomes": dict(self.outcomes),
        }


def run_job(
    job: Job,
    step: Callable[[TimeBudget], SweepReport],
    *,
    store: DocumentStore,
    clock: Callable[[], float] = time.monotonic,
) -> SweepReport:
    """
    Run one invocation of `job` and record its ops-health document.

    Per-item failures are absorbed by the step (counted on the report). A failure
    of the step itself is recorded as status=error and re-raised.
    """
    with bind_run_id(trigger=job.name) as run_id:
        budget = TimeBudget(job.time_budget_s, clock=clock)
        log_event(logger, "job.started", job=job.name, schedule=job.schedule, run_id=run_id)
        try:
            report = step(budget)
        except Exception as e:
            duration_ms = int(budget.elapsed_s * 1000)
            log_event(logger, "job.failed", severity="ERROR", exc_info=True, job=job.name, error=str(e)[:500])
            write_ops_health(
                store,
                job_name=job.name,
                status="error",
                report=SweepReport(job=job.name, last_error=str(e)[:2000]),
                duration_ms=duration_ms,
            )
            raise

        duration_ms = int(budget.elapsed_s * 1000)
        write_ops_health(store, job_name=job.name, status="success", report=report, duration_ms=duration_ms)
        log_event(logger, "job.completed", job=job.name, duration_ms=duration_ms, report=report.as_dict())
        return report
