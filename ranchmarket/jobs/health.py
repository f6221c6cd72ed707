from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from ranchmarket.common.logging import log_event
from ranchmarket.common.timeutils import utc_now
from ranchmarket.persistence.store import DocumentStore

if TYPE_CHECKING:
    from ranchmarket.jobs.runner import SweepReport

logger = logging.getLogger(__name__)


def write_ops_health(
    store: DocumentStore,
    *,
    job_name: str,
    status: Literal["success", "error"],
    report: "SweepReport",
    duration_ms: int,
) -> None:
    """
    Upsert ops_health/{job_name}. Observability only: a failed write is logged
    and never fails the job.
    """
    doc = {
        "job_name": job_name,
        "last_run_at": utc_now(),
        "status": status,
        "scanned_count": report.scanned,
        "processed_count": report.processed,
        "errors_count": report.errors,
        "last_error": report.last_error,
        "duration_ms": int(duration_ms),
        "outcomes": dict(report.outcomes),
    }
    try:
        store.set(store.ops_health_ref(job_name), doc, merge=True)
    except Exception as e:  # noqa: BLE001
        log_event(logger, "ops_health.write_failed", severity="WARNING", job=job_name, error=str(e)[:500])
