"""
RepGraph - Recompute Scheduler

Runs as a periodic job inside the arq worker. Every tick it:
    1. Submits a Full recomputation when the last one is older than
       SCHEDULER_FULL_RECOMPUTE_HOURS (skipped while one is active)
    2. Refreshes the population baseline used by CompareToAverage

This is NOT a long-running daemon. It's a cron-like job executed by
arq's cron_jobs mechanism.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from repgraph.compute.jobs import ComputationJob, JobType
from repgraph.config import get_settings
from repgraph.errors import DuplicateActiveJob

logger = structlog.get_logger()

SCHEDULER_USER = "scheduler"


def _parse(ts: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(ts) if ts else None


def full_recompute_due(jobs, every_hours: int, now: Optional[datetime] = None) -> bool:
    """True when no Full job was created within the last `every_hours`."""
    now = now or datetime.now(timezone.utc)
    latest = None
    for job in jobs:
        if job.type != JobType.FULL:
            continue
        created = _parse(job.created_at)
        if created and (latest is None or created > latest):
            latest = created
    return latest is None or now - latest >= timedelta(hours=every_hours)


async def tick(ctx: dict = None) -> dict:
    """Main scheduler tick. Called periodically by arq cron."""
    service = ctx["service"]
    settings = ctx.get("settings") or get_settings()
    logger.info("scheduler_tick_start")

    submitted: Optional[ComputationJob] = None
    if full_recompute_due(service.manager.jobs.list_jobs(), settings.SCHEDULER_FULL_RECOMPUTE_HOURS):
        try:
            submitted = service.manager.submit(JobType.FULL, requested_by=SCHEDULER_USER)
            await service.manager.dispatch(submitted)
            logger.info("scheduler_full_recompute_queued", job_id=submitted.job_id)
        except DuplicateActiveJob as e:
            logger.info("scheduler_full_recompute_skipped", active_job_id=e.active_job_id)

    baseline = service.baseline(refresh=True)
    logger.info("scheduler_tick_complete",
                queued=submitted.job_id if submitted else None,
                baseline_domains=len(baseline.domains))
    return {
        "queued": submitted.job_id if submitted else None,
        "baselineDomains": len(baseline.domains),
    }
