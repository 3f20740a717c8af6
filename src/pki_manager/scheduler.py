"""
Scheduler — periodic refresh of the published CRL.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

A CRL carries a next_update deadline; relying parties reject it once that
passes, even when nothing was revoked. The refresh schedule therefore has to
fire more often than the CRL lifetime. create_scheduler() checks the longest
gap between upcoming fire times against next_update_days and warns when a
published CRL could expire before the next refresh.

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

from pki_manager.domain.models import CrlArtifact

log = structlog.get_logger()

JOB_ID = "crl_refresh"
GAP_SAMPLES = 32


def refresh_trigger(cron: str, timezone: str | None = None) -> CronTrigger:
    """Build the CronTrigger for a 5-field expression (minute hour dom month dow)."""
    return CronTrigger.from_crontab(cron, timezone=timezone)


def longest_refresh_gap(
    trigger: CronTrigger,
    start: datetime | None = None,
    samples: int = GAP_SAMPLES,
) -> timedelta:
    """
    Longest interval between consecutive fire times over the next `samples` runs.

    Calendar-driven expressions (e.g. the 31st of each month) have uneven
    gaps, so the maximum is taken rather than the first interval.
    """
    moment = start or datetime.now(trigger.timezone)
    previous: datetime | None = None
    longest = timedelta(0)
    for _ in range(samples):
        fire = trigger.get_next_fire_time(previous, moment)
        if fire is None:
            break
        if previous is not None:
            longest = max(longest, fire - previous)
        previous = moment = fire
    return longest


def create_scheduler(
    refresh_fn: Callable[[], Result[CrlArtifact]],
    cron: str = "0 3 * * *",
    run_on_startup: bool = True,
    next_update_days: int | None = None,
) -> BlockingScheduler:
    """
    Create a BlockingScheduler that rebuilds the CRL on a cron schedule.

    Args:
        refresh_fn: Zero-argument callable returning Result[CrlArtifact]
                    (normally CRLBuilder.build).
        cron: Standard 5-field cron expression. Default "0 3 * * *" runs
              daily at 03:00.
        run_on_startup: If True, refresh once immediately before entering the loop.
        next_update_days: Lifetime of each published CRL; when given, a
                          schedule that leaves longer gaps is logged as a warning.

    Returns:
        The configured scheduler (call .start() to begin).
    """
    trigger = refresh_trigger(cron)
    if next_update_days is not None:
        _check_staleness(trigger, cron, timedelta(days=next_update_days))

    job = _refresh_job(refresh_fn)
    scheduler = BlockingScheduler()
    scheduler.add_job(job, trigger=trigger, id=JOB_ID, name="CRL refresh", replace_existing=True)

    if run_on_startup:
        log.info("scheduler.startup_run", message="Refreshing CRL immediately on startup")
        job()

    _register_shutdown_signals(scheduler)
    return scheduler


def _refresh_job(refresh_fn: Callable[[], Result[CrlArtifact]]) -> Callable[[], None]:
    ctx = LoggingExecutionContext(operation="CrlRefresh")

    def _job() -> None:
        (
            ctx.execute(refresh_fn)
            .peek(
                lambda artifact: log.info(
                    "scheduler.job_completed",
                    crl_number=artifact.crl_number,
                    revoked=len(artifact.entries),
                    next_update=artifact.next_update.isoformat(),
                )
            )
            .peek_failure(lambda error: log.error("scheduler.job_failed", failure=str(error)))
        )

    return _job


def _check_staleness(trigger: CronTrigger, cron: str, lifetime: timedelta) -> None:
    gap = longest_refresh_gap(trigger)
    if gap >= lifetime:
        log.warning(
            "scheduler.crl_may_go_stale",
            cron=cron,
            longest_gap_hours=round(gap.total_seconds() / 3600, 1),
            next_update_days=lifetime.days,
        )


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        log.info("scheduler.shutdown_requested", signal=signal.Signals(signum).name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
