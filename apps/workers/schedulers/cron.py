from __future__ import annotations

import logging
from typing import Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.workers.runner import SyncRunner
from cdc.metrics import serve_metrics
from core.config import settings

logger = logging.getLogger(__name__)


def configure_scheduler() -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.cron_timezone)
    return scheduler


async def _run_sync(runner: SyncRunner) -> None:
    try:
        await runner.run_once()
    except Exception:
        # next interval resumes from the last saved checkpoint
        logger.exception("Scheduled sync failed", extra={"sync": runner.name})
        raise


def add_sync_jobs(scheduler: AsyncIOScheduler, runners: Iterable[SyncRunner], interval_minutes: int | None = None) -> None:
    minutes = interval_minutes or settings.sync_interval_minutes
    for runner in runners:
        scheduler.add_job(
            _run_sync,
            "interval",
            minutes=minutes,
            args=[runner],
            max_instances=1,
            id=f"sync:{runner.name}",
            replace_existing=True,
        )


def start_sync_workers(runners: Iterable[SyncRunner], interval_minutes: int | None = None) -> AsyncIOScheduler:
    """Serve metrics and start interval jobs for ``runners`` on the running event loop."""
    serve_metrics(settings.prometheus_port)
    scheduler = configure_scheduler()
    add_sync_jobs(scheduler, runners, interval_minutes)
    scheduler.start()
    logger.info("Sync workers started", extra={"jobs": [job.id for job in scheduler.get_jobs()]})
    return scheduler
