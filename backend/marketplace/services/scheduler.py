"""
APScheduler Configuration for Outbox Retries

Runs the periodic job that retries outbox tasks whose post-commit dispatch
failed. The job is re-registered on every startup, so the in-memory job store
is enough.
"""
import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..db.init_db import AsyncSessionLocal
from . import outbox

logger = logging.getLogger(__name__)

OUTBOX_JOB_ID = "outbox_retry"


class OutboxScheduler:
    """
    Singleton scheduler for background retry jobs.
    """

    _instance: Optional["OutboxScheduler"] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(
                executors={"default": AsyncIOExecutor()},
                job_defaults={
                    "coalesce": True,  # Combine missed runs into one
                    "max_instances": 1,
                    "misfire_grace_time": 300
                },
                timezone="UTC"
            )
            logger.info("APScheduler initialized")

    def start(self):
        """
        Start the scheduler and register the outbox retry job.

        Called during FastAPI startup.
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        interval = get_outbox_interval_seconds()
        self._scheduler.add_job(
            drain_outbox_job,
            trigger=IntervalTrigger(seconds=interval),
            id=OUTBOX_JOB_ID,
            name="Outbox retry",
            replace_existing=True
        )
        self._scheduler.start()
        logger.info(f"Scheduler started. Outbox retry every {interval}s")

    def shutdown(self, wait: bool = True):
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)


async def drain_outbox_job() -> None:
    """Retry pending outbox tasks once."""
    async with AsyncSessionLocal() as db:
        await outbox.drain_pending(db, settings.outbox_max_attempts)


def get_outbox_interval_seconds() -> int:
    """
    Retry interval: 10 seconds in demo mode, otherwise OUTBOX_RETRY_INTERVAL_SECONDS.
    """
    if settings.demo_mode:
        return 10
    return settings.outbox_retry_interval_seconds


# Singleton instance
scheduler = OutboxScheduler()
