"""
APScheduler Configuration for the Expiration Sweeper

Runs ExpirationSweeper.sweep() on a fixed interval inside the FastAPI
event loop. One instance of the job at a time per process; missed runs are
coalesced into one.
"""
import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .expiration_sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "payment_expiration_sweep"


class SweepScheduler:
    """
    Scheduler owning the single periodic sweep job.

    Configuration:
    - AsyncIOScheduler, in-memory job store (the job is re-added at startup)
    - Coalesce: True (combine missed runs into one)
    - Max instances: 1 (a slow sweep never overlaps the next)
    """

    def __init__(self, sweeper: ExpirationSweeper, interval_seconds: int = 60):
        self._sweeper = sweeper
        self._interval_seconds = interval_seconds

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': max(1, interval_seconds)
        }
        self._scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

        logger.info(f"Sweep scheduler initialized (interval: {interval_seconds}s)")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """
        Register the sweep job and start the scheduler.

        Should be called during FastAPI app startup.
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self._sweeper.sweep,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=SWEEP_JOB_ID,
            name="Expire stale payments",
            replace_existing=True
        )
        self._scheduler.start()

        next_run = self._scheduler.get_job(SWEEP_JOB_ID).next_run_time
        logger.info(f"Scheduler started. Sweep next_run={next_run}")

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler gracefully.

        Should be called during FastAPI app shutdown.
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def get_job(self):
        return self._scheduler.get_job(SWEEP_JOB_ID)


_scheduler: Optional[SweepScheduler] = None


def start_scheduler(sweeper: ExpirationSweeper, interval_seconds: int) -> SweepScheduler:
    """
    Create and start the process-wide scheduler.

    Should be called in FastAPI lifespan/startup event.
    """
    global _scheduler
    if _scheduler is None:
        _scheduler = SweepScheduler(sweeper, interval_seconds)
    _scheduler.start()
    return _scheduler


def shutdown_scheduler(wait: bool = True) -> None:
    """
    Shutdown the scheduler during app shutdown.

    Should be called in FastAPI lifespan/shutdown event.
    """
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=wait)
        _scheduler = None
