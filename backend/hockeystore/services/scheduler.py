"""
APScheduler Configuration for the Reservation Sweep

Runs sweep_stale_payments on a fixed interval inside the app's event loop.
Jobs are registered at startup, so the in-memory job store is sufficient.
"""
import asyncio
import logging
from typing import Optional, Set

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings
from ..db.init_db import Database
from .reservation_sweeper import sweep_stale_payments

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reservation_sweep"


class ReservationSweepScheduler:
    """
    Background scheduler owning the sweep job.

    Configuration:
    - AsyncIOScheduler for async job execution
    - AsyncIOExecutor so the sweep runs on the app's loop
    - Coalesce: True (skip missed runs)
    - Max instances: 1 (sweeps never overlap)
    """

    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings
        self._sweeps: Set[asyncio.Task] = set()
        self._stopping = False
        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60
            },
            timezone="UTC"
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    async def _run_sweep(self) -> None:
        if self._stopping:
            return
        task = asyncio.current_task()
        self._sweeps.add(task)
        try:
            await sweep_stale_payments(self.database, self.settings)
        except Exception as e:
            # Next interval retries; the failed sweep rolled back
            logger.error(f"Reservation sweep failed: {e}", exc_info=True)
        finally:
            self._sweeps.discard(task)

    def start(self) -> None:
        """
        Register the sweep job and start the scheduler.

        Should be called during FastAPI app startup.
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._stopping = False
        self._scheduler.add_job(
            self._run_sweep,
            trigger=IntervalTrigger(seconds=self.settings.sweep_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Release stale reservations",
            replace_existing=True
        )
        self._scheduler.start()
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        logger.info(
            f"Scheduler started: sweep every {self.settings.sweep_interval_seconds}s, "
            f"next_run={job.next_run_time if job else None}"
        )

    async def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler gracefully.

        Must complete before the store is disposed. AsyncIOScheduler only
        schedules its own shutdown on the loop and its executor cancels
        running jobs, so in-flight sweeps are drained here first.

        Args:
            wait: Wait for a running sweep to complete before shutdown
        """
        if not self._scheduler.running:
            return

        self._stopping = True
        if wait and self._sweeps:
            await asyncio.gather(*self._sweeps, return_exceptions=True)

        self._scheduler.shutdown(wait=False)
        while self._scheduler.running:
            await asyncio.sleep(0)
        logger.info(f"Scheduler shutdown (wait={wait})")

    def get_job(self, job_id: str = SWEEP_JOB_ID):
        return self._scheduler.get_job(job_id)


def build_scheduler(database: Database, settings: Settings) -> Optional[ReservationSweepScheduler]:
    """Scheduler for the app, or None when sweeping is disabled (interval <= 0)."""
    if settings.sweep_interval_seconds <= 0:
        logger.info("Reservation sweep disabled")
        return None
    return ReservationSweepScheduler(database, settings)
