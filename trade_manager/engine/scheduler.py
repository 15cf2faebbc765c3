"""APScheduler integration for the trade monitor.

A single interval job drives the monitor tick on the asyncio loop. The
``stopping`` event is the cancellation token shared with the monitor.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class Ticker:
    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval_seconds: int,
        *,
        job_id: str = "trade_monitor",
        scheduler: AsyncIOScheduler | None = None,
    ):
        self._callback = callback
        self.interval_seconds = interval_seconds
        self.job_id = job_id
        self.scheduler = scheduler or AsyncIOScheduler()
        self._owns_scheduler = scheduler is None
        self.stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.scheduler.running and self.scheduler.get_job(self.job_id) is not None

    def start(self):
        """Add the interval job and start the scheduler. The first tick runs immediately."""
        if self.scheduler.get_job(self.job_id):
            return
        self.stopping.clear()
        self.scheduler.add_job(
            self._callback,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.job_id,
            name="Trade monitor",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            next_run_time=datetime.now(timezone.utc),
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Ticker started: {self.job_id} every {self.interval_seconds}s")

    def reschedule(self, interval_seconds: int):
        """Change the tick interval; no-op when unchanged or stopped."""
        if interval_seconds == self.interval_seconds:
            return
        self.interval_seconds = interval_seconds
        if self.scheduler.get_job(self.job_id):
            self.scheduler.reschedule_job(self.job_id, trigger=IntervalTrigger(seconds=interval_seconds))
            logger.info(f"Rescheduled {self.job_id} to every {interval_seconds}s")

    def stop(self):
        self.stopping.set()
        if self.scheduler.get_job(self.job_id):
            self.scheduler.remove_job(self.job_id)
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info(f"Ticker stopped: {self.job_id}")
