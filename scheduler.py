import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from loan import as_utc, utcnow
from sweeper import OverdueSweeper, SweepReport

logger = logging.getLogger(__name__)


class FineScheduler:
    """Runs the overdue sweep once a day (or on a fixed interval) as an asyncio task.

    Sweeps run in a worker thread so the event loop keeps serving requests.
    Overlapping with a manual sweep is harmless: every loan update is
    idempotent for a given instant.
    """

    def __init__(self, sweeper: OverdueSweeper, fine_per_day: Optional[float] = None,
                 run_at_hour: Optional[int] = None, interval_seconds: Optional[float] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.sweeper = sweeper
        self.fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
        self.run_at_hour = settings.fine_sweep_hour if run_at_hour is None else run_at_hour
        if not 0 <= self.run_at_hour <= 23:
            raise ValueError("run_at_hour must be between 0 and 23")
        self.interval_seconds = settings.fine_sweep_interval_seconds if interval_seconds is None else interval_seconds
        if self.interval_seconds is not None and self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.clock = clock
        self.last_report: Optional[SweepReport] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        if self.interval_seconds:
            return float(self.interval_seconds)
        now = as_utc(now or self.clock())
        next_run = now.replace(hour=self.run_at_hour, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    async def run_once(self, trigger: str = "scheduled") -> SweepReport:
        report = await asyncio.to_thread(self.sweeper.sweep, self.fine_per_day, None, trigger)
        self.last_report = report
        return report

    async def _run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.seconds_until_next_run())
            logger.info("Starting scheduled fine update...")
            try:
                report = await self.run_once("scheduled")
                logger.info(f"Scheduled fine update completed. Updated {report.updated_count} loans.")
            except Exception:
                # The job must survive a failed run and try again next time.
                logger.exception("Error in scheduled fine update")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_forever())
        logger.info(f"Fine update job started (next run in {self.seconds_until_next_run():.0f}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Fine update job stopped")
