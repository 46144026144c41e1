from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from cvewatch.config import settings
from cvewatch.exceptions import JobAlreadyRunningError
from cvewatch.models.job import JobKind
from cvewatch.services.ingest_service import IngestService
from cvewatch.services.job_tracker import JobTracker

logger = structlog.get_logger()

WATCHDOG_JOB_ID = "job_watchdog"
INGEST_JOB_ID = "scheduled_ingest"


class SchedulerService:
    def __init__(self, tracker: JobTracker, ingest: IngestService):
        self.scheduler = AsyncIOScheduler()
        self.tracker = tracker
        self.ingest = ingest
        self._running = False

    async def start(self):
        """Start the stale-job watchdog and, when configured, periodic ingestion."""
        logger.info("Starting scheduler service")
        self.scheduler.add_job(
            self._reap_stale_jobs,
            trigger=IntervalTrigger(seconds=settings.watchdog_interval_seconds),
            id=WATCHDOG_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        if settings.ingest_interval_hours > 0:
            self.scheduler.add_job(
                self._scheduled_ingest,
                trigger=IntervalTrigger(hours=settings.ingest_interval_hours),
                id=INGEST_JOB_ID,
                replace_existing=True,
                max_instances=1,
                misfire_grace_time=300,
            )
        self.scheduler.start()
        self._running = True
        logger.info("Scheduler service started", job_count=len(self.scheduler.get_jobs()))

    async def stop(self):
        """Shutdown scheduler gracefully."""
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler service stopped")

    async def _reap_stale_jobs(self):
        try:
            reaped = await self.tracker.reap_stale_jobs()
            if reaped:
                logger.warning("Watchdog failed stale jobs", count=reaped)
        except Exception as e:
            logger.error("Watchdog run failed", error=str(e))

    async def _scheduled_ingest(self):
        try:
            job_id = await self.tracker.start_job(JobKind.feed.value)
        except JobAlreadyRunningError as e:
            logger.info("Scheduled ingestion skipped, job already running", running_job_id=e.job_id)
            return
        logger.info("Executing scheduled ingestion", job_id=job_id)
        await self.ingest.run(job_id, JobKind.feed.value)
