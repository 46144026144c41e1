import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator
from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from cvewatch.config import settings
from cvewatch.exceptions import JobAlreadyRunningError, JobNotFoundError
from cvewatch.models.job import IngestionJob, JobLogEntry, JobPhase, JobStatus, TERMINAL_STATUSES
from cvewatch.schemas.job import JobLogResponse
from cvewatch.services.log_broker import LogBroker

logger = structlog.get_logger()

ORPHANED_ERROR = "Orphaned job - server restarted"
STALE_ERROR = "Heartbeat lost - job presumed crashed"
CANCELLED_ERROR = "Cancelled by user"

STREAM_POLL_SECONDS = 1.0


def log_event(entry: JobLogEntry) -> dict:
    return {"type": "log", "entry": JobLogResponse.model_validate(entry).model_dump(mode="json", by_alias=True)}


class IngestionLock:
    """Exclusive token held while a job is being created.

    Together with the RUNNING check performed under it, this guarantees that
    at most one ingestion job is RUNNING in this process.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        await self._lock.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._lock.release()


@dataclass
class JobCounters:
    processed: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    total: int | None = None

    @property
    def progress_percent(self) -> float | None:
        if not self.total:
            return None
        return round(min(self.processed / self.total, 1.0) * 100, 1)

    def as_columns(self) -> dict:
        return {
            "items_processed": self.processed,
            "items_added": self.added,
            "items_updated": self.updated,
            "items_unchanged": self.unchanged,
            "items_failed": self.failed,
            "total_items": self.total,
            "progress_percent": self.progress_percent,
        }


class JobLogger:
    """Job-scoped logger: persists, streams and mirrors to structlog."""

    def __init__(self, tracker: "JobTracker", job_id: int):
        self.tracker = tracker
        self.job_id = job_id

    async def info(self, message: str, **meta):
        await self.tracker.append_log(self.job_id, "INFO", message, meta or None)

    async def warn(self, message: str, **meta):
        await self.tracker.append_log(self.job_id, "WARN", message, meta or None)

    async def error(self, message: str, **meta):
        await self.tracker.append_log(self.job_id, "ERROR", message, meta or None)


class JobTracker:
    """Lifecycle of ingestion jobs: RUNNING -> COMPLETED | FAILED | CANCELLED.

    Every mutation of a job is guarded by ``status == RUNNING`` so terminal
    jobs are never written to again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        broker: LogBroker,
        lock: IngestionLock,
        stale_after_seconds: int | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.lock = lock
        self.stale_after = timedelta(seconds=stale_after_seconds or settings.job_stale_after_seconds)
        self.heartbeat_interval = heartbeat_interval or settings.heartbeat_interval

    def logger(self, job_id: int) -> JobLogger:
        return JobLogger(self, job_id)

    # ── Creation / termination ──────────────────────────────────────────

    async def start_job(self, kind: str) -> int:
        async with self.lock:
            await self.reap_stale_jobs()
            async with self.session_factory() as db:
                result = await db.execute(
                    select(IngestionJob.id).where(IngestionJob.status == JobStatus.running.value).limit(1)
                )
                running_id = result.scalar_one_or_none()
                if running_id is not None:
                    raise JobAlreadyRunningError(running_id)

                now = datetime.utcnow()
                job = IngestionJob(
                    kind=kind,
                    status=JobStatus.running.value,
                    start_time=now,
                    last_heartbeat=now,
                    current_phase=JobPhase.initializing.value,
                )
                db.add(job)
                await db.commit()
                job_id = job.id

        logger.info("Ingestion job started", job_id=job_id, kind=kind)
        return job_id

    async def finish(self, job_id: int, status: JobStatus, error: str | None = None) -> bool:
        now = datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.running.value)
                .values(
                    status=status.value,
                    end_time=now,
                    last_heartbeat=now,
                    current_phase=JobPhase(status.value).value,
                    error=error,
                )
            )
            await db.commit()
        finished = result.rowcount > 0
        if finished:
            logger.info("Ingestion job finished", job_id=job_id, status=status.value, error=error)
            self.broker.publish(job_id, {"type": "end", "status": status.value, "error": error})
        return finished

    async def request_cancel(self, job_id: int) -> IngestionJob:
        async with self.session_factory() as db:
            await db.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.running.value)
                .values(cancel_requested=True)
            )
            await db.commit()
        job = await self.get_job(job_id)
        logger.info("Cancellation requested", job_id=job_id, status=job.status)
        return job

    async def is_cancel_requested(self, job_id: int) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(select(IngestionJob.cancel_requested).where(IngestionJob.id == job_id))
            return bool(result.scalar_one_or_none())

    # ── Progress / heartbeat ────────────────────────────────────────────

    async def update_progress(self, job_id: int, counters: JobCounters | None = None, phase: JobPhase | None = None) -> bool:
        """Persist counters and refresh the heartbeat. False once the job is terminal."""
        values = {"last_heartbeat": datetime.utcnow()}
        if counters is not None:
            values.update(counters.as_columns())
        if phase is not None:
            values["current_phase"] = phase.value
        async with self.session_factory() as db:
            result = await db.execute(
                update(IngestionJob)
                .where(IngestionJob.id == job_id, IngestionJob.status == JobStatus.running.value)
                .values(**values)
            )
            await db.commit()
        return result.rowcount > 0

    async def heartbeat(self, job_id: int) -> bool:
        return await self.update_progress(job_id)

    async def _beat(self, job_id: int):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                if not await self.heartbeat(job_id):
                    return
            except Exception as e:
                logger.warning("Heartbeat update failed", job_id=job_id, error=str(e))

    @asynccontextmanager
    async def keep_alive(self, job_id: int):
        """Refresh the heartbeat in the background for the duration of the block."""
        task = asyncio.create_task(self._beat(job_id))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    # ── Crash recovery ──────────────────────────────────────────────────

    async def reap_stale_jobs(self) -> int:
        cutoff = datetime.utcnow() - self.stale_after
        return await self._fail_running(
            STALE_ERROR,
            or_(
                IngestionJob.last_heartbeat < cutoff,
                and_(IngestionJob.last_heartbeat.is_(None), IngestionJob.start_time < cutoff),
            ),
        )

    async def mark_orphaned_jobs(self) -> int:
        """At startup no job can legitimately be RUNNING."""
        return await self._fail_running(ORPHANED_ERROR)

    async def _fail_running(self, error: str, *conditions) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(IngestionJob.id).where(IngestionJob.status == JobStatus.running.value, *conditions)
            )
            job_ids = list(result.scalars().all())
            if not job_ids:
                return 0
            now = datetime.utcnow()
            await db.execute(
                update(IngestionJob)
                .where(IngestionJob.id.in_(job_ids), IngestionJob.status == JobStatus.running.value)
                .values(
                    status=JobStatus.failed.value,
                    end_time=now,
                    current_phase=JobPhase.failed.value,
                    error=error,
                )
            )
            for job_id in job_ids:
                db.add(JobLogEntry(job_id=job_id, timestamp=now, level="ERROR", message=error))
            await db.commit()

        for job_id in job_ids:
            logger.warning("Ingestion job marked failed", job_id=job_id, reason=error)
            self.broker.publish(job_id, {"type": "end", "status": JobStatus.failed.value, "error": error})
        return len(job_ids)

    # ── Reads ───────────────────────────────────────────────────────────

    async def get_job(self, job_id: int) -> IngestionJob:
        await self.reap_stale_jobs()
        async with self.session_factory() as db:
            job = await db.get(IngestionJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, limit: int = 50) -> list[IngestionJob]:
        await self.reap_stale_jobs()
        async with self.session_factory() as db:
            result = await db.execute(
                select(IngestionJob).order_by(IngestionJob.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def running_job(self) -> IngestionJob | None:
        await self.reap_stale_jobs()
        async with self.session_factory() as db:
            result = await db.execute(
                select(IngestionJob).where(IngestionJob.status == JobStatus.running.value).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_logs(self, job_id: int, after_id: int = 0) -> list[JobLogEntry]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(JobLogEntry)
                .where(JobLogEntry.job_id == job_id, JobLogEntry.id > after_id)
                .order_by(JobLogEntry.id)
            )
            return list(result.scalars().all())

    async def last_log_id(self, job_id: int) -> int:
        async with self.session_factory() as db:
            result = await db.execute(select(func.max(JobLogEntry.id)).where(JobLogEntry.job_id == job_id))
            return result.scalar() or 0

    async def events(self, job_id: int, history: bool = False, poll_seconds: float | None = None) -> AsyncIterator[dict]:
        """Log and end events of one job, in order, for a streaming client.

        Without ``history`` only entries appended after the call are sent.
        Live entries come through the broker; if the broker drops this
        subscriber for lagging, the stream resubscribes and reads the missed
        entries back from the log table. Stops after the terminal event.
        """
        poll_seconds = poll_seconds or STREAM_POLL_SECONDS
        last_id = 0 if history else await self.last_log_id(job_id)
        queue = self.broker.subscribe(job_id)
        try:
            if history:
                for entry in await self.list_logs(job_id):
                    last_id = entry.id
                    yield log_event(entry)

            while True:
                if not self.broker.is_subscribed(job_id, queue):
                    logger.info("Log stream catching up after drop", job_id=job_id, after_id=last_id)
                    queue = self.broker.subscribe(job_id)
                    for entry in await self.list_logs(job_id, after_id=last_id):
                        last_id = entry.id
                        yield log_event(entry)

                try:
                    message = await asyncio.wait_for(queue.get(), timeout=poll_seconds)
                except asyncio.TimeoutError:
                    try:
                        job = await self.get_job(job_id)
                    except JobNotFoundError:
                        return
                    if job.status in TERMINAL_STATUSES and queue.empty():
                        for entry in await self.list_logs(job_id, after_id=last_id):
                            last_id = entry.id
                            yield log_event(entry)
                        yield {"type": "end", "status": job.status, "error": job.error}
                        return
                    continue

                if message.get("type") == "log":
                    if message["entry"]["id"] <= last_id:
                        continue
                    last_id = message["entry"]["id"]
                yield message
                if message.get("type") == "end":
                    return
        finally:
            self.broker.unsubscribe(job_id, queue)

    async def append_log(self, job_id: int, level: str, message: str, meta: dict | None = None) -> JobLogEntry:
        async with self.session_factory() as db:
            entry = JobLogEntry(job_id=job_id, timestamp=datetime.utcnow(), level=level, message=message, meta=meta)
            db.add(entry)
            await db.commit()

        log = logger.error if level == "ERROR" else logger.warning if level == "WARN" else logger.info
        log(message, job_id=job_id, **(meta or {}))
        self.broker.publish(job_id, log_event(entry))
        return entry

    async def delete_job(self, job_id: int) -> None:
        job = await self.get_job(job_id)
        if job.status == JobStatus.running.value:
            raise JobAlreadyRunningError(job_id)
        async with self.session_factory() as db:
            await db.execute(delete(JobLogEntry).where(JobLogEntry.job_id == job_id))
            await db.execute(delete(IngestionJob).where(IngestionJob.id == job_id))
            await db.commit()
        logger.info("Ingestion job deleted", job_id=job_id)
