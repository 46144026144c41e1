"""Feed ingestion pass: sync the mirror, normalize, upsert, evaluate watchlists."""
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from cvewatch.config import settings
from cvewatch.exceptions import CveParseError
from cvewatch.models.job import JobKind, JobPhase, JobStatus
from cvewatch.services.feed_sync import ChangeDescriptor, FeedSynchronizer
from cvewatch.services.job_tracker import CANCELLED_ERROR, JobCounters, JobLogger, JobTracker
from cvewatch.services.normalizer import CveNormalizer
from cvewatch.services.record_store import RecordStore, UpsertOutcome
from cvewatch.services.watchlist_evaluator import TouchedRecord, WatchlistEvaluator, merge_touched, track

logger = structlog.get_logger()


class IngestService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        tracker: JobTracker,
        synchronizer: FeedSynchronizer,
        evaluator: WatchlistEvaluator,
        normalizer: CveNormalizer | None = None,
        batch_size: int | None = None,
        cancel_check_interval: int | None = None,
    ):
        self.session_factory = session_factory
        self.tracker = tracker
        self.synchronizer = synchronizer
        self.evaluator = evaluator
        self.normalizer = normalizer or CveNormalizer()
        self.batch_size = batch_size or settings.ingest_batch_size
        self.cancel_check_interval = cancel_check_interval or settings.cancel_check_interval

    async def run(self, job_id: int, kind: str = JobKind.feed.value):
        """Execute one ingestion pass for an already RUNNING job.

        Never raises: every outcome ends up in the job's status and log.
        """
        log = self.tracker.logger(job_id)
        counters = JobCounters()
        touched: dict[str, TouchedRecord] = {}
        evaluated = False

        try:
            async with self.tracker.keep_alive(job_id):
                await self.tracker.update_progress(job_id, counters, phase=JobPhase.preparing_repo)
                await log.info("Synchronizing feed mirror", kind=kind)
                result = await self.synchronizer.sync(full=kind == JobKind.bulk.value)
                if result.fallback_reason:
                    await log.warn("Incremental diff unavailable, scanning full mirror", reason=result.fallback_reason)
                await log.info(
                    "Feed mirror synchronized",
                    mode=result.mode,
                    from_revision=result.from_revision,
                    to_revision=result.to_revision,
                    changes=len(result.changes),
                )

                counters.total = len(result.changes)
                await self.tracker.update_progress(job_id, counters, phase=JobPhase.processing)
                stop_reason = await self._process(job_id, result.changes, counters, touched, log)

                await self.tracker.update_progress(job_id, counters, phase=JobPhase.evaluating_watchlists)
                summary = await self.evaluator.evaluate(touched, job_id=job_id)
                evaluated = True
                await log.info(
                    "Watchlists evaluated",
                    watchlists=summary.watchlists,
                    new_matches=summary.new_matches,
                    updated_matches=summary.updated_matches,
                )

                if stop_reason == CANCELLED_ERROR:
                    await log.warn("Ingestion cancelled", processed=counters.processed)
                    await self.tracker.finish(job_id, JobStatus.cancelled, error=CANCELLED_ERROR)
                    return
                if stop_reason:
                    logger.warning("Ingestion stopped, job no longer running", job_id=job_id)
                    return

                await self.synchronizer.commit_revision(result.to_revision)
                await log.info(
                    "Ingestion completed",
                    processed=counters.processed,
                    added=counters.added,
                    updated=counters.updated,
                    unchanged=counters.unchanged,
                    failed=counters.failed,
                )
                await self.tracker.finish(job_id, JobStatus.completed)
        except Exception as e:
            logger.error("Ingestion failed", job_id=job_id, error=str(e), exc_info=True)
            try:
                if touched and not evaluated:
                    await self.evaluator.evaluate_committed(touched, job_id, log)
                await log.error(f"Ingestion failed: {e}")
            finally:
                await self.tracker.finish(job_id, JobStatus.failed, error=str(e))

    async def _process(
        self,
        job_id: int,
        changes: list[ChangeDescriptor],
        counters: JobCounters,
        touched: dict[str, TouchedRecord],
        log: JobLogger,
    ) -> str | None:
        """Upsert every change in committed batches. Returns why it stopped early, if it did."""
        for start in range(0, len(changes), self.batch_size):
            batch = changes[start:start + self.batch_size]
            problems: list[tuple[str, str, dict]] = []
            batch_touched: dict[str, TouchedRecord] = {}
            stop_reason = None

            async with self.session_factory() as db:
                store = RecordStore(db)
                enrichment = await store.enrichment_for([c.record_id for c in batch])
                for change in batch:
                    if counters.processed % self.cancel_check_interval == 0:
                        if await self.tracker.is_cancel_requested(job_id):
                            stop_reason = CANCELLED_ERROR
                            break

                    counters.processed += 1
                    if change.change_kind == "removed":
                        problems.append(("warn", "Record removed upstream, keeping stored copy", {
                            "record_id": change.record_id, "path": change.path,
                        }))
                        continue

                    try:
                        raw = await self.synchronizer.read_record(change)
                        record = self.normalizer.normalize(raw, enrichment.get(change.record_id))
                    except CveParseError as e:
                        counters.failed += 1
                        problems.append(("error", f"Failed to parse record: {e.message}", {
                            "record_id": e.record_id or change.record_id, "path": change.path,
                        }))
                        continue

                    result = await store.upsert(record, job_id=job_id)
                    if result.outcome == UpsertOutcome.added:
                        counters.added += 1
                    elif result.outcome == UpsertOutcome.updated:
                        counters.updated += 1
                    else:
                        counters.unchanged += 1
                    track(batch_touched, result)

                await db.commit()
            merge_touched(touched, batch_touched)

            for level, message, meta in problems:
                await getattr(log, level)(message, **meta)
            if stop_reason:
                return stop_reason
            if not await self.tracker.update_progress(job_id, counters):
                return "job no longer running"
            logger.debug("Batch committed", job_id=job_id, processed=counters.processed, total=counters.total)
        return None
