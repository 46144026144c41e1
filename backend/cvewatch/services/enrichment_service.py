"""
Exploitation enrichment from the CVSS-BT dataset (EPSS, CISA KEV, exploit maturity).
Rows are stored per CVE and folded into the stored records through the normalizer.
"""
import csv
import io
import re
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential
import structlog

from cvewatch.config import settings
from cvewatch.models.cve import CveEnrichment
from cvewatch.models.job import JobPhase, JobStatus
from cvewatch.schemas.cve import Enrichment
from cvewatch.services.job_tracker import CANCELLED_ERROR, JobCounters, JobTracker
from cvewatch.services.normalizer import CVE_ID_RE, CveNormalizer
from cvewatch.services.record_store import RecordStore
from cvewatch.services.watchlist_evaluator import TouchedRecord, WatchlistEvaluator, merge_touched, track

logger = structlog.get_logger()

TIMEOUT = httpx.Timeout(120.0, connect=10.0)

MATURITY_RE = re.compile(r"(?:^|/)E:([A-Z]+)")
MATURITY_CODES = {"A": "A", "H": "H", "F": "F", "P": "POC", "POC": "POC", "U": "U", "X": "U"}


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=30))
async def fetch_cvss_bt(url: str) -> str:
    async with httpx.AsyncClient(timeout=TIMEOUT, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def exploit_maturity_from_vector(vector: str | None) -> str:
    """Read the temporal E: metric; no E: component means unreported (U)."""
    match = MATURITY_RE.search(vector or "")
    if not match:
        return "U"
    return MATURITY_CODES.get(match.group(1), "U")


def _float(value) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except ValueError:
        return None


def parse_cvss_bt(text: str) -> dict[str, Enrichment]:
    enrichments = {}
    for row in csv.DictReader(io.StringIO(text)):
        cve_id = (row.get("cve") or "").strip().upper()
        if not CVE_ID_RE.match(cve_id):
            continue
        epss = _float(row.get("epss"))
        enrichments[cve_id] = Enrichment(
            epss_score=epss if epss is not None and 0 <= epss <= 1 else None,
            kev=str(row.get("cisa_kev", "")).strip().lower() == "true",
            exploit_maturity=exploit_maturity_from_vector(row.get("cvss_bt_vector")),
        )
    return enrichments


class EnrichmentService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        tracker: JobTracker,
        evaluator: WatchlistEvaluator,
        normalizer: CveNormalizer | None = None,
        url: str | None = None,
        fetch=fetch_cvss_bt,
        batch_size: int | None = None,
        cancel_check_interval: int | None = None,
    ):
        self.session_factory = session_factory
        self.tracker = tracker
        self.evaluator = evaluator
        self.normalizer = normalizer or CveNormalizer()
        self.url = url or settings.enrichment_csv_url
        self.fetch = fetch
        self.batch_size = batch_size or settings.ingest_batch_size
        self.cancel_check_interval = cancel_check_interval or settings.cancel_check_interval

    async def run(self, job_id: int):
        log = self.tracker.logger(job_id)
        counters = JobCounters()
        touched: dict[str, TouchedRecord] = {}
        evaluated = False

        try:
            async with self.tracker.keep_alive(job_id):
                await self.tracker.update_progress(job_id, counters, phase=JobPhase.downloading)
                await log.info("Downloading enrichment feed", url=self.url)
                rows = parse_cvss_bt(await self.fetch(self.url))
                counters.total = len(rows)
                await log.info("Enrichment feed parsed", rows=len(rows))

                await self.tracker.update_progress(job_id, counters, phase=JobPhase.processing)
                cancelled = await self._process(job_id, sorted(rows.items()), counters, touched)

                await self.tracker.update_progress(job_id, counters, phase=JobPhase.evaluating_watchlists)
                summary = await self.evaluator.evaluate(touched, job_id=job_id)
                evaluated = True
                await log.info(
                    "Watchlists evaluated",
                    records_changed=len(touched),
                    new_matches=summary.new_matches,
                    updated_matches=summary.updated_matches,
                )

                if cancelled:
                    await log.warn("Enrichment cancelled", processed=counters.processed)
                    await self.tracker.finish(job_id, JobStatus.cancelled, error=CANCELLED_ERROR)
                    return
                await log.info(
                    "Enrichment completed",
                    added=counters.added,
                    updated=counters.updated,
                    unchanged=counters.unchanged,
                )
                await self.tracker.finish(job_id, JobStatus.completed)
        except Exception as e:
            logger.error("Enrichment failed", job_id=job_id, error=str(e), exc_info=True)
            try:
                if touched and not evaluated:
                    await self.evaluator.evaluate_committed(touched, job_id, log)
                await log.error(f"Enrichment failed: {e}")
            finally:
                await self.tracker.finish(job_id, JobStatus.failed, error=str(e))

    async def _process(self, job_id: int, items: list[tuple[str, Enrichment]], counters: JobCounters, touched) -> bool:
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            cancelled = False
            batch_touched: dict[str, TouchedRecord] = {}

            async with self.session_factory() as db:
                store = RecordStore(db)
                ids = [cve_id for cve_id, _ in batch]
                result = await db.execute(select(CveEnrichment).where(CveEnrichment.cve_id.in_(ids)))
                stored = {row.cve_id: row for row in result.scalars().all()}
                records = await store.get_many(ids)

                for cve_id, enrichment in batch:
                    if counters.processed % self.cancel_check_interval == 0:
                        if await self.tracker.is_cancel_requested(job_id):
                            cancelled = True
                            break
                    counters.processed += 1

                    row = stored.get(cve_id)
                    if row is None:
                        db.add(CveEnrichment(cve_id=cve_id, **enrichment.model_dump()))
                        counters.added += 1
                    elif Enrichment.model_validate(row) == enrichment:
                        counters.unchanged += 1
                    else:
                        for field, value in enrichment.model_dump().items():
                            setattr(row, field, value)
                        counters.updated += 1

                    record = records.get(cve_id)
                    if record is not None:
                        enriched = self.normalizer.apply_enrichment(record, enrichment)
                        track(batch_touched, await store.upsert(enriched, job_id=job_id))

                await db.commit()
            merge_touched(touched, batch_touched)

            if cancelled or not await self.tracker.update_progress(job_id, counters):
                return True
        return False
