"""
Public exploit and proof-of-concept links from the trickest/cve index.
Every CVE has a markdown file per year directory; the links listed under its
"### POC" section replace the CVE's stored exploit links.
"""
import asyncio
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from cvewatch.config import settings
from cvewatch.exceptions import FeedSyncError
from cvewatch.models.cve import CveExploit
from cvewatch.models.job import JobPhase, JobStatus
from cvewatch.services.feed_sync import GitMirror
from cvewatch.services.job_tracker import CANCELLED_ERROR, JobCounters, JobLogger, JobTracker
from cvewatch.services.record_store import RecordStore

logger = structlog.get_logger()

CVE_FILE_RE = re.compile(r"^(CVE-\d{4}-\d+)", re.IGNORECASE)
YEAR_DIR_RE = re.compile(r"^\d{4}$")

# First match wins
SOURCE_MARKERS = [
    ("github.com", "github"),
    ("exploit-db.com", "exploitdb"),
    ("packetstormsecurity.com", "packetstorm"),
    ("rapid7.com", "metasploit"),
    ("metasploit", "metasploit"),
    ("nuclei-templates", "nuclei"),
    ("cisa.gov", "cisa"),
    ("hackerone.com", "hackerone"),
]


def categorize_url(url: str) -> str:
    for marker, source in SOURCE_MARKERS:
        if marker in url:
            return source
    return "reference"


@dataclass(frozen=True)
class ExploitEntry:
    source: str
    url: str


def parse_poc_markdown(filename: str, text: str) -> tuple[str, list[ExploitEntry]] | None:
    """Extract the links of the ``### POC`` section.

    Links under ``#### Github`` are always attributed to github; the rest are
    categorized by host. Returns None for files not named after a CVE.
    """
    match = CVE_FILE_RE.match(PurePosixPath(filename).stem)
    if not match:
        return None
    cve_id = match.group(1).upper()

    entries: dict[str, ExploitEntry] = {}
    in_poc = False
    section = None
    for line in text.splitlines():
        stripped = line.strip()
        if stripped == "### POC":
            in_poc = True
            continue
        if line.startswith("#### Reference"):
            section = "reference"
            continue
        if line.startswith("#### Github"):
            section = "github"
            continue
        if in_poc and line.startswith("### "):
            break
        if in_poc and stripped.startswith("- http"):
            url = stripped[2:].strip()
            source = "github" if section == "github" else categorize_url(url)
            entries.setdefault(url, ExploitEntry(source, url))
    return cve_id, sorted(entries.values(), key=lambda e: (e.source, e.url))


class ExploitMirror(GitMirror):
    label = "exploit index"

    def __init__(
        self,
        repo_dir: Path | None = None,
        repo_url: str | None = None,
        retries: int | None = None,
        retry_wait: float | None = None,
    ):
        super().__init__(
            repo_dir or settings.exploit_repo_dir,
            repo_url or settings.exploit_repo_url,
            retries=retries,
            retry_wait=retry_wait,
        )

    async def sync(self) -> str:
        """Clone or fast-forward the index; returns the HEAD revision."""
        if self.has_mirror():
            await self._pull()
        else:
            await self._clone()
        return await self.head_revision()

    async def walk(self) -> list[str]:
        """Paths of the CVE markdown files, relative to the mirror root."""
        def _walk() -> list[str]:
            if not self.repo_dir.is_dir():
                raise FeedSyncError(f"exploit index not found after sync: {self.repo_dir}")
            paths = []
            for year_dir in self.repo_dir.iterdir():
                if not year_dir.is_dir() or not YEAR_DIR_RE.match(year_dir.name):
                    continue
                for path in year_dir.iterdir():
                    if path.is_file() and path.suffix == ".md" and path.name.startswith("CVE-"):
                        paths.append(path.relative_to(self.repo_dir).as_posix())
            return sorted(paths)

        return await asyncio.to_thread(_walk)

    async def read(self, path: str) -> str:
        return await asyncio.to_thread((self.repo_dir / path).read_text, encoding="utf-8")


class ExploitService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        tracker: JobTracker,
        mirror: ExploitMirror | None = None,
        batch_size: int | None = None,
        cancel_check_interval: int | None = None,
    ):
        self.session_factory = session_factory
        self.tracker = tracker
        self.mirror = mirror or ExploitMirror()
        self.batch_size = batch_size or settings.ingest_batch_size
        self.cancel_check_interval = cancel_check_interval or settings.cancel_check_interval

    async def run(self, job_id: int):
        log = self.tracker.logger(job_id)
        counters = JobCounters()

        try:
            async with self.tracker.keep_alive(job_id):
                await self.tracker.update_progress(job_id, counters, phase=JobPhase.preparing_repo)
                await log.info("Synchronizing exploit index", url=self.mirror.repo_url)
                revision = await self.mirror.sync()

                await self.tracker.update_progress(job_id, counters, phase=JobPhase.scanning_files)
                paths = await self.mirror.walk()
                counters.total = len(paths)
                await log.info("Exploit index scanned", revision=revision, files=len(paths))

                await self.tracker.update_progress(job_id, counters, phase=JobPhase.processing)
                stop_reason, skipped = await self._process(job_id, paths, counters, log)

                if stop_reason == CANCELLED_ERROR:
                    await log.warn("Exploit ingestion cancelled", processed=counters.processed)
                    await self.tracker.finish(job_id, JobStatus.cancelled, error=CANCELLED_ERROR)
                    return
                if stop_reason:
                    logger.warning("Exploit ingestion stopped, job no longer running", job_id=job_id)
                    return

                await log.info(
                    "Exploit ingestion completed",
                    processed=counters.processed,
                    added=counters.added,
                    updated=counters.updated,
                    unchanged=counters.unchanged,
                    failed=counters.failed,
                    skipped=skipped,
                )
                await self.tracker.finish(job_id, JobStatus.completed)
        except Exception as e:
            logger.error("Exploit ingestion failed", job_id=job_id, error=str(e), exc_info=True)
            try:
                await log.error(f"Exploit ingestion failed: {e}")
            finally:
                await self.tracker.finish(job_id, JobStatus.failed, error=str(e))

    async def _process(
        self,
        job_id: int,
        paths: list[str],
        counters: JobCounters,
        log: JobLogger,
    ) -> tuple[str | None, int]:
        """Replace exploit links batch by batch.

        Files for CVEs that are not stored are skipped. Returns why it stopped
        early, if it did, and the number of skipped files.
        """
        skipped = 0
        for start in range(0, len(paths), self.batch_size):
            batch = paths[start:start + self.batch_size]
            parsed: list[tuple[str, list[ExploitEntry]]] = []
            problems: list[tuple[str, dict]] = []
            stop_reason = None

            for path in batch:
                if counters.processed % self.cancel_check_interval == 0:
                    if await self.tracker.is_cancel_requested(job_id):
                        stop_reason = CANCELLED_ERROR
                        break
                counters.processed += 1
                try:
                    result = parse_poc_markdown(path, await self.mirror.read(path))
                except (OSError, UnicodeDecodeError) as e:
                    counters.failed += 1
                    problems.append((f"Failed to read exploit file: {e}", {"path": path}))
                    continue
                if result is None:
                    skipped += 1
                    continue
                parsed.append(result)

            async with self.session_factory() as db:
                known = await RecordStore(db).existing_ids([cve_id for cve_id, _ in parsed])
                stored = await self._stored_links(db, sorted(known))
                for cve_id, entries in parsed:
                    if cve_id not in known:
                        skipped += 1
                        continue
                    current = stored.get(cve_id, set())
                    wanted = {(e.source, e.url) for e in entries}
                    if wanted == current:
                        counters.unchanged += 1
                        continue
                    await db.execute(delete(CveExploit).where(CveExploit.cve_id == cve_id))
                    db.add_all(CveExploit(cve_id=cve_id, source=source, url=url) for source, url in sorted(wanted))
                    stored[cve_id] = wanted
                    if current:
                        counters.updated += 1
                    else:
                        counters.added += 1
                await db.commit()

            for message, meta in problems:
                await log.warn(message, **meta)
            if stop_reason:
                return stop_reason, skipped
            if not await self.tracker.update_progress(job_id, counters):
                return "job no longer running", skipped
            logger.debug("Exploit batch committed", job_id=job_id, processed=counters.processed, total=counters.total)
        return None, skipped

    @staticmethod
    async def _stored_links(db: AsyncSession, cve_ids: list[str]) -> dict[str, set[tuple[str, str]]]:
        if not cve_ids:
            return {}
        result = await db.execute(
            select(CveExploit.cve_id, CveExploit.source, CveExploit.url).where(CveExploit.cve_id.in_(cve_ids))
        )
        links: dict[str, set[tuple[str, str]]] = {}
        for cve_id, source, url in result.all():
            links.setdefault(cve_id, set()).add((source, url))
        return links
