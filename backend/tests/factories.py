"""Builders for CVE JSON 5 documents, an in-memory feed and database fixtures."""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from cvewatch.models.alert import Alert
from cvewatch.models.cve import CveExploit
from cvewatch.models.job import IngestionJob
from cvewatch.models.watchlist import Watchlist
from cvewatch.schemas.cve import CveRecord
from cvewatch.schemas.query import QueryModel
from cvewatch.services.feed_sync import ChangeDescriptor, SyncResult
from cvewatch.services.normalizer import CveNormalizer

TODAY = date(2024, 6, 15)


def make_raw_cve(
    cve_id: str,
    score: Optional[float] = None,
    version: str = "cvssV3_1",
    description: str = "Buffer overflow in the widget parser",
    published: str = "2024-01-15T10:00:00.000Z",
    updated: Optional[str] = None,
    state: str = "PUBLISHED",
    vendor: str = "Acme",
    product: str = "Widget",
    tags: Optional[List[str]] = None,
    adp_metrics: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Build a minimal CVE JSON 5 record."""
    cna: Dict[str, Any] = {
        "descriptions": [{"lang": "en", "value": description}],
        "affected": [{"vendor": vendor, "product": product, "versions": [{"version": "1.0", "status": "affected"}]}],
        "references": [{"url": f"https://example.com/advisories/{cve_id}"}],
        "metrics": [],
    }
    if score is not None:
        cna["metrics"].append({version: {"baseScore": score, "vectorString": f"{version}/AV:N/AC:L"}})
    if tags:
        cna["tags"] = tags
    if state == "REJECTED":
        cna = {"rejectedReasons": [{"lang": "en", "value": "This candidate was withdrawn."}]}

    containers: Dict[str, Any] = {"cna": cna}
    if adp_metrics:
        containers["adp"] = [{"title": "CISA ADP Vulnrichment", "metrics": adp_metrics}]

    return {
        "dataType": "CVE_RECORD",
        "dataVersion": "5.1",
        "cveMetadata": {
            "cveId": cve_id,
            "state": state,
            "datePublished": published,
            "dateUpdated": updated or published,
        },
        "containers": containers,
    }


class FakeSynchronizer:
    """In-memory stand-in for FeedSynchronizer.

    ``records`` maps CVE id to raw JSON (or to an Exception to raise on read).
    Every sync reports all records as changed, like a full walk.
    """

    def __init__(self, records: Optional[Dict[str, Any]] = None):
        self.records: Dict[str, Any] = dict(records or {})
        self.removed: List[str] = []
        self.revision = 1
        self.committed: Optional[str] = None
        self.sync_error: Optional[Exception] = None
        self.on_read = None  # async callable(index) invoked before each read
        self.reads = 0
        self.sync_calls: List[bool] = []

    async def sync(self, full: bool = False) -> SyncResult:
        self.sync_calls.append(full)
        if self.sync_error:
            raise self.sync_error
        changes = [
            ChangeDescriptor(cve_id, "modified", f"cves/{cve_id}.json") for cve_id in sorted(self.records)
        ]
        changes += [ChangeDescriptor(cve_id, "removed", f"cves/{cve_id}.json") for cve_id in self.removed]
        return SyncResult("full", self.committed, f"rev{self.revision}", changes)

    async def read_record(self, change: ChangeDescriptor) -> dict:
        if self.on_read is not None:
            await self.on_read(self.reads)
        self.reads += 1
        raw = self.records[change.record_id]
        if isinstance(raw, Exception):
            raise raw
        return raw

    async def last_revision(self) -> Optional[str]:
        return self.committed

    async def commit_revision(self, revision: str):
        self.committed = revision


def make_record(cve_id: str, **kwargs) -> CveRecord:
    return CveNormalizer().normalize(make_raw_cve(cve_id, **kwargs))


async def add_watchlist(session_factory, name: str, enabled: bool = True, **query) -> str:
    async with session_factory() as db:
        watchlist = Watchlist(name=name, query=QueryModel(**query).to_storage(), enabled=enabled)
        db.add(watchlist)
        await db.commit()
        return watchlist.id


async def list_alerts(session_factory) -> list:
    async with session_factory() as db:
        result = await db.execute(select(Alert).order_by(Alert.cve_id, Alert.created_at))
        return list(result.scalars().all())


async def age_heartbeat(session_factory, job_id: int, seconds: int):
    """Push a job's last heartbeat into the past."""
    async with session_factory() as db:
        await db.execute(
            update(IngestionJob)
            .where(IngestionJob.id == job_id)
            .values(last_heartbeat=datetime.utcnow() - timedelta(seconds=seconds))
        )
        await db.commit()


def make_poc_markdown(cve_id: str, github: Optional[List[str]] = None, references: Optional[List[str]] = None) -> str:
    """Build a trickest/cve style markdown page."""
    lines = [f"### [{cve_id}](https://www.cve.org/CVERecord?id={cve_id})", "", "### Description", "",
             "Buffer overflow in the widget parser", "", "### POC", "", "#### Reference"]
    lines += [f"- {url}" for url in references or []]
    lines += ["", "#### Github"]
    lines += [f"- {url}" for url in github or []]
    return "\n".join(lines) + "\n"


class FakeExploitMirror:
    """In-memory stand-in for ExploitMirror.

    ``files`` maps a relative path to markdown text (or to an Exception to raise on read).
    """

    repo_url = "https://example.com/trickest/cve.git"

    def __init__(self, files: Optional[Dict[str, Any]] = None):
        self.files: Dict[str, Any] = dict(files or {})
        self.sync_error: Optional[Exception] = None
        self.on_read = None  # async callable(index) invoked before each read
        self.reads = 0
        self.sync_calls = 0

    async def sync(self) -> str:
        self.sync_calls += 1
        if self.sync_error:
            raise self.sync_error
        return "poc1"

    async def walk(self) -> List[str]:
        return sorted(self.files)

    async def read(self, path: str) -> str:
        if self.on_read is not None:
            await self.on_read(self.reads)
        self.reads += 1
        text = self.files[path]
        if isinstance(text, Exception):
            raise text
        return text


async def list_exploits(session_factory) -> list:
    async with session_factory() as db:
        result = await db.execute(select(CveExploit).order_by(CveExploit.cve_id, CveExploit.source, CveExploit.url))
        return [(row.cve_id, row.source, row.url) for row in result.scalars().all()]
