"""Tests for CVSS-BT parsing and the enrichment job."""
import pytest

from cvewatch.models.alert import AlertType
from cvewatch.models.job import JobStatus
from cvewatch.schemas.cve import Enrichment
from cvewatch.services.enrichment_service import EnrichmentService, exploit_maturity_from_vector, parse_cvss_bt
from cvewatch.services.record_store import RecordStore
from factories import add_watchlist, list_alerts, make_raw_cve, make_record

CSV_HEADER = "cve,cvss_bt_score,cvss_bt_severity,cvss_bt_vector,cvss_version,base_score,base_severity,base_vector,assigner,published_date,epss,cisa_kev,vulncheck_kev,exploitdb,metasploit,nuclei,poc_github\n"


def csv_row(cve_id, epss="0.5", kev="False", vector="CVSS:3.1/AV:N/AC:L/E:P"):
    return f"{cve_id},8.1,HIGH,{vector},3.1,9.8,CRITICAL,,vendor,2024-01-01,{epss},{kev},False,False,False,False,False\n"


class FakeFeed:
    def __init__(self, text):
        self.text = text
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        return self.text


@pytest.fixture
def fetch():
    return FakeFeed(CSV_HEADER)


@pytest.fixture
def enrichment_service(session_factory, tracker, evaluator, fetch):
    return EnrichmentService(
        session_factory, tracker, evaluator,
        url="https://example.com/cvss-bt.csv", fetch=fetch, batch_size=2, cancel_check_interval=1,
    )


async def seed(session_factory, *records):
    async with session_factory() as db:
        for record in records:
            await RecordStore(db).upsert(record)
        await db.commit()


async def run_enrichment(tracker, service):
    job_id = await tracker.start_job("enrichment")
    await service.run(job_id)
    return await tracker.get_job(job_id)


class TestExploitMaturity:
    def test_codes(self):
        assert exploit_maturity_from_vector("CVSS:3.1/AV:N/E:H/RL:O") == "H"
        assert exploit_maturity_from_vector("CVSS:3.1/AV:N/E:F") == "F"
        assert exploit_maturity_from_vector("CVSS:3.1/AV:N/E:P") == "POC"
        assert exploit_maturity_from_vector("CVSS:4.0/AV:N/E:A") == "A"
        assert exploit_maturity_from_vector("CVSS:3.1/AV:N/E:X") == "U"

    def test_missing_component(self):
        assert exploit_maturity_from_vector("CVSS:3.1/AV:N/AC:L") == "U"
        assert exploit_maturity_from_vector(None) == "U"


class TestParseCvssBt:
    def test_rows(self):
        text = CSV_HEADER + csv_row("CVE-2024-0001", epss="0.97", kev="True") + csv_row("cve-2024-0002", epss="")
        rows = parse_cvss_bt(text)
        assert rows == {
            "CVE-2024-0001": Enrichment(epss_score=0.97, kev=True, exploit_maturity="POC"),
            "CVE-2024-0002": Enrichment(epss_score=None, kev=False, exploit_maturity="POC"),
        }

    def test_skips_bad_rows(self):
        text = CSV_HEADER + csv_row("not-a-cve") + csv_row("CVE-2024-0003", epss="7")
        rows = parse_cvss_bt(text)
        assert list(rows) == ["CVE-2024-0003"]
        assert rows["CVE-2024-0003"].epss_score is None


class TestEnrichmentJob:
    async def test_enriches_stored_records(self, tracker, enrichment_service, fetch, session_factory):
        await seed(session_factory, make_record("CVE-2024-0001", score=9.8), make_record("CVE-2024-0002"))
        fetch.text = (
            CSV_HEADER
            + csv_row("CVE-2024-0001", epss="0.9", kev="True", vector="CVSS:3.1/E:H")
            + csv_row("CVE-2024-0002", epss="0.01")
            + csv_row("CVE-2024-0003", epss="0.2")
        )
        job = await run_enrichment(tracker, enrichment_service)

        assert job.status == JobStatus.completed.value
        assert job.kind == "enrichment"
        assert (job.items_processed, job.items_added) == (3, 3)
        assert fetch.urls == ["https://example.com/cvss-bt.csv"]

        async with session_factory() as db:
            store = RecordStore(db)
            first = await store.get("CVE-2024-0001")
            assert (first.epss_score, first.kev, first.exploit_maturity) == (0.9, True, "H")
            assert (await store.get("CVE-2024-0002")).epss_score == 0.01
            assert await store.get("CVE-2024-0003") is None
            assert len(await store.history("CVE-2024-0001")) == 1

    async def test_rerun_unchanged(self, tracker, enrichment_service, fetch, session_factory):
        await seed(session_factory, make_record("CVE-2024-0001"))
        fetch.text = CSV_HEADER + csv_row("CVE-2024-0001")
        await run_enrichment(tracker, enrichment_service)
        job = await run_enrichment(tracker, enrichment_service)
        assert (job.items_added, job.items_updated, job.items_unchanged) == (0, 0, 1)

    async def test_kev_watchlist_alerted(self, tracker, enrichment_service, fetch, session_factory):
        await add_watchlist(session_factory, "Known exploited", kev=True)
        await seed(session_factory, make_record("CVE-2024-0001"))
        fetch.text = CSV_HEADER + csv_row("CVE-2024-0001", kev="True")
        await run_enrichment(tracker, enrichment_service)

        alerts = await list_alerts(session_factory)
        assert [(a.cve_id, a.alert_type) for a in alerts] == [("CVE-2024-0001", AlertType.new_match.value)]

    async def test_failure_still_alerts_committed_batches(self, tracker, enrichment_service, fetch, session_factory, monkeypatch):
        await add_watchlist(session_factory, "Known exploited", kev=True)
        cve_ids = ["CVE-2024-0001", "CVE-2024-0002", "CVE-2024-0003"]
        await seed(session_factory, *[make_record(cve_id) for cve_id in cve_ids])
        fetch.text = CSV_HEADER + "".join(csv_row(cve_id, kev="True") for cve_id in cve_ids)

        checks = []

        async def broken_after_first_batch(job_id):
            checks.append(job_id)
            if len(checks) == 3:
                raise RuntimeError("database is locked")
            return False

        monkeypatch.setattr(tracker, "is_cancel_requested", broken_after_first_batch)
        job = await run_enrichment(tracker, enrichment_service)

        assert job.status == JobStatus.failed.value
        alerts = await list_alerts(session_factory)
        assert [a.cve_id for a in alerts] == ["CVE-2024-0001", "CVE-2024-0002"]
        assert (await tracker.list_logs(job.id))[-1].level == "ERROR"

    async def test_feed_ingest_keeps_enrichment(self, tracker, enrichment_service, ingest_service, synchronizer, fetch, session_factory):
        fetch.text = CSV_HEADER + csv_row("CVE-2024-0001", epss="0.4", kev="True")
        await run_enrichment(tracker, enrichment_service)

        synchronizer.records = {"CVE-2024-0001": make_raw_cve("CVE-2024-0001", score=5.0)}
        job_id = await tracker.start_job("feed")
        await ingest_service.run(job_id)

        async with session_factory() as db:
            record = await RecordStore(db).get("CVE-2024-0001")
        assert record.kev is True
        assert record.epss_score == 0.4

    async def test_download_failure_fails_job(self, tracker, session_factory, evaluator):
        async def broken(url):
            raise RuntimeError("503 Service Unavailable")

        service = EnrichmentService(session_factory, tracker, evaluator, url="https://example.com/x.csv", fetch=broken)
        job = await run_enrichment(tracker, service)
        assert job.status == JobStatus.failed.value
        assert "503" in job.error

    async def test_cancelled(self, tracker, enrichment_service, fetch):
        fetch.text = CSV_HEADER + csv_row("CVE-2024-0001") + csv_row("CVE-2024-0002")
        job_id = await tracker.start_job("enrichment")
        await tracker.request_cancel(job_id)
        await enrichment_service.run(job_id)

        job = await tracker.get_job(job_id)
        assert job.status == JobStatus.cancelled.value
        assert job.items_processed == 0
