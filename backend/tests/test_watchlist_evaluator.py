"""Tests for watchlist evaluation over the records touched by a pass."""
from sqlalchemy import select

from cvewatch.models.watchlist import Watchlist
from cvewatch.services.record_store import RecordStore, UpsertOutcome, UpsertResult
from cvewatch.services.watchlist_evaluator import TouchedRecord, track
from factories import TODAY, add_watchlist, list_alerts, make_record


async def store(session_factory, *records):
    touched = {}
    async with session_factory() as db:
        repo = RecordStore(db)
        for record in records:
            track(touched, await repo.upsert(record))
        await db.commit()
    return touched


async def get_watchlist(session_factory, watchlist_id):
    async with session_factory() as db:
        return (await db.execute(select(Watchlist).where(Watchlist.id == watchlist_id))).scalar_one()


class TestTrack:
    def test_unchanged_ignored(self):
        touched = {}
        track(touched, UpsertResult(UpsertOutcome.unchanged, make_record("CVE-2024-3000")))
        assert touched == {}

    def test_keeps_state_before_the_pass(self):
        original = make_record("CVE-2024-3001", score=3.0)
        middle = make_record("CVE-2024-3001", score=5.0)
        final = make_record("CVE-2024-3001", score=9.0)
        touched = {}
        track(touched, UpsertResult(UpsertOutcome.updated, middle, original))
        track(touched, UpsertResult(UpsertOutcome.updated, final, middle))

        item = touched["CVE-2024-3001"]
        assert item.previous == original
        assert item.record == final
        assert item.outcome == UpsertOutcome.updated


class TestEvaluate:
    async def test_alert_per_matching_watchlist(self, session_factory, evaluator):
        critical = await add_watchlist(session_factory, "Critical", cvss_min=9)
        apache = await add_watchlist(session_factory, "Apache", vendors=["apache"])
        touched = await store(
            session_factory,
            make_record("CVE-2024-3100", score=9.8, vendor="Apache"),
            make_record("CVE-2024-3101", score=4.0, vendor="Apache"),
            make_record("CVE-2024-3102", score=2.0, vendor="Acme"),
        )
        summary = await evaluator.evaluate(touched, today=TODAY)

        assert summary.watchlists == 2
        assert summary.alerts_created == 3
        assert summary.new_matches == 3
        pairs = sorted((a.cve_id, a.watchlist_id) for a in await list_alerts(session_factory))
        assert pairs == sorted([
            ("CVE-2024-3100", critical),
            ("CVE-2024-3100", apache),
            ("CVE-2024-3101", apache),
        ])

    async def test_same_state_not_alerted_twice(self, session_factory, evaluator):
        await add_watchlist(session_factory, "All")
        touched = await store(session_factory, make_record("CVE-2024-3200"))
        await evaluator.evaluate(touched, today=TODAY)
        summary = await evaluator.evaluate(touched, today=TODAY)

        assert summary.alerts_created == 0
        assert len(await list_alerts(session_factory)) == 1

    async def test_disabled_watchlist_ignored(self, session_factory, evaluator):
        await add_watchlist(session_factory, "Paused", enabled=False)
        touched = await store(session_factory, make_record("CVE-2024-3300"))
        summary = await evaluator.evaluate(touched, today=TODAY)

        assert summary.watchlists == 0
        assert await list_alerts(session_factory) == []

    async def test_invalid_stored_query_skipped(self, session_factory, evaluator):
        async with session_factory() as db:
            db.add(Watchlist(name="Broken", query={"cvss_min": 9, "cvss_max": 1}))
            await db.commit()
        good = await add_watchlist(session_factory, "All")
        touched = await store(session_factory, make_record("CVE-2024-3400"))
        summary = await evaluator.evaluate(touched, today=TODAY)

        assert summary.watchlists == 1
        assert [a.watchlist_id for a in await list_alerts(session_factory)] == [good]

    async def test_match_count_covers_whole_store(self, session_factory, evaluator):
        watchlist_id = await add_watchlist(session_factory, "High", cvss_min=7)
        await store(session_factory, make_record("CVE-2024-3500", score=8.0), make_record("CVE-2024-3501", score=7.5))
        touched = await store(session_factory, make_record("CVE-2024-3502", score=9.0))
        await evaluator.evaluate(touched, today=TODAY)

        watchlist = await get_watchlist(session_factory, watchlist_id)
        assert watchlist.match_count == 3
        assert watchlist.last_run is not None
        assert len(await list_alerts(session_factory)) == 1

    async def test_rejected_records_not_alerted(self, session_factory, evaluator):
        await add_watchlist(session_factory, "All")
        touched = await store(session_factory, make_record("CVE-2024-3600", state="REJECTED"))
        summary = await evaluator.evaluate(touched, today=TODAY)
        assert summary.alerts_created == 0

    async def test_updated_match_uses_previous_state(self, session_factory, evaluator):
        await add_watchlist(session_factory, "Critical", cvss_min=9)
        touched = {
            "CVE-2024-3700": TouchedRecord(
                make_record("CVE-2024-3700", score=9.9),
                UpsertOutcome.updated,
                make_record("CVE-2024-3700", score=9.1),
            ),
        }
        summary = await evaluator.evaluate(touched, today=TODAY)
        assert summary.updated_matches == 1
        assert summary.new_matches == 0
