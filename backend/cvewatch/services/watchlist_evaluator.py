from dataclasses import dataclass
from datetime import date, datetime
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

from cvewatch.models.alert import Alert, AlertType
from cvewatch.models.watchlist import Watchlist
from cvewatch.schemas.cve import CveRecord
from cvewatch.schemas.query import QueryModel
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.matcher import matches
from cvewatch.services.query_engine import CveQueryEngine
from cvewatch.services.record_store import UpsertOutcome, UpsertResult

logger = structlog.get_logger()


@dataclass
class TouchedRecord:
    """A record written as added or updated during the current pass."""
    record: CveRecord
    outcome: UpsertOutcome
    previous: CveRecord | None = None

    @classmethod
    def from_result(cls, result: UpsertResult) -> "TouchedRecord":
        return cls(result.record, result.outcome, result.previous)


def track(touched: dict[str, TouchedRecord], result: UpsertResult):
    """Fold an upsert into the pass's touched set, keeping the pre-pass state."""
    if result.outcome == UpsertOutcome.unchanged:
        return
    earlier = touched.get(result.record.id)
    if earlier is None:
        touched[result.record.id] = TouchedRecord.from_result(result)
    else:
        earlier.record = result.record


def merge_touched(touched: dict[str, TouchedRecord], batch: dict[str, TouchedRecord]):
    """Fold a committed batch into the pass's touched set."""
    for cve_id, item in batch.items():
        earlier = touched.get(cve_id)
        if earlier is None:
            touched[cve_id] = item
        else:
            earlier.record = item.record


@dataclass
class EvaluationSummary:
    watchlists: int = 0
    alerts_created: int = 0
    new_matches: int = 0
    updated_matches: int = 0


class WatchlistEvaluator:
    def __init__(self, session_factory: async_sessionmaker, presets: DatePresetRegistry):
        self.session_factory = session_factory
        self.presets = presets

    async def evaluate(
        self,
        touched: dict[str, TouchedRecord],
        job_id: int | None = None,
        today: date | None = None,
    ) -> EvaluationSummary:
        summary = EvaluationSummary()
        async with self.session_factory() as db:
            result = await db.execute(select(Watchlist).where(Watchlist.enabled == True))
            watchlists = list(result.scalars().all())
            engine = CveQueryEngine(db, self.presets)

            for watchlist in watchlists:
                try:
                    query = QueryModel.model_validate(watchlist.query or {})
                except ValidationError as e:
                    logger.warning("Skipping watchlist with invalid query", watchlist_id=watchlist.id, error=str(e))
                    continue
                summary.watchlists += 1

                for item in touched.values():
                    if not matches(item.record, query, self.presets, today=today):
                        continue
                    matched_before = (
                        item.outcome == UpsertOutcome.updated
                        and item.previous is not None
                        and matches(item.previous, query, self.presets, today=today)
                    )
                    alert_type = AlertType.updated_match if matched_before else AlertType.new_match
                    record_hash = item.record.content_hash()

                    existing = await db.execute(
                        select(Alert.id).where(
                            Alert.cve_id == item.record.id,
                            Alert.watchlist_id == watchlist.id,
                            Alert.alert_type == alert_type.value,
                            Alert.record_hash == record_hash,
                        ).limit(1)
                    )
                    if existing.scalar_one_or_none() is not None:
                        continue

                    db.add(Alert(
                        cve_id=item.record.id,
                        watchlist_id=watchlist.id,
                        watchlist_name=watchlist.name,
                        alert_type=alert_type.value,
                        record_hash=record_hash,
                        job_id=job_id,
                    ))
                    summary.alerts_created += 1
                    if matched_before:
                        summary.updated_matches += 1
                    else:
                        summary.new_matches += 1

                watchlist.last_run = datetime.utcnow()
                watchlist.match_count = await engine.count(query, today=today)

            await db.commit()

        logger.info(
            "Watchlists evaluated",
            job_id=job_id,
            watchlists=summary.watchlists,
            touched=len(touched),
            alerts=summary.alerts_created,
        )
        return summary

    async def evaluate_committed(self, touched: dict[str, TouchedRecord], job_id: int, log) -> EvaluationSummary | None:
        """Alert on the records a failing pass already committed.

        The pass is about to be marked FAILED, so an evaluation error is
        logged here and never replaces the original failure.
        """
        try:
            summary = await self.evaluate(touched, job_id=job_id)
        except Exception as e:
            logger.error("Watchlist evaluation of committed records failed", job_id=job_id, error=str(e), exc_info=True)
            return None
        await log.info(
            "Watchlists evaluated for committed records",
            records=len(touched),
            new_matches=summary.new_matches,
            updated_matches=summary.updated_matches,
        )
        return summary
