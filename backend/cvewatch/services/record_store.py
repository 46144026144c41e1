from dataclasses import dataclass
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import enum

from cvewatch.models.cve import Cve, CveProduct, CveChange, CveEnrichment, CveExploit
from cvewatch.schemas.cve import CveRecord, Enrichment, ExploitLink


class UpsertOutcome(str, enum.Enum):
    added = "added"
    updated = "updated"
    unchanged = "unchanged"


@dataclass
class UpsertResult:
    outcome: UpsertOutcome
    record: CveRecord
    previous: CveRecord | None = None


def to_record(cve: Cve) -> CveRecord:
    record = CveRecord.model_validate(cve)
    record.products = sorted(record.products, key=lambda p: (p.vendor, p.product))
    return record


def diff_records(previous: CveRecord, current: CveRecord) -> dict:
    old = previous.model_dump(mode="json")
    new = current.model_dump(mode="json")
    return {
        field: {"from": old.get(field), "to": value}
        for field, value in new.items()
        if old.get(field) != value
    }


class RecordStore:
    """Persistence for normalized CVE records.

    Writes are staged on the caller's session; the caller decides when a
    batch is committed.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, cve_id: str) -> CveRecord | None:
        cve = await self.db.get(Cve, cve_id)
        return to_record(cve) if cve else None

    async def get_many(self, cve_ids: list[str]) -> dict[str, CveRecord]:
        if not cve_ids:
            return {}
        result = await self.db.execute(select(Cve).where(Cve.id.in_(cve_ids)))
        return {cve.id: to_record(cve) for cve in result.scalars().all()}

    async def count(self) -> int:
        return (await self.db.execute(select(func.count()).select_from(Cve))).scalar() or 0

    async def upsert(self, record: CveRecord, job_id: int | None = None) -> UpsertResult:
        content_hash = record.content_hash()
        existing = await self.db.get(Cve, record.id)

        if existing is None:
            cve = Cve(content_hash=content_hash, **record.model_dump(exclude={"products"}))
            cve.products = self._products(record)
            self.db.add(cve)
            return UpsertResult(UpsertOutcome.added, record)

        if existing.content_hash == content_hash:
            return UpsertResult(UpsertOutcome.unchanged, record)

        previous = to_record(existing)
        for field, value in record.model_dump(exclude={"products"}).items():
            setattr(existing, field, value)
        existing.content_hash = content_hash
        if previous.products != record.products:
            existing.products = self._products(record)
        self.db.add(CveChange(cve_id=record.id, job_id=job_id, changes=diff_records(previous, record)))
        return UpsertResult(UpsertOutcome.updated, record, previous)

    async def history(self, cve_id: str) -> list[CveChange]:
        result = await self.db.execute(
            select(CveChange).where(CveChange.cve_id == cve_id).order_by(CveChange.id.desc())
        )
        return list(result.scalars().all())

    async def enrichment_for(self, cve_ids: list[str]) -> dict[str, Enrichment]:
        if not cve_ids:
            return {}
        result = await self.db.execute(select(CveEnrichment).where(CveEnrichment.cve_id.in_(cve_ids)))
        return {row.cve_id: Enrichment.model_validate(row) for row in result.scalars().all()}

    async def existing_ids(self, cve_ids: list[str]) -> set[str]:
        if not cve_ids:
            return set()
        result = await self.db.execute(select(Cve.id).where(Cve.id.in_(cve_ids)))
        return set(result.scalars().all())

    async def exploits(self, cve_id: str) -> dict[str, list[ExploitLink]]:
        """Exploit links grouped by source, sources and urls in order."""
        result = await self.db.execute(
            select(CveExploit).where(CveExploit.cve_id == cve_id).order_by(CveExploit.source, CveExploit.url)
        )
        grouped: dict[str, list[ExploitLink]] = {}
        for row in result.scalars().all():
            grouped.setdefault(row.source, []).append(ExploitLink(url=row.url, description=row.description))
        return grouped

    @staticmethod
    def _products(record: CveRecord) -> list[CveProduct]:
        return [CveProduct(vendor=p.vendor, product=p.product) for p in record.products]
