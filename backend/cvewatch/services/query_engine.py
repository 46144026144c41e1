from datetime import date
from sqlalchemy import select, func, literal_column, table
from sqlalchemy.ext.asyncio import AsyncSession

from cvewatch.models.cve import Cve, CveProduct
from cvewatch.schemas.cve import CveRecord
from cvewatch.schemas.query import CVSS_RANGES, QueryModel, SearchRequest, Visibility
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.matcher import DEFAULT_VISIBILITY, score_field, tokenize
from cvewatch.services.normalizer import normalize_name
from cvewatch.services.pagination import count_rows, paginate
from cvewatch.services.record_store import to_record

SORT_COLUMNS = {
    "published": Cve.published,
    "modified": Cve.last_modified,
    "id": Cve.id,
    "score": Cve.cvss_score,
    "epss": Cve.epss_score,
}


def fts_match_expression(text: str | None) -> str | None:
    """Every token must prefix-match a token of the id or description."""
    tokens = tokenize(text)
    if not tokens:
        return None
    return " AND ".join(f'"{token}"*' for token in tokens)


class CveQueryEngine:
    def __init__(self, db: AsyncSession, presets: DatePresetRegistry):
        self.db = db
        self.presets = presets

    def filters(self, query: QueryModel, visibility: Visibility = DEFAULT_VISIBILITY, today: date | None = None) -> list:
        conditions = []
        if visibility.hide_rejected:
            conditions.append(Cve.status != "REJECTED")
        if visibility.hide_disputed:
            conditions.append(Cve.status != "DISPUTED")

        match = fts_match_expression(query.text)
        if match:
            fts_rows = (
                select(literal_column("rowid"))
                .select_from(table("cves_fts"))
                .where(literal_column("cves_fts").op("MATCH")(match))
            )
            conditions.append(literal_column("cves.rowid").in_(fts_rows))

        for low, high, _ in CVSS_RANGES:
            score = func.coalesce(getattr(Cve, score_field(low)), 0)
            lo, hi = getattr(query, low), getattr(query, high)
            if lo is not None:
                conditions.append(score >= lo)
            if hi is not None:
                conditions.append(score <= hi)

        for prefix, column in (("published", Cve.published), ("modified", Cve.last_modified)):
            start, end = self.presets.window(query, prefix, today)
            if start is not None:
                conditions.append(column >= start)
            if end is not None:
                conditions.append(column <= end)

        if query.vendors or query.products:
            product_match = [CveProduct.cve_id == Cve.id]
            if query.vendors:
                product_match.append(CveProduct.vendor.in_(sorted({normalize_name(v) for v in query.vendors})))
            if query.products:
                product_match.append(CveProduct.product.in_(sorted({normalize_name(p) for p in query.products})))
            conditions.append(select(CveProduct.id).where(*product_match).exists())

        if query.kev:
            conditions.append(Cve.kev.is_(True))
        if query.epss_min is not None:
            conditions.append(func.coalesce(Cve.epss_score, 0) >= query.epss_min)
        if query.exploit_maturity:
            conditions.append(Cve.exploit_maturity.in_(query.exploit_maturity))
        return conditions

    async def search(self, request: SearchRequest, today: date | None = None) -> tuple[list[CveRecord], int]:
        stmt = select(Cve).where(*self.filters(request.query, request.visibility, today))

        column = SORT_COLUMNS[request.sort_by]
        ordering = column.desc() if request.sort_order == "desc" else column.asc()
        if request.sort_by == "id":
            stmt = stmt.order_by(ordering)
        else:
            stmt = stmt.order_by(ordering.nulls_last(), Cve.id.asc())

        items, total = await paginate(self.db, stmt, request.offset, request.limit)
        return [to_record(cve) for cve in items], total

    async def count(self, query: QueryModel, visibility: Visibility = DEFAULT_VISIBILITY, today: date | None = None) -> int:
        return await count_rows(self.db, select(Cve.id).where(*self.filters(query, visibility, today)))

    async def vendors(self, q: str | None = None, limit: int = 20) -> list[dict]:
        count = func.count(func.distinct(CveProduct.cve_id))
        stmt = select(CveProduct.vendor, count.label("cve_count")).group_by(CveProduct.vendor)
        if q:
            stmt = stmt.where(CveProduct.vendor.contains(normalize_name(q), autoescape=True))
        stmt = stmt.order_by(count.desc(), CveProduct.vendor).limit(limit)
        rows = (await self.db.execute(stmt)).all()
        return [{"vendor": row.vendor, "count": row.cve_count} for row in rows]

    async def products(self, q: str | None = None, vendor: str | None = None, limit: int = 20) -> list[dict]:
        count = func.count(func.distinct(CveProduct.cve_id))
        stmt = select(CveProduct.vendor, CveProduct.product, count.label("cve_count")).group_by(
            CveProduct.vendor, CveProduct.product
        )
        if q:
            stmt = stmt.where(CveProduct.product.contains(normalize_name(q), autoescape=True))
        if vendor:
            stmt = stmt.where(CveProduct.vendor == normalize_name(vendor))
        stmt = stmt.order_by(count.desc(), CveProduct.product).limit(limit)
        rows = (await self.db.execute(stmt)).all()
        return [{"vendor": row.vendor, "product": row.product, "count": row.cve_count} for row in rows]
