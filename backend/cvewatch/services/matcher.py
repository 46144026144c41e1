"""In-memory evaluation of a QueryModel against one CveRecord.

Kept in lockstep with CveQueryEngine so a watchlist alerts on exactly the
records a search with the same query would return.
"""
import re
from datetime import date

from cvewatch.schemas.cve import CveRecord
from cvewatch.schemas.query import CVSS_RANGES, QueryModel, Visibility
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.normalizer import normalize_name

TOKEN_RE = re.compile(r"[^\W_]+")

DEFAULT_VISIBILITY = Visibility()


def tokenize(text: str | None) -> list[str]:
    return TOKEN_RE.findall((text or "").lower())


def score_field(min_field: str) -> str:
    """cvss31_min -> cvss31_score"""
    return min_field.rsplit("_", 1)[0] + "_score"


def visible(record: CveRecord, visibility: Visibility) -> bool:
    if visibility.hide_rejected and record.status == "REJECTED":
        return False
    if visibility.hide_disputed and record.status == "DISPUTED":
        return False
    return True


def matches(
    record: CveRecord,
    query: QueryModel,
    presets: DatePresetRegistry,
    visibility: Visibility = DEFAULT_VISIBILITY,
    today: date | None = None,
) -> bool:
    if not visible(record, visibility):
        return False

    tokens = tokenize(query.text)
    if tokens:
        words = set(tokenize(record.id)) | set(tokenize(record.description))
        for token in tokens:
            if not any(word.startswith(token) for word in words):
                return False

    # Missing scores count as 0
    for low, high, _ in CVSS_RANGES:
        score = getattr(record, score_field(low)) or 0
        lo, hi = getattr(query, low), getattr(query, high)
        if lo is not None and score < lo:
            return False
        if hi is not None and score > hi:
            return False

    for prefix, value in (("published", record.published), ("modified", record.last_modified)):
        start, end = presets.window(query, prefix, today)
        if start is None and end is None:
            continue
        if value is None:
            return False
        if start is not None and value < start:
            return False
        if end is not None and value > end:
            return False

    if query.vendors or query.products:
        vendors = {normalize_name(v) for v in query.vendors}
        products = {normalize_name(p) for p in query.products}
        if not any(
            (not vendors or item.vendor in vendors) and (not products or item.product in products)
            for item in record.products
        ):
            return False

    if query.kev and not record.kev:
        return False
    if query.epss_min is not None and (record.epss_score or 0) < query.epss_min:
        return False
    if query.exploit_maturity and record.exploit_maturity not in query.exploit_maturity:
        return False
    return True
