from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from cvewatch.database import get_db
from cvewatch.exceptions import UnknownDatePresetError
from cvewatch.models.cve import Cve
from cvewatch.schemas.cve import CveChangeResponse, CveDetailResponse, CveListResponse
from cvewatch.schemas.query import SearchRequest
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.query_engine import CveQueryEngine
from cvewatch.services.record_store import RecordStore, to_record
from cvewatch.api.deps import bad_request, get_presets

router = APIRouter()


@router.get("", response_model=CveListResponse)
async def search_cves(
    search: str | None = None,
    cvss_min: float | None = None,
    cvss_max: float | None = None,
    cvss2_min: float | None = None,
    cvss2_max: float | None = None,
    cvss30_min: float | None = None,
    cvss30_max: float | None = None,
    cvss31_min: float | None = None,
    cvss31_max: float | None = None,
    cvss40_min: float | None = None,
    cvss40_max: float | None = None,
    published_from: date | None = None,
    published_to: date | None = None,
    published_relative: str | None = None,
    modified_from: date | None = None,
    modified_to: date | None = None,
    modified_relative: str | None = None,
    vendors: str | None = Query(None, description="Comma-separated vendor names"),
    products: str | None = Query(None, description="Comma-separated product names"),
    kev: bool | None = None,
    epss_min: float | None = None,
    exploit_maturity: str | None = Query(None, description="Comma-separated: A, H, F, POC, U"),
    hide_rejected: bool = True,
    hide_disputed: bool = False,
    sort_by: str = "published",
    sort_order: str = "desc",
    limit: int = 100,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
    presets: DatePresetRegistry = Depends(get_presets),
):
    params = {
        "text": search,
        "cvss_min": cvss_min, "cvss_max": cvss_max,
        "cvss2_min": cvss2_min, "cvss2_max": cvss2_max,
        "cvss30_min": cvss30_min, "cvss30_max": cvss30_max,
        "cvss31_min": cvss31_min, "cvss31_max": cvss31_max,
        "cvss40_min": cvss40_min, "cvss40_max": cvss40_max,
        "published_from": published_from, "published_to": published_to,
        "published_relative": published_relative,
        "modified_from": modified_from, "modified_to": modified_to,
        "modified_relative": modified_relative,
        "vendors": vendors, "products": products,
        "kev": kev, "epss_min": epss_min, "exploit_maturity": exploit_maturity,
        "hide_rejected": hide_rejected, "hide_disputed": hide_disputed,
        "sort_by": sort_by, "sort_order": sort_order,
        "limit": limit, "offset": offset,
    }
    try:
        request = SearchRequest.model_validate(params)
        presets.validate(request)
    except ValidationError as e:
        raise bad_request(e)
    except UnknownDatePresetError as e:
        raise HTTPException(status_code=400, detail=str(e))

    records, total = await CveQueryEngine(db, presets).search(request)
    return CveListResponse(cves=records, total_count=total)


@router.get("/{cve_id}", response_model=CveDetailResponse)
async def get_cve(cve_id: str, db: AsyncSession = Depends(get_db)):
    cve = await db.get(Cve, cve_id.strip().upper())
    if not cve:
        raise HTTPException(status_code=404, detail="CVE not found")
    store = RecordStore(db)
    history = await store.history(cve.id)
    return CveDetailResponse(
        **to_record(cve).model_dump(),
        created_at=cve.created_at,
        updated_at=cve.updated_at,
        history=[CveChangeResponse.model_validate(change) for change in history],
        exploits=await store.exploits(cve.id),
    )
