"""Vendor / product typeahead for the search filters."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cvewatch.database import get_db
from cvewatch.schemas.cve import ProductCount, VendorCount
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.query_engine import CveQueryEngine
from cvewatch.api.deps import get_presets

router = APIRouter()


@router.get("/vendors", response_model=list[VendorCount])
async def list_vendors(
    q: str | None = Query(None, max_length=255),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    presets: DatePresetRegistry = Depends(get_presets),
):
    return await CveQueryEngine(db, presets).vendors(q, limit)


@router.get("/products", response_model=list[ProductCount])
async def list_products(
    q: str | None = Query(None, max_length=255),
    vendor: str | None = Query(None, max_length=255),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    presets: DatePresetRegistry = Depends(get_presets),
):
    return await CveQueryEngine(db, presets).products(q, vendor, limit)
