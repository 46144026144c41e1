from fastapi import APIRouter, Depends

from cvewatch.config import settings
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.api.deps import get_presets

router = APIRouter()


@router.get("/date-presets")
async def get_date_presets(presets: DatePresetRegistry = Depends(get_presets)):
    return {"presets": presets.presets}


@router.get("/ingestion")
async def get_ingestion_config():
    return {
        "feed_repo_url": settings.feed_repo_url,
        "enrichment_csv_url": settings.enrichment_csv_url,
        "ingest_interval_hours": settings.ingest_interval_hours,
        "job_stale_after_seconds": settings.job_stale_after_seconds,
        "batch_size": settings.ingest_batch_size,
    }
