from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from cvewatch.exceptions import JobAlreadyRunningError
from cvewatch.models.job import JobKind
from cvewatch.schemas.job import IngestStartResponse
from cvewatch.services.enrichment_service import EnrichmentService
from cvewatch.services.exploit_service import ExploitService
from cvewatch.services.ingest_service import IngestService
from cvewatch.services.job_tracker import JobTracker
from cvewatch.api.deps import get_enrichment_service, get_exploit_service, get_ingest_service, get_tracker

import structlog

logger = structlog.get_logger()

router = APIRouter()


async def _claim_job(tracker: JobTracker, kind: JobKind) -> int:
    try:
        return await tracker.start_job(kind.value)
    except JobAlreadyRunningError as e:
        logger.info("Ingestion request rejected", kind=kind.value, running_job_id=e.job_id)
        raise HTTPException(status_code=409, detail=str(e))


@router.post("", response_model=IngestStartResponse, status_code=202)
async def start_ingest(
    background_tasks: BackgroundTasks,
    tracker: JobTracker = Depends(get_tracker),
    service: IngestService = Depends(get_ingest_service),
):
    """Incremental pass from the last committed feed revision."""
    job_id = await _claim_job(tracker, JobKind.feed)
    background_tasks.add_task(service.run, job_id, JobKind.feed.value)
    return IngestStartResponse(job_id=job_id)


@router.post("/bulk", response_model=IngestStartResponse, status_code=202)
async def start_bulk_ingest(
    background_tasks: BackgroundTasks,
    tracker: JobTracker = Depends(get_tracker),
    service: IngestService = Depends(get_ingest_service),
):
    """Full pass over every record in the mirror."""
    job_id = await _claim_job(tracker, JobKind.bulk)
    background_tasks.add_task(service.run, job_id, JobKind.bulk.value)
    return IngestStartResponse(job_id=job_id)


@router.post("/enrichment", response_model=IngestStartResponse, status_code=202)
async def start_enrichment(
    background_tasks: BackgroundTasks,
    tracker: JobTracker = Depends(get_tracker),
    service: EnrichmentService = Depends(get_enrichment_service),
):
    job_id = await _claim_job(tracker, JobKind.enrichment)
    background_tasks.add_task(service.run, job_id)
    return IngestStartResponse(job_id=job_id)


@router.post("/trickest", response_model=IngestStartResponse, status_code=202)
async def start_exploit_ingest(
    background_tasks: BackgroundTasks,
    tracker: JobTracker = Depends(get_tracker),
    service: ExploitService = Depends(get_exploit_service),
):
    """Refresh exploit links from the public proof-of-concept index."""
    job_id = await _claim_job(tracker, JobKind.exploits)
    background_tasks.add_task(service.run, job_id)
    return IngestStartResponse(job_id=job_id)
