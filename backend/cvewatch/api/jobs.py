import json
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from cvewatch.exceptions import JobAlreadyRunningError, JobNotFoundError
from cvewatch.schemas.job import JobLogResponse, JobResponse
from cvewatch.services.job_tracker import JobTracker
from cvewatch.api.deps import get_tracker

import structlog

logger = structlog.get_logger()

router = APIRouter()


async def _get_job_or_404(tracker: JobTracker, job_id: int):
    try:
        return await tracker.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.get("", response_model=list[JobResponse])
async def list_jobs(limit: int = Query(50, ge=1, le=500), tracker: JobTracker = Depends(get_tracker)):
    return await tracker.list_jobs(limit)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, tracker: JobTracker = Depends(get_tracker)):
    return await _get_job_or_404(tracker, job_id)


@router.delete("/{job_id}", status_code=204)
async def delete_job(job_id: int, tracker: JobTracker = Depends(get_tracker)):
    try:
        await tracker.delete_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobAlreadyRunningError:
        raise HTTPException(status_code=409, detail="Cannot delete a running job")


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: int, tracker: JobTracker = Depends(get_tracker)):
    """Request cooperative cancellation. Safe to call repeatedly."""
    try:
        return await tracker.request_cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/{job_id}/logs", response_model=list[JobLogResponse])
async def get_job_logs(job_id: int, after_id: int = 0, tracker: JobTracker = Depends(get_tracker)):
    await _get_job_or_404(tracker, job_id)
    return await tracker.list_logs(job_id, after_id)


@router.get("/{job_id}/logs/stream")
async def stream_job_logs(
    job_id: int,
    history: bool = False,
    tracker: JobTracker = Depends(get_tracker),
):
    """Server-sent events for a job's log.

    New subscribers only see entries appended after they connect unless
    ``history=true`` is given. The stream ends once the job is terminal.
    """
    await _get_job_or_404(tracker, job_id)

    async def event_generator():
        try:
            async for event in tracker.events(job_id, history=history):
                yield _sse(event)
        except Exception as e:
            logger.error("Log stream failed", job_id=job_id, error=str(e))
            yield _sse({"type": "error", "message": str(e)})

    return StreamingResponse(event_generator(), media_type="text/event-stream")
