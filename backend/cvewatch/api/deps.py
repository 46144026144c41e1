from fastapi import HTTPException, Request
from pydantic import ValidationError

from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.enrichment_service import EnrichmentService
from cvewatch.services.exploit_service import ExploitService
from cvewatch.services.ingest_service import IngestService
from cvewatch.services.job_tracker import JobTracker


def get_tracker(request: Request) -> JobTracker:
    return request.app.state.tracker


def get_presets(request: Request) -> DatePresetRegistry:
    return request.app.state.presets


def get_ingest_service(request: Request) -> IngestService:
    return request.app.state.ingest_service


def get_enrichment_service(request: Request) -> EnrichmentService:
    return request.app.state.enrichment_service


def get_exploit_service(request: Request) -> ExploitService:
    return request.app.state.exploit_service


def bad_request(error: ValidationError) -> HTTPException:
    """Flatten a pydantic error into a 400 with a readable message."""
    messages = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
        messages.append(f"{location}: {err['msg']}" if location else err["msg"])
    return HTTPException(status_code=400, detail="; ".join(messages))
