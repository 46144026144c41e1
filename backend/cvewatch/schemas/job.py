from datetime import datetime
from cvewatch.schemas.common import CamelModel


class JobResponse(CamelModel):
    id: int
    kind: str
    status: str
    start_time: datetime
    end_time: datetime | None = None
    items_processed: int = 0
    items_added: int = 0
    items_updated: int = 0
    items_unchanged: int = 0
    items_failed: int = 0
    total_items: int | None = None
    progress_percent: float | None = None
    current_phase: str | None = None
    last_heartbeat: datetime | None = None
    cancel_requested: bool = False
    error: str | None = None


class JobLogResponse(CamelModel):
    id: int
    job_id: int
    timestamp: datetime
    level: str
    message: str
    meta: dict | None = None


class IngestStartResponse(CamelModel):
    job_id: int
