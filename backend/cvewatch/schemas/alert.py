from datetime import datetime
from cvewatch.schemas.common import CamelModel


class AlertResponse(CamelModel):
    id: str
    cve_id: str
    watchlist_id: str
    watchlist_name: str
    alert_type: str
    record_hash: str
    job_id: int | None = None
    read: bool
    created_at: datetime
    kev: bool | None = None
    cvss_score: float | None = None
    cvss_severity: str | None = None


class AlertBulkResult(CamelModel):
    affected: int
