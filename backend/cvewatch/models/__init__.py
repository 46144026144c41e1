from cvewatch.models.cve import Cve, CveProduct, CveChange, CveEnrichment, CveExploit
from cvewatch.models.job import IngestionJob, JobLogEntry, JobStatus, JobKind, JobPhase
from cvewatch.models.watchlist import Watchlist
from cvewatch.models.alert import Alert, AlertType
from cvewatch.models.metadata import SystemMetadata

__all__ = [
    "Cve", "CveProduct", "CveChange", "CveEnrichment", "CveExploit",
    "IngestionJob", "JobLogEntry", "JobStatus", "JobKind", "JobPhase",
    "Watchlist", "Alert", "AlertType", "SystemMetadata",
]
