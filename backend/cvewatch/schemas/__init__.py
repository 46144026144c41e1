from cvewatch.schemas.cve import CveRecord, AffectedProduct, Enrichment, ExploitLink, CveListResponse, CveDetailResponse
from cvewatch.schemas.query import QueryModel, SearchRequest, Visibility
from cvewatch.schemas.job import JobResponse, JobLogResponse, IngestStartResponse
from cvewatch.schemas.watchlist import WatchlistCreate, WatchlistUpdate, WatchlistResponse
from cvewatch.schemas.alert import AlertResponse, AlertBulkResult
from cvewatch.schemas.common import CamelModel, HealthResponse
