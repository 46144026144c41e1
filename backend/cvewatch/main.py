from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from cvewatch.config import settings
from cvewatch.database import async_session, get_db, init_db
from cvewatch.api import alerts, catalog, cves, ingest, jobs, settings as settings_api, watchlists, ws
from cvewatch.models.metadata import SystemMetadata
from cvewatch.schemas.common import HealthResponse
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.enrichment_service import EnrichmentService
from cvewatch.services.exploit_service import ExploitMirror, ExploitService
from cvewatch.services.feed_sync import REVISION_KEY, FeedSynchronizer
from cvewatch.services.ingest_service import IngestService
from cvewatch.services.job_tracker import IngestionLock, JobTracker
from cvewatch.services.log_broker import LogBroker
from cvewatch.services.record_store import RecordStore
from cvewatch.services.scheduler_service import SchedulerService
from cvewatch.services.watchlist_evaluator import WatchlistEvaluator

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]
)
logger = structlog.get_logger()


def configure_services(
    app: FastAPI,
    session_factory: async_sessionmaker,
    synchronizer: FeedSynchronizer | None = None,
    exploit_mirror: ExploitMirror | None = None,
    **service_options,
) -> JobTracker:
    """Build the ingestion object graph and hang it off ``app.state``."""
    broker = LogBroker()
    tracker = JobTracker(session_factory, broker, IngestionLock())
    presets = DatePresetRegistry.from_settings()
    evaluator = WatchlistEvaluator(session_factory, presets)
    synchronizer = synchronizer or FeedSynchronizer(session_factory)

    app.state.broker = broker
    app.state.tracker = tracker
    app.state.presets = presets
    app.state.synchronizer = synchronizer
    app.state.ingest_service = IngestService(session_factory, tracker, synchronizer, evaluator, **service_options)
    app.state.enrichment_service = EnrichmentService(session_factory, tracker, evaluator, **service_options)
    app.state.exploit_service = ExploitService(session_factory, tracker, exploit_mirror, **service_options)
    return tracker


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application", version=settings.app_version)
    await init_db()
    tracker = configure_services(app, async_session)

    # Nothing can be running yet; leftovers are from a previous process
    try:
        orphaned = await tracker.mark_orphaned_jobs()
        if orphaned:
            logger.warning("Marked orphaned jobs as failed", count=orphaned)
    except Exception as e:
        logger.error("Orphaned job cleanup failed", error=str(e))

    scheduler = SchedulerService(tracker, app.state.ingest_service)
    try:
        await scheduler.start()
        app.state.scheduler = scheduler
    except Exception as e:
        logger.error("Failed to start scheduler", error=str(e))
        app.state.scheduler = None

    yield

    if getattr(app.state, "scheduler", None):
        await app.state.scheduler.stop()
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routers
app.include_router(cves.router, prefix="/api/cves", tags=["cves"])
app.include_router(catalog.router, prefix="/api", tags=["catalog"])
app.include_router(ingest.router, prefix="/api/ingest", tags=["ingest"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(watchlists.router, prefix="/api/watchlists", tags=["watchlists"])
app.include_router(alerts.router, prefix="/api/alerts", tags=["alerts"])
app.include_router(settings_api.router, prefix="/api/settings", tags=["settings"])
app.include_router(ws.router, prefix="/api/ws", tags=["websocket"])


@app.get("/api/health", response_model=HealthResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    tracker: JobTracker = request.app.state.tracker
    revision = await db.get(SystemMetadata, REVISION_KEY)
    running = await tracker.running_job()
    recent = await tracker.list_jobs(limit=1)
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        record_count=await RecordStore(db).count(),
        feed_revision=revision.value if revision else None,
        running_job_id=running.id if running else None,
        last_job_id=recent[0].id if recent else None,
        last_job_status=recent[0].status if recent else None,
    )
