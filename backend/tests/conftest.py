"""Shared fixtures: a throwaway SQLite database per test plus the ingestion object graph."""
import os
import tempfile

# Point the module-level engine and YAML config lookups at a scratch directory
# before anything from cvewatch is imported.
_SCRATCH = tempfile.mkdtemp(prefix="cvewatch-tests-")
os.environ.setdefault("CVEWATCH_DATABASE_URL", f"sqlite+aiosqlite:///{_SCRATCH}/default.db")
os.environ.setdefault("CVEWATCH_CONFIG_DIR", os.path.join(_SCRATCH, "config"))
os.environ.setdefault("CVEWATCH_FEED_REPO_DIR", os.path.join(_SCRATCH, "mirror"))
os.environ.setdefault("CVEWATCH_EXPLOIT_REPO_DIR", os.path.join(_SCRATCH, "trickest-cve"))

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvewatch.config import settings
from cvewatch.database import create_engine, init_db
from cvewatch.services.date_presets import DatePresetRegistry
from cvewatch.services.ingest_service import IngestService
from cvewatch.services.job_tracker import IngestionLock, JobTracker
from cvewatch.services.log_broker import LogBroker
from cvewatch.services.watchlist_evaluator import WatchlistEvaluator
from factories import FakeSynchronizer


@pytest.fixture
async def engine(tmp_path):
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/cvewatch.db")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def presets():
    return DatePresetRegistry(settings.date_presets)


@pytest.fixture
def broker():
    return LogBroker()


@pytest.fixture
def tracker(session_factory, broker):
    return JobTracker(session_factory, broker, IngestionLock(), stale_after_seconds=600, heartbeat_interval=30)


@pytest.fixture
def evaluator(session_factory, presets):
    return WatchlistEvaluator(session_factory, presets)


@pytest.fixture
def synchronizer():
    return FakeSynchronizer()


@pytest.fixture
def ingest_service(session_factory, tracker, synchronizer, evaluator):
    return IngestService(
        session_factory, tracker, synchronizer, evaluator,
        batch_size=5, cancel_check_interval=1,
    )

