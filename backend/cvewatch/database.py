from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from cvewatch.config import settings
import os


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = make_url(database_url)
    is_sqlite = url.drivername.startswith("sqlite")

    if is_sqlite and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(url.database) or "data", exist_ok=True)

    new_engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
    )

    if is_sqlite:
        @event.listens_for(new_engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            """Enable WAL mode so searches keep running while ingestion writes."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return new_engine


engine = create_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# External-content FTS5 index over cves(id, description), kept in sync by triggers.
FTS_STATEMENTS = [
    "CREATE VIRTUAL TABLE IF NOT EXISTS cves_fts USING fts5("
    "id, description, content='cves', content_rowid='rowid', "
    "tokenize='unicode61 remove_diacritics 0')",
    "CREATE TRIGGER IF NOT EXISTS cves_fts_ai AFTER INSERT ON cves BEGIN "
    "INSERT INTO cves_fts(rowid, id, description) VALUES (new.rowid, new.id, new.description); "
    "END",
    "CREATE TRIGGER IF NOT EXISTS cves_fts_ad AFTER DELETE ON cves BEGIN "
    "INSERT INTO cves_fts(cves_fts, rowid, id, description) "
    "VALUES ('delete', old.rowid, old.id, old.description); "
    "END",
    "CREATE TRIGGER IF NOT EXISTS cves_fts_au AFTER UPDATE OF id, description ON cves BEGIN "
    "INSERT INTO cves_fts(cves_fts, rowid, id, description) "
    "VALUES ('delete', old.rowid, old.id, old.description); "
    "INSERT INTO cves_fts(rowid, id, description) VALUES (new.rowid, new.id, new.description); "
    "END",
]


async def init_db(bind: AsyncEngine | None = None):
    async with (bind or engine).begin() as conn:
        from cvewatch.models import (  # noqa: F401
            cve, job, watchlist, alert, metadata
        )
        await conn.run_sync(Base.metadata.create_all)
        for statement in FTS_STATEMENTS:
            await conn.execute(text(statement))
