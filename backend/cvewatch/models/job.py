from datetime import datetime
from sqlalchemy import String, Text, Float, Boolean, Integer, DateTime, JSON, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column
from cvewatch.database import Base
import enum


class JobStatus(str, enum.Enum):
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


TERMINAL_STATUSES = {JobStatus.completed.value, JobStatus.failed.value, JobStatus.cancelled.value}


class JobKind(str, enum.Enum):
    feed = "feed"
    bulk = "bulk"
    enrichment = "enrichment"
    exploits = "exploits"


class JobPhase(str, enum.Enum):
    initializing = "INITIALIZING"
    preparing_repo = "PREPARING_REPO"
    downloading = "DOWNLOADING"
    scanning_files = "SCANNING_FILES"
    processing = "PROCESSING"
    evaluating_watchlists = "EVALUATING_WATCHLISTS"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


class IngestionJob(Base):
    __tablename__ = "ingestion_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), default=JobKind.feed.value)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.running.value, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    items_added: Mapped[int] = mapped_column(Integer, default=0)
    items_updated: Mapped[int] = mapped_column(Integer, default=0)
    items_unchanged: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    progress_percent: Mapped[float | None] = mapped_column(Float, nullable=True)

    current_phase: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class JobLogEntry(Base):
    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("ingestion_jobs.id", ondelete="CASCADE"), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    level: Mapped[str] = mapped_column(String(10))  # INFO, WARN, ERROR
    message: Mapped[str] = mapped_column(Text)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
