import uuid
from datetime import datetime
from sqlalchemy import String, Boolean, Integer, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from cvewatch.database import Base
import enum


class AlertType(str, enum.Enum):
    new_match = "NEW_MATCH"
    updated_match = "UPDATED_MATCH"


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_dedupe", "cve_id", "watchlist_id", "alert_type", "record_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    cve_id: Mapped[str] = mapped_column(String(32), index=True)
    # No foreign key: alerts outlive the watchlist that raised them.
    watchlist_id: Mapped[str] = mapped_column(String(36), index=True)
    watchlist_name: Mapped[str] = mapped_column(String(255))
    alert_type: Mapped[str] = mapped_column(String(20))
    record_hash: Mapped[str] = mapped_column(String(64))
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
