from datetime import datetime
from sqlalchemy import String, Text, Float, Boolean, Integer, DateTime, JSON, ForeignKey, Index, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from cvewatch.database import Base


class Cve(Base):
    __tablename__ = "cves"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="PUBLISHED", index=True)
    published: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    # Primary CVSS, derived from the highest available version
    cvss_score: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    cvss_severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cvss_version: Mapped[str | None] = mapped_column(String(8), nullable=True)
    cvss_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cvss2_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cvss2_severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cvss2_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cvss30_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cvss30_severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cvss30_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cvss31_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cvss31_severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cvss31_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cvss40_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cvss40_severity: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cvss40_vector: Mapped[str | None] = mapped_column(String(255), nullable=True)

    epss_score: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    kev: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    exploit_maturity: Mapped[str | None] = mapped_column(String(8), nullable=True)
    references: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)

    content_hash: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    products: Mapped[list["CveProduct"]] = relationship(
        back_populates="cve",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CveProduct(Base):
    __tablename__ = "cve_products"
    __table_args__ = (
        Index("ix_cve_products_vendor_product", "vendor", "product"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cve_id: Mapped[str] = mapped_column(String(32), ForeignKey("cves.id", ondelete="CASCADE"), index=True)
    vendor: Mapped[str] = mapped_column(String(255))
    product: Mapped[str] = mapped_column(String(255))

    cve: Mapped[Cve] = relationship(back_populates="products")


class CveChange(Base):
    """Field-level diff recorded each time an ingestion pass updates a record."""
    __tablename__ = "cve_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cve_id: Mapped[str] = mapped_column(String(32), index=True)
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    changes: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class CveEnrichment(Base):
    __tablename__ = "cve_enrichment"

    cve_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    epss_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    kev: Mapped[bool] = mapped_column(Boolean, default=False)
    exploit_maturity: Mapped[str | None] = mapped_column(String(8), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())


class CveExploit(Base):
    """Public exploit or proof-of-concept link for a CVE."""
    __tablename__ = "cve_exploits"
    __table_args__ = (
        UniqueConstraint("cve_id", "url", name="uq_cve_exploits_cve_url"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cve_id: Mapped[str] = mapped_column(String(32), index=True)
    source: Mapped[str] = mapped_column(String(32))  # github, exploitdb, packetstorm, ...
    url: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
