import hashlib
from datetime import datetime
from typing import Literal
from pydantic import BaseModel, field_validator

from cvewatch.schemas.common import CamelModel

CveStatus = Literal["PUBLISHED", "REJECTED", "DISPUTED"]
ExploitMaturity = Literal["A", "H", "F", "POC", "U"]


class AffectedProduct(CamelModel):
    vendor: str
    product: str


class CveRecord(CamelModel):
    """Canonical vulnerability record produced by the normalizer."""
    id: str
    description: str = ""
    status: CveStatus = "PUBLISHED"
    published: datetime | None = None
    last_modified: datetime | None = None

    cvss_score: float | None = None
    cvss_severity: str | None = None
    cvss_version: str | None = None
    cvss_vector: str | None = None

    cvss2_score: float | None = None
    cvss2_severity: str | None = None
    cvss2_vector: str | None = None
    cvss30_score: float | None = None
    cvss30_severity: str | None = None
    cvss30_vector: str | None = None
    cvss31_score: float | None = None
    cvss31_severity: str | None = None
    cvss31_vector: str | None = None
    cvss40_score: float | None = None
    cvss40_severity: str | None = None
    cvss40_vector: str | None = None

    epss_score: float | None = None
    kev: bool = False
    exploit_maturity: ExploitMaturity | None = None
    references: list[str] = []
    products: list[AffectedProduct] = []

    @field_validator("references", "products", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    def content_hash(self) -> str:
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()


class Enrichment(BaseModel):
    """Externally supplied exploitation signals for one CVE."""
    epss_score: float | None = None
    kev: bool = False
    exploit_maturity: ExploitMaturity | None = None

    class Config:
        from_attributes = True


class CveListResponse(CamelModel):
    cves: list[CveRecord]
    total_count: int


class CveChangeResponse(CamelModel):
    id: int
    job_id: int | None = None
    changes: dict
    created_at: datetime


class ExploitLink(CamelModel):
    url: str
    description: str | None = None


class CveDetailResponse(CveRecord):
    created_at: datetime | None = None
    updated_at: datetime | None = None
    history: list[CveChangeResponse] = []
    exploits: dict[str, list[ExploitLink]] = {}


class VendorCount(CamelModel):
    vendor: str
    count: int


class ProductCount(CamelModel):
    vendor: str
    product: str
    count: int
