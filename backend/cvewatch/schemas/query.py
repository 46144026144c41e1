from datetime import date
from typing import Literal
from pydantic import BaseModel, Field, field_validator, model_validator

from cvewatch.schemas.cve import ExploitMaturity

# (min field, max field, chip label)
CVSS_RANGES = [
    ("cvss_min", "cvss_max", "CVSS"),
    ("cvss2_min", "cvss2_max", "CVSS 2.0"),
    ("cvss30_min", "cvss30_max", "CVSS 3.0"),
    ("cvss31_min", "cvss31_max", "CVSS 3.1"),
    ("cvss40_min", "cvss40_max", "CVSS 4.0"),
]

SortField = Literal["published", "modified", "id", "score", "epss"]


def _score(default=None):
    return Field(default=default, ge=0, le=10)


class Visibility(BaseModel):
    """Status display setting applied on top of a query."""
    hide_rejected: bool = True
    hide_disputed: bool = False

    model_config = {"frozen": True}


class QueryModel(BaseModel):
    """Filter predicate shared by live searches and stored watchlists."""
    text: str | None = Field(default=None, max_length=500)

    cvss_min: float | None = _score()
    cvss_max: float | None = _score()
    cvss2_min: float | None = _score()
    cvss2_max: float | None = _score()
    cvss30_min: float | None = _score()
    cvss30_max: float | None = _score()
    cvss31_min: float | None = _score()
    cvss31_max: float | None = _score()
    cvss40_min: float | None = _score()
    cvss40_max: float | None = _score()

    published_from: date | None = None
    published_to: date | None = None
    published_relative: str | None = None
    modified_from: date | None = None
    modified_to: date | None = None
    modified_relative: str | None = None

    vendors: list[str] = Field(default_factory=list, max_length=50)
    products: list[str] = Field(default_factory=list, max_length=50)
    kev: bool | None = None
    epss_min: float | None = Field(default=None, ge=0, le=1)
    exploit_maturity: list[ExploitMaturity] = Field(default_factory=list)

    @field_validator("vendors", "products", "exploit_maturity", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("text", "published_relative", "modified_relative", mode="before")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_ranges(self):
        for low, high, label in CVSS_RANGES:
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} must not exceed {high}")
        for low, high in (("published_from", "published_to"), ("modified_from", "modified_to")):
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} must not be after {high}")
        return self

    def relative_presets(self) -> list[str]:
        return [name for name in (self.published_relative, self.modified_relative) if name]

    def chips(self) -> list[str]:
        """Human-readable summary of the active constraints.

        Bounds sitting at the edge of the domain (CVSS 0 or 10, EPSS 0)
        still filter when queried but carry no information, so they are
        left out here.
        """
        chips = []
        if self.text:
            chips.append(f'Text: "{self.text}"')
        for low, high, label in CVSS_RANGES:
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and lo > 0:
                chips.append(f"{label} >= {lo:g}")
            if hi is not None and hi < 10:
                chips.append(f"{label} <= {hi:g}")
        for prefix, label in (("published", "Published"), ("modified", "Modified")):
            relative = getattr(self, f"{prefix}_relative")
            if relative:
                chips.append(f"{label}: {relative}")
                continue
            start, end = getattr(self, f"{prefix}_from"), getattr(self, f"{prefix}_to")
            if start:
                chips.append(f"{label} from {start.isoformat()}")
            if end:
                chips.append(f"{label} to {end.isoformat()}")
        if self.vendors:
            chips.append("Vendors: " + ", ".join(self.vendors))
        if self.products:
            chips.append("Products: " + ", ".join(self.products))
        if self.kev:
            chips.append("Known exploited")
        if self.epss_min:
            chips.append(f"EPSS >= {self.epss_min:g}")
        if self.exploit_maturity:
            chips.append("Exploit maturity: " + ", ".join(self.exploit_maturity))
        return chips

    def to_storage(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)


class SearchRequest(QueryModel):
    sort_by: SortField = "published"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
    hide_rejected: bool = True
    hide_disputed: bool = False

    @property
    def query(self) -> QueryModel:
        return QueryModel.model_validate(self.model_dump(include=set(QueryModel.model_fields)))

    @property
    def visibility(self) -> Visibility:
        return Visibility(hide_rejected=self.hide_rejected, hide_disputed=self.hide_disputed)
