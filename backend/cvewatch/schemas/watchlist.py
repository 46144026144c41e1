from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from cvewatch.schemas.common import CamelModel
from cvewatch.schemas.query import QueryModel


class WatchlistCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    query: QueryModel = Field(default_factory=QueryModel)
    enabled: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class WatchlistUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    query: QueryModel | None = None
    enabled: bool | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class WatchlistResponse(CamelModel):
    id: str
    name: str
    query: dict
    enabled: bool
    last_run: datetime | None = None
    match_count: int = 0
    created_at: datetime
    updated_at: datetime | None = None
    chips: list[str] = []
