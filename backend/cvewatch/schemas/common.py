from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Response base: snake_case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class HealthResponse(CamelModel):
    status: str
    version: str
    record_count: int
    feed_revision: str | None = None
    running_job_id: int | None = None
    last_job_id: int | None = None
    last_job_status: str | None = None
