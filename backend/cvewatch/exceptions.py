"""Error taxonomy shared by the ingestion pipeline and the API layer."""


class CveWatchError(Exception):
    """Base class for all cvewatch errors."""


class FeedSyncError(CveWatchError):
    """Mirror clone, pull or diff failed. Fatal for the current job."""


class CveParseError(CveWatchError):
    """A single raw record could not be normalized. The batch continues."""

    def __init__(self, record_id: str | None, message: str):
        self.record_id = record_id
        self.message = message
        super().__init__(f"{record_id or '<unknown>'}: {message}")


class JobAlreadyRunningError(CveWatchError):
    """Another ingestion job holds the RUNNING slot."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Ingestion job {job_id} is already running")


class JobNotFoundError(CveWatchError):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class UnknownDatePresetError(CveWatchError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown relative date preset: {name}")
