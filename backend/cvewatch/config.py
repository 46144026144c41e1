from pydantic_settings import BaseSettings
from pathlib import Path
import yaml


class Settings(BaseSettings):
    app_name: str = "CVE Watch"
    app_version: str = "1.0.0"
    debug: bool = False

    database_url: str = "sqlite+aiosqlite:///data/cvewatch.db"

    # Paths
    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Feed mirror (CVE JSON 5 git repository)
    feed_repo_url: str = "https://github.com/CVEProject/cvelistV5.git"
    feed_repo_dir: Path = Path("data/cvelistV5")
    git_clone_timeout: int = 1800  # seconds
    git_pull_timeout: int = 600
    git_retries: int = 3
    git_retry_wait: float = 2.0

    # Public proof-of-concept index (trickest/cve markdown files)
    exploit_repo_url: str = "https://github.com/trickest/cve.git"
    exploit_repo_dir: Path = Path("data/trickest-cve")

    # Enrichment (EPSS / KEV / exploit maturity)
    enrichment_csv_url: str = "https://raw.githubusercontent.com/t0sche/cvss-bt/main/cvss-bt.csv"

    # Ingestion pipeline
    ingest_batch_size: int = 500
    cancel_check_interval: int = 1  # records between cancellation checks
    ingest_interval_hours: int = 0  # 0 disables scheduled ingestion

    # Job lifecycle
    heartbeat_interval: int = 15  # seconds
    job_stale_after_seconds: int = 600
    watchdog_interval_seconds: int = 60

    # Relative date presets, overridable from config/date_presets.yaml
    date_presets: dict[str, dict] = {
        "today": {"days": 0, "until_today": False},
        "last_7_days": {"days": 7},
        "last_30_days": {"days": 30},
        "last_90_days": {"days": 90},
        "ytd": {"anchor": "year_start"},
    }

    class Config:
        env_file = ".env"
        env_prefix = "CVEWATCH_"


settings = Settings()


def load_yaml_config(filename: str) -> dict:
    config_path = settings.config_dir / filename
    if config_path.exists():
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}
