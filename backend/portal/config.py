from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_path: Path = Path.home() / "InvoicePortal"
    # Cap upload sizes before hashing the whole payload in memory.
    max_upload_bytes: int = 25 * 1024 * 1024  # 25 MiB
    api_prefix: str = "/api/v1"
    host: str = "127.0.0.1"
    port: int = 8000

    # Processing queue
    queue_concurrency: int = 2
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 2.0
    job_timeout_seconds: float | None = 300.0

    # Retention reaper runs hourly so deletions land within an hour of expiry.
    reaper_interval_seconds: int = 3600
    reaper_enabled: bool = True

    allocation_session_ttl_seconds: int = 24 * 60 * 60

    @property
    def db_path(self) -> Path:
        return self.data_path / "db.sqlite"

    @property
    def storage_path(self) -> Path:
        return self.data_path / "storage"

    model_config = {"env_prefix": "PORTAL_"}


settings = Settings()
