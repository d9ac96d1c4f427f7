from datetime import date

from pydantic import BaseModel, Field


class RetentionSettings(BaseModel):
    retention_period_days: int | None
    retention_trigger: str


class RetentionSettingsUpdate(BaseModel):
    retention_period_days: int | None = Field(None, gt=0)
    retention_trigger: str = "upload_date"
    recompute: bool = False


class RetentionSettingsResponse(RetentionSettings):
    recomputed: int | None = None


class RetentionRunResponse(BaseModel):
    enabled: bool
    dry_run: bool
    total: int
    deleted: int
    errors: int
    files_soft_deleted: int
    files_hard_deleted: int
    physical_files_deleted: int
    orphans: int
    notifications_sent: int
    notifications_failed: int
    by_type: dict[str, int]


class PurgeRequest(BaseModel):
    created_before: date
    dry_run: bool = True
