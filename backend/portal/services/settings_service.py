import threading
from dataclasses import dataclass

from sqlalchemy.orm import Session

from portal.models.setting import AppSetting
from portal.utils.clock import now_iso

RETENTION_PERIOD_KEY = "document_retention_period"
RETENTION_TRIGGER_KEY = "document_retention_trigger"
RETENTION_TRIGGERS = ("upload_date", "invoice_date")


@dataclass(frozen=True)
class PolicySnapshot:
    """Settings values one job or run works against, read once up front."""

    retention_period_days: int | None = None
    retention_trigger: str = "upload_date"

    @property
    def retention_enabled(self) -> bool:
        return bool(self.retention_period_days)


class SettingsProvider:
    def __init__(self):
        self._lock = threading.Lock()
        self._cached: PolicySnapshot | None = None

    def snapshot(self, db: Session) -> PolicySnapshot:
        with self._lock:
            if self._cached is None:
                self._cached = self._load(db)
            return self._cached

    def invalidate(self):
        with self._lock:
            self._cached = None

    def update_retention(self, db: Session, period_days: int | None, trigger: str) -> PolicySnapshot:
        if trigger not in RETENTION_TRIGGERS:
            raise ValueError(f"retention trigger must be one of {RETENTION_TRIGGERS}")
        if period_days is not None and period_days <= 0:
            raise ValueError("retention period must be a positive number of days")

        now = now_iso()
        values = {
            RETENTION_PERIOD_KEY: None if period_days is None else str(period_days),
            RETENTION_TRIGGER_KEY: trigger,
        }
        for key, value in values.items():
            db.merge(AppSetting(key=key, value=value, updated_at=now))
        db.commit()
        self.invalidate()
        return self.snapshot(db)

    def _load(self, db: Session) -> PolicySnapshot:
        rows = {row.key: row.value for row in db.query(AppSetting).all()}
        period = rows.get(RETENTION_PERIOD_KEY)
        trigger = rows.get(RETENTION_TRIGGER_KEY) or "upload_date"
        return PolicySnapshot(
            retention_period_days=int(period) if period else None,
            retention_trigger=trigger if trigger in RETENTION_TRIGGERS else "upload_date",
        )
