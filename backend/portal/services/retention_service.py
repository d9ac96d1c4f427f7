"""
Document retention: expiry date math and the reaper that enforces it.

A document's expiry is computed once, at creation, from the policy snapshot in
force at the time. The only other writer of retention dates is
``recompute_retention``, which runs when staff change the policy.

Deleting a document cascades across its stored file, the file rows that
reference it and the owning company's contacts. File rows are soft deleted so
their content hash keeps blocking re-uploads of the same bytes.
"""
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from portal.models.company import Company
from portal.models.document import DOCUMENT_MODELS
from portal.models.file import FileRecord
from portal.services.notification_service import Notifier
from portal.services.settings_service import PolicySnapshot, SettingsProvider
from portal.services.storage_service import LocalStorage
from portal.utils.clock import parse_iso, to_iso, utcnow
from portal.utils.outbox import Outbox

logger = logging.getLogger(__name__)

DELETION_NOTICE_TEMPLATE = "document_deleted"


def _as_datetime(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return parse_iso(value)


def compute_retention_dates(
    policy: PolicySnapshot,
    created_at: datetime,
    issue_date=None,
    period_end=None,
) -> tuple[datetime | None, datetime | None]:
    """Return ``(start, expiry)`` for a document, or ``(None, None)`` when disabled.

    ``upload_date`` starts the clock at creation. ``invoice_date`` starts it at
    the issue date, falling back to a statement's period end, then creation.
    Expiry lands on midnight UTC of the final day.
    """
    if not policy.retention_enabled:
        return None, None

    start = _as_datetime(created_at)
    if policy.retention_trigger == "invoice_date":
        start = _as_datetime(issue_date) or _as_datetime(period_end) or start

    try:
        expiry = start + timedelta(days=policy.retention_period_days)
    except OverflowError:
        logger.warning("Retention start %s overflows the calendar, counting from creation", start)
        start = _as_datetime(created_at)
        expiry = start + timedelta(days=policy.retention_period_days)
    return start, expiry.replace(hour=0, minute=0, second=0, microsecond=0)


def recompute_retention(db: Session, policy: PolicySnapshot) -> int:
    """Rewrite retention dates of every live document under ``policy``."""
    updated = 0
    for model in DOCUMENT_MODELS.values():
        for document in db.query(model).filter(model.deleted_at.is_(None)).all():
            try:
                start, expiry = compute_retention_dates(
                    policy,
                    created_at=document.created_at,
                    issue_date=document.issue_date,
                    period_end=getattr(document, "period_end", None),
                )
            except ValueError:
                logger.warning("Skipping retention recompute for %s %s: unreadable dates", model.__tablename__, document.id)
                continue
            document.retention_start_date = to_iso(start) if start else None
            document.retention_expiry_date = to_iso(expiry) if expiry else None
            updated += 1
    db.commit()
    logger.info("Recomputed retention dates for %d documents", updated)
    return updated


@dataclass
class RetentionSummary:
    enabled: bool = True
    dry_run: bool = False
    total: int = 0
    deleted: int = 0
    errors: int = 0
    files_soft_deleted: int = 0
    files_hard_deleted: int = 0
    physical_files_deleted: int = 0
    orphans: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    by_type: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionReaper:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage: LocalStorage,
        notifier: Notifier,
        settings_provider: SettingsProvider,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.notifier = notifier
        self.settings_provider = settings_provider
        self.clock = clock

    def run(self, now: datetime | None = None) -> RetentionSummary:
        """Hard-delete every document whose expiry has passed, soft-deleted ones included."""
        now = now or self.clock()
        db = self.session_factory()
        try:
            policy = self.settings_provider.snapshot(db)
            if not policy.retention_enabled:
                logger.info("retention_run skipped=true reason=no_retention_period")
                return RetentionSummary(enabled=False)

            cutoff = to_iso(now)
            targets = []
            for model in DOCUMENT_MODELS.values():
                rows = (
                    db.query(model.id)
                    .filter(model.retention_expiry_date.is_not(None))
                    .filter(model.retention_expiry_date <= cutoff)
                    .all()
                )
                targets.extend((model, row[0]) for row in rows)
        finally:
            db.close()

        summary = self._delete_all(targets, notify=True)
        summary.orphans = self.sweep_orphans()
        self._log_summary("retention_run", summary)
        return summary

    def purge(self, created_before: datetime, dry_run: bool = False) -> RetentionSummary:
        """Administrative purge of documents created before a date; no notices are sent."""
        cutoff = to_iso(created_before)
        db = self.session_factory()
        try:
            targets = []
            for model in DOCUMENT_MODELS.values():
                rows = db.query(model.id).filter(model.created_at < cutoff).all()
                targets.extend((model, row[0]) for row in rows)
        finally:
            db.close()

        if dry_run:
            summary = RetentionSummary(dry_run=True, total=len(targets))
            for model, _ in targets:
                summary.by_type[model.kind] = summary.by_type.get(model.kind, 0) + 1
            self._log_summary("purge", summary)
            return summary

        summary = self._delete_all(targets, notify=False)
        summary.orphans = self.sweep_orphans()
        self._log_summary("purge", summary)
        return summary

    def sweep_orphans(self) -> int:
        """Soft-delete live file rows whose linked document no longer exists."""
        db = self.session_factory()
        try:
            candidates = (
                db.query(FileRecord)
                .filter(FileRecord.deleted_at.is_(None))
                .filter(or_(FileRecord.status == "parsed", FileRecord.document_id.is_not(None)))
                .all()
            )
            now = to_iso(self.clock())
            orphaned = 0
            for file in candidates:
                if self._has_document(db, file):
                    continue
                file.document_id = None
                file.deleted_at = now
                file.updated_at = now
                orphaned += 1
                logger.info("orphan_file_soft_deleted file_id=%s path=%s", file.id, file.file_path)
            db.commit()
            return orphaned
        finally:
            db.close()

    # -- cascade -------------------------------------------------------------

    def _delete_all(self, targets, notify: bool) -> RetentionSummary:
        summary = RetentionSummary(total=len(targets))
        for model, document_id in targets:
            try:
                self._delete_one(model, document_id, notify, summary)
            except Exception as exc:
                summary.errors += 1
                logger.error(
                    "document_delete_failed type=%s id=%s error=%s", model.kind, document_id, exc
                )
                continue
            summary.deleted += 1
            summary.by_type[model.kind] = summary.by_type.get(model.kind, 0) + 1
        return summary

    def _delete_one(self, model, document_id: str, notify: bool, summary: RetentionSummary):
        db = self.session_factory()
        outbox = Outbox()
        try:
            document = db.get(model, document_id)
            if document is None:
                return
            # Captured before the row goes away.
            company = db.get(Company, document.company_id)
            company_id = document.company_id
            recipients = []
            if company is not None and not company.machine_integrated:
                recipients = list(company.contact_emails or [])
            context = {
                "document_type": document.label,
                "document_number": document.document_number,
                "company_name": company.name if company else None,
                "retention_expiry_date": document.retention_expiry_date,
            }
            file_url = document.file_url

            soft, hard = self._cascade_files(db, document)
            db.delete(document)
            db.commit()
            summary.files_soft_deleted += soft
            summary.files_hard_deleted += hard
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if file_url:
            outbox.add("delete_file", lambda: self._delete_physical(file_url, summary))
        if notify and recipients:
            outbox.add("notify", lambda: self._notify(recipients, context, summary))
        failed = outbox.flush()

        logger.info(
            "document_deleted type=%s id=%s number=%s company_id=%s file=%s side_effect_failures=%d",
            model.kind, document_id, context["document_number"], company_id, file_url, failed,
        )

    def _cascade_files(self, db: Session, document) -> tuple[int, int]:
        now = to_iso(self.clock())
        soft = hard = 0

        linked = (
            db.query(FileRecord)
            .filter(or_(
                FileRecord.id == document.file_id,
                (FileRecord.document_type == document.kind) & (FileRecord.document_id == document.id),
            ))
            .all()
        )
        seen = set()
        for file in linked:
            seen.add(file.id)
            if file.status == "duplicate":
                # Another row already holds this hash.
                db.delete(file)
                hard += 1
                continue
            file.document_id = None
            if file.deleted_at is None:
                file.deleted_at = now
                soft += 1
            file.updated_at = now

        if document.file_url:
            # Only the exact stored path; a bare file name is shared by unrelated uploads.
            by_path = (
                db.query(FileRecord)
                .filter(FileRecord.deleted_at.is_(None))
                .filter(FileRecord.file_path == document.file_url)
                .all()
            )
            for file in by_path:
                if file.id in seen:
                    continue
                file.document_id = None
                file.deleted_at = now
                file.updated_at = now
                soft += 1
        return soft, hard

    def _has_document(self, db: Session, file: FileRecord) -> bool:
        if file.document_id and file.document_type in DOCUMENT_MODELS:
            model = DOCUMENT_MODELS[file.document_type]
            return db.get(model, file.document_id) is not None
        for model in DOCUMENT_MODELS.values():
            if db.query(model.id).filter(
                or_(model.file_id == file.id, model.file_url == file.file_path)
            ).first() is not None:
                return True
        return False

    def _delete_physical(self, file_url: str, summary: RetentionSummary):
        if self.storage.delete(file_url):
            summary.physical_files_deleted += 1
        else:
            logger.warning("Stored file for deleted document not found: %s", file_url)

    def _notify(self, recipients: list[str], context: dict, summary: RetentionSummary):
        try:
            self.notifier.notify(DELETION_NOTICE_TEMPLATE, recipients, context)
        except Exception:
            summary.notifications_failed += 1
            raise
        summary.notifications_sent += 1

    def _log_summary(self, operation: str, summary: RetentionSummary):
        logger.info(
            "%s_summary total=%d deleted=%d errors=%d files_soft_deleted=%d files_hard_deleted=%d "
            "physical_files_deleted=%d orphans=%d notifications_sent=%d notifications_failed=%d dry_run=%s",
            operation, summary.total, summary.deleted, summary.errors, summary.files_soft_deleted,
            summary.files_hard_deleted, summary.physical_files_deleted, summary.orphans,
            summary.notifications_sent, summary.notifications_failed, summary.dry_run,
        )
