"""
Staff remediation of files that did not allocate: list, diagnose, edit and
resubmit, or discard.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Query, Session

from portal.errors import NotEligible, NotFound, QueueUnavailable
from portal.models.file import REMEDIABLE_STATUSES, FileRecord
from portal.models.user import User
from portal.services.company_directory import CompanyDirectory
from portal.services.match_service import MatchingEngine
from portal.services.processing_queue import HIGH, ProcessingJob, ProcessingQueue
from portal.services.storage_service import LocalStorage
from portal.utils.clock import to_iso, utcnow
from portal.utils.parsed_fields import FIELD_ALIASES, get_parsed_value

logger = logging.getLogger(__name__)

DISCARDABLE_STATUSES = (*REMEDIABLE_STATUSES, "duplicate")


@dataclass(frozen=True)
class FileFilter:
    """Which live files a listing returns, newest first."""

    statuses: tuple[str, ...]
    include_deleted: bool = False

    @classmethod
    def unallocated(cls) -> "FileFilter":
        return cls(statuses=("unallocated",))

    @classmethod
    def failed(cls) -> "FileFilter":
        return cls(statuses=("failed",))

    @classmethod
    def duplicates(cls) -> "FileFilter":
        return cls(statuses=("duplicate",))

    @classmethod
    def needs_attention(cls) -> "FileFilter":
        return cls(statuses=REMEDIABLE_STATUSES)

    @classmethod
    def named(cls, name: str | None) -> "FileFilter":
        builders = {
            None: cls.needs_attention,
            "all": cls.needs_attention,
            "unallocated": cls.unallocated,
            "failed": cls.failed,
            "duplicate": cls.duplicates,
        }
        if name not in builders:
            raise ValueError(f"Unknown status filter: {name}")
        return builders[name]()

    def apply(self, query: Query) -> Query:
        query = query.filter(FileRecord.status.in_(self.statuses))
        if not self.include_deleted:
            query = query.filter(FileRecord.deleted_at.is_(None))
        return query.order_by(FileRecord.uploaded_at.desc())


def file_job_id(file_id: str) -> str:
    return f"file-{file_id}"


def diff_parsed_data(before: dict | None, after: dict) -> dict:
    before = before or {}
    diff = {}
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old != new:
            diff[key] = {"from": old, "to": new}
    return diff


class RemediationService:
    def __init__(self, db: Session, storage: LocalStorage, queue: ProcessingQueue, clock=utcnow):
        self.db = db
        self.storage = storage
        self.queue = queue
        self.clock = clock

    def list_files(self, file_filter: FileFilter, limit: int = 100, offset: int = 0) -> list[FileRecord]:
        return file_filter.apply(self.db.query(FileRecord)).offset(offset).limit(limit).all()

    def count_files(self, file_filter: FileFilter) -> int:
        query = self.db.query(FileRecord).filter(FileRecord.status.in_(file_filter.statuses))
        if not file_filter.include_deleted:
            query = query.filter(FileRecord.deleted_at.is_(None))
        return query.count()

    def get_file(self, file_id: str) -> FileRecord:
        file = self.db.get(FileRecord, file_id)
        if file is None:
            raise NotFound(f"File {file_id} not found")
        return file

    def edit_and_requeue(
        self,
        file_id: str,
        editor: User,
        parsed_data: dict | None = None,
        account_number: str | None = None,
        company_id: str | None = None,
    ) -> FileRecord:
        """Apply staff corrections, reset the file to pending and queue it ahead of intake."""
        file = self.get_file(file_id)
        if file.deleted_at is not None or file.status not in REMEDIABLE_STATUSES:
            raise NotEligible(f"File {file_id} is {file.status} and cannot be resubmitted")

        updated = dict(file.parsed_data or {})
        if parsed_data:
            updated.update(parsed_data)
        if account_number is not None:
            self._set_account_number(updated, account_number)
        if company_id is not None:
            company = CompanyDirectory(self.db).get(company_id)
            if company is None:
                raise NotFound(f"Company {company_id} not found")
            if company.reference_no is None:
                raise NotEligible(f"Company {company.name} has no reference number to allocate against")
            self._set_account_number(updated, str(company.reference_no))

        if not self.queue.running:
            raise QueueUnavailable("Processing queue is not accepting jobs")

        now = to_iso(self.clock())
        entry = {
            "editor": editor.id,
            "editor_email": editor.email,
            "timestamp": now,
            "diff": diff_parsed_data(file.parsed_data, updated),
        }
        expected = file.status
        changed = (
            self.db.query(FileRecord)
            .filter(FileRecord.id == file.id, FileRecord.status == expected, FileRecord.deleted_at.is_(None))
            .update(
                {
                    "parsed_data": updated,
                    "edit_log": [*(file.edit_log or []), entry],
                    "status": "pending",
                    "failure_reason": None,
                    "error_message": None,
                    "manually_edited_by": editor.id,
                    "updated_at": now,
                },
                synchronize_session=False,
            )
        )
        if changed != 1:
            self.db.rollback()
            raise NotEligible(f"File {file_id} changed while it was being edited")
        self.db.commit()
        self.db.refresh(file)

        self.queue.enqueue(
            ProcessingJob(
                file_id=file.id,
                file_path=str(self.storage.full_path(file.file_path)),
                file_name=file.file_name,
                job_id=file_job_id(file.id),
                manually_edited=True,
            ),
            priority=HIGH,
        )
        logger.info("File %s edited by %s and resubmitted (%d fields changed)",
                    file.id, editor.email, len(entry["diff"]))
        return file

    def discard_files(self, file_ids: list[str]) -> dict:
        """Soft-delete files; their content hash keeps blocking identical uploads."""
        now = to_iso(self.clock())
        discarded, skipped = [], []
        for file_id in dict.fromkeys(file_ids):
            file = self.db.get(FileRecord, file_id)
            if file is None or file.deleted_at is not None or file.status not in DISCARDABLE_STATUSES:
                skipped.append(file_id)
                continue
            file.deleted_at = now
            file.updated_at = now
            discarded.append(file_id)
        self.db.commit()
        logger.info("Discarded %d files (%d skipped)", len(discarded), len(skipped))
        return {"discarded": len(discarded), "skipped": len(skipped), "discarded_ids": discarded, "skipped_ids": skipped}

    def diagnostics(self, limit: int = 20) -> list[dict]:
        """Re-run matching for recent files needing attention, without changing them."""
        engine = MatchingEngine(CompanyDirectory(self.db))
        results = []
        for file in self.list_files(FileFilter.needs_attention(), limit=limit):
            account_number = get_parsed_value(file.parsed_data, "account_number")
            match = engine.match(account_number)
            results.append({
                "file_id": file.id,
                "file_name": file.file_name,
                "status": file.status,
                "failure_reason": file.failure_reason,
                "account_number": account_number,
                "matched_company_id": match.company.id if match.company else None,
                "matched_company_name": match.company.name if match.company else None,
                "strategy": match.strategy,
                **match.diagnostics(),
            })
        return results

    @staticmethod
    def _set_account_number(parsed: dict, value: str):
        # Drop aliases so the edited value is the one the allocator reads.
        for key in FIELD_ALIASES["account_number"]:
            parsed.pop(key, None)
        parsed["account_number"] = value
