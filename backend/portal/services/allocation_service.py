"""
Turns one ingested file into a canonical document, or into a documented
routing outcome that staff can remediate.

Routing outcomes (missing account number, no matching company, document number
conflict) are return values, never exceptions. Parser and storage failures do
raise, so the processing queue can retry them.

Every write to a file row is a conditional transition: the row is updated only
if it still has the status it was read with, so the queue, a bulk session and a
staff edit cannot overwrite each other's result.
"""
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.models.document import document_model
from portal.models.file import FileRecord
from portal.services.company_directory import CompanyDirectory
from portal.services.match_service import MatchingEngine
from portal.services.parser_service import Parser
from portal.services.retention_service import compute_retention_dates
from portal.services.settings_service import PolicySnapshot
from portal.services.storage_service import LocalStorage, processed_path
from portal.utils.clock import to_iso, utcnow
from portal.utils.outbox import Outbox
from portal.utils.parsed_fields import (
    classify_document_type,
    get_parsed_value,
    parse_amount,
    parse_date,
)

logger = logging.getLogger(__name__)

MISSING_ACCOUNT_NUMBER = "missing_account_number"
NO_MATCHING_COMPANY = "no_matching_company"
DOCUMENT_NUMBER_CONFLICT = "document_number_conflict"
PARSING_ERROR = "parsing_error"
PROCESSING_ERROR = "processing_error"

ALLOCATABLE_STATUSES = ("pending", "unallocated", "failed")


@dataclass
class AllocationOutcome:
    file_id: str
    success: bool
    status: str
    failure_reason: str | None = None
    company_id: str | None = None
    document_type: str | None = None
    document_id: str | None = None
    document_number: str | None = None
    conflict: bool = False
    message: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class DocumentAllocator:
    def __init__(
        self,
        db: Session,
        storage: LocalStorage,
        parser: Parser,
        policy: PolicySnapshot,
        clock=utcnow,
    ):
        self.db = db
        self.storage = storage
        self.parser = parser
        self.policy = policy
        self.clock = clock
        self.engine = MatchingEngine(CompanyDirectory(db))

    def allocate(self, file: FileRecord, *, reparse: bool = True, allocated_by: str = "system") -> AllocationOutcome:
        if file.deleted_at is not None:
            return self._ineligible(file, "File has been deleted")
        if file.status == "parsed":
            return self._already_allocated(file)
        if file.status not in ALLOCATABLE_STATUSES:
            return self._ineligible(file, f"File status is {file.status!r}")

        expected = file.status
        parsed = self._parsed_data(file, reparse)

        account_number = get_parsed_value(parsed, "account_number")
        if account_number is None:
            return self._route(
                file, expected, MISSING_ACCOUNT_NUMBER,
                "No account number found in parsed data",
                parsed_data=parsed,
            )

        match = self.engine.match(account_number)
        if not match.matched:
            return self._route(
                file, expected, NO_MATCHING_COMPANY,
                f"No company matches account number {str(account_number).strip()!r}",
                parsed_data=parsed,
                metadata={"match_diagnostics": match.diagnostics()},
            )
        company = match.company

        kind = classify_document_type(parsed)
        model = document_model(kind)
        now = self.clock()
        document_number = self._document_number(parsed, model, file, now)

        existing = self._live_document(model, company.id, document_number)
        if existing is not None:
            if existing.file_id == file.id:
                # Re-run after a crash between writes: the document is already ours.
                return self._link(file, expected, existing, parsed, allocated_by, match.strategy)
            return self._conflict(file, expected, existing, parsed)

        document = self._build_document(model, company.id, document_number, parsed, file, now)
        self.db.add(document)
        try:
            self.db.flush()
        except IntegrityError:
            # Another worker created the same (company, number) between our check and insert.
            self.db.rollback()
            self.db.refresh(file)
            existing = self._live_document(model, company.id, document_number)
            if existing is None:
                raise
            return self._conflict(file, expected, existing, parsed)

        outcome = self._link(file, expected, document, parsed, allocated_by, match.strategy)
        if not outcome.success:
            return outcome

        outbox = Outbox()
        outbox.add("relocate", lambda: self._relocate(file, document, now))
        outbox.flush()
        return outcome

    def mark_failed(self, file: FileRecord, reason: str, message: str) -> AllocationOutcome:
        """Record a hard failure (parser crash, exhausted retries) on the file."""
        expected = file.status
        if file.deleted_at is not None or expected not in ALLOCATABLE_STATUSES:
            return self._ineligible(file, f"File status is {expected!r}")
        ok = self._transition(
            file, expected,
            status="failed",
            failure_reason=reason,
            error_message=message[:2000],
            processed_at=to_iso(self.clock()),
        )
        if not ok:
            return self._ineligible(file, "File changed while recording the failure")
        logger.warning("File %s (%s) failed: %s: %s", file.id, file.file_name, reason, message)
        return AllocationOutcome(
            file_id=file.id, success=False, status="failed",
            failure_reason=reason, message=message,
        )

    # -- parsed data ---------------------------------------------------------

    def _parsed_data(self, file: FileRecord, reparse: bool) -> dict:
        if not reparse and file.parsed_data:
            return dict(file.parsed_data)
        path = self.storage.resolve(file.file_path)
        if path is None:
            raise FileNotFoundError(f"Stored file missing: {file.file_path}")
        return dict(self.parser.parse(path))

    def _document_number(self, parsed: dict, model, file: FileRecord, now: datetime) -> str:
        value = get_parsed_value(parsed, "document_number")
        if value is not None and str(value).strip():
            return str(value).strip()
        millis = int(now.timestamp() * 1000)
        return f"{model.number_prefix}-{millis}-{file.content_hash[:8]}"

    def _live_document(self, model, company_id: str, document_number: str):
        return (
            self.db.query(model)
            .filter(
                model.company_id == company_id,
                model.document_number == document_number,
                model.deleted_at.is_(None),
            )
            .first()
        )

    def _build_document(self, model, company_id, document_number, parsed, file, now):
        created_at = to_iso(now)
        issue_date = parse_date(get_parsed_value(parsed, "date"), default=now)
        period_end = None
        if model.kind == "statement":
            raw_period_end = get_parsed_value(parsed, "period_end")
            if raw_period_end is not None:
                period_end = to_iso(parse_date(raw_period_end, default=issue_date))

        start, expiry = compute_retention_dates(
            self.policy,
            created_at=now,
            issue_date=issue_date,
            period_end=period_end,
        )
        document = model(
            id=str(uuid.uuid4()),
            company_id=company_id,
            file_id=file.id,
            document_number=document_number,
            issue_date=to_iso(issue_date),
            amount=parse_amount(get_parsed_value(parsed, "amount")),
            vat_amount=parse_amount(get_parsed_value(parsed, "vat_amount")),
            file_url=file.file_path,
            document_status="ready",
            retention_start_date=to_iso(start) if start else None,
            retention_expiry_date=to_iso(expiry) if expiry else None,
            metadata_={"file_id": file.id, "file_name": file.file_name},
            created_at=created_at,
            updated_at=created_at,
        )
        if period_end is not None:
            document.period_end = period_end
        return document

    # -- file transitions ----------------------------------------------------

    def _transition(self, file: FileRecord, expected: str, **values) -> bool:
        values["updated_at"] = to_iso(self.clock())
        updated = (
            self.db.query(FileRecord)
            .filter(
                FileRecord.id == file.id,
                FileRecord.status == expected,
                FileRecord.deleted_at.is_(None),
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            self.db.refresh(file)
            return False
        self.db.commit()
        self.db.refresh(file)
        return True

    def _route(self, file, expected, reason, message, parsed_data, metadata=None) -> AllocationOutcome:
        merged = {k: v for k, v in (file.metadata_ or {}).items() if k != "match_diagnostics"}
        merged.update(metadata or {})
        ok = self._transition(
            file, expected,
            status="unallocated",
            failure_reason=reason,
            error_message=message,
            parsed_data=parsed_data,
            metadata_=merged,
            processed_at=to_iso(self.clock()),
        )
        if not ok:
            return self._ineligible(file, "File changed during allocation")
        logger.info("File %s (%s) unallocated: %s", file.id, file.file_name, reason)
        return AllocationOutcome(
            file_id=file.id, success=False, status="unallocated",
            failure_reason=reason, message=message,
        )

    def _conflict(self, file, expected, existing, parsed) -> AllocationOutcome:
        message = (
            f"{existing.label} {existing.document_number} already exists for company {existing.company_id}"
        )
        outcome = self._route(
            file, expected, DOCUMENT_NUMBER_CONFLICT, message,
            parsed_data=parsed,
            metadata={"conflicting_document": {
                "type": existing.kind, "id": existing.id, "number": existing.document_number,
            }},
        )
        if outcome.status == "unallocated":
            outcome.conflict = True
            outcome.company_id = existing.company_id
            outcome.document_type = existing.kind
            outcome.document_number = existing.document_number
        return outcome

    def _link(self, file, expected, document, parsed, allocated_by, strategy) -> AllocationOutcome:
        now = to_iso(self.clock())
        metadata = {k: v for k, v in (file.metadata_ or {}).items()
                    if k not in ("match_diagnostics", "conflicting_document")}
        metadata["allocation"] = {
            "by": allocated_by,
            "at": now,
            "document_type": document.kind,
            "document_id": document.id,
            "match_strategy": strategy,
        }
        ok = self._transition(
            file, expected,
            status="parsed",
            failure_reason=None,
            error_message=None,
            parsed_data=parsed,
            company_id=document.company_id,
            document_type=document.kind,
            document_id=document.id,
            allocated_by=allocated_by,
            allocated_at=now,
            processed_at=now,
            metadata_=metadata,
        )
        if not ok:
            return self._ineligible(file, "File changed during allocation")
        logger.info(
            "Allocated file %s (%s) as %s %s to company %s",
            file.id, file.file_name, document.label, document.document_number, document.company_id,
        )
        return AllocationOutcome(
            file_id=file.id, success=True, status="parsed",
            company_id=document.company_id, document_type=document.kind,
            document_id=document.id, document_number=document.document_number,
        )

    def _relocate(self, file: FileRecord, document, now: datetime):
        source = file.file_path
        if source.startswith(f"processed/{document.folder}/"):
            return
        destination = self.storage.move(source, processed_path(document.folder, file.file_name, now))
        document.file_url = destination
        document.updated_at = to_iso(self.clock())
        file.file_path = destination
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            # Stored paths must point at the bytes; put the file back.
            self.storage.move(destination, source)
            raise

    def _already_allocated(self, file: FileRecord) -> AllocationOutcome:
        return AllocationOutcome(
            file_id=file.id, success=True, status="parsed",
            company_id=file.company_id, document_type=file.document_type,
            document_id=file.document_id, message="File already allocated",
        )

    def _ineligible(self, file: FileRecord, message: str) -> AllocationOutcome:
        logger.info("File %s not allocated: %s", file.id, message)
        return AllocationOutcome(file_id=file.id, success=False, status=file.status, message=message)
