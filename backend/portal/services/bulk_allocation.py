"""
Bulk allocation of unallocated / failed files, run as a background task and
polled by id.

A session is processed one file at a time. Cancellation is cooperative: the
token is checked before each file, so the file being allocated when a cancel
arrives still completes.
"""
import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from portal.errors import ParserError
from portal.models.file import REMEDIABLE_STATUSES, FileRecord
from portal.services.allocation_service import PARSING_ERROR, PROCESSING_ERROR, DocumentAllocator
from portal.services.parser_service import Parser
from portal.services.settings_service import SettingsProvider
from portal.services.storage_service import LocalStorage
from portal.utils.clock import now_iso

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
CANCELLED = "cancelled"


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class AllocationSession:
    allocation_id: str
    file_ids: list[str]
    requested_by: str | None = None
    processed_files: int = 0
    current_file: str | None = None
    results: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    status: str = RUNNING
    started_at: str = field(default_factory=now_iso)
    finished_at: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    created_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def total_files(self) -> int:
        return len(self.file_ids)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r["success"])

    def to_dict(self) -> dict:
        return {
            "allocation_id": self.allocation_id,
            "status": self.status,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "succeeded": self.succeeded,
            "failed": self.processed_files - self.succeeded,
            "current_file": self.current_file,
            "cancelled": self.token.cancelled,
            "results": list(self.results),
            "errors": list(self.errors),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class AllocationSessionStore:
    """In-process session registry. Sessions expire ``ttl_seconds`` after creation."""

    def __init__(self, ttl_seconds: int = 24 * 60 * 60, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, AllocationSession] = {}

    def create(self, file_ids: list[str], requested_by: str | None = None) -> AllocationSession:
        session = AllocationSession(
            allocation_id=str(uuid.uuid4()),
            file_ids=list(dict.fromkeys(file_ids)),
            requested_by=requested_by,
            created_monotonic=self.clock(),
        )
        with self._lock:
            self._sweep()
            self._sessions[session.allocation_id] = session
        return session

    def get(self, allocation_id: str) -> AllocationSession | None:
        with self._lock:
            self._sweep()
            return self._sessions.get(allocation_id)

    def cancel(self, allocation_id: str) -> AllocationSession | None:
        session = self.get(allocation_id)
        if session is not None and session.status == RUNNING:
            session.token.cancel()
            logger.info("Cancellation requested for allocation %s", allocation_id)
        return session

    def _sweep(self):
        cutoff = self.clock() - self.ttl_seconds
        expired = [k for k, s in self._sessions.items() if s.created_monotonic < cutoff]
        for key in expired:
            del self._sessions[key]


def eligible_file_ids(db: Session) -> list[str]:
    rows = (
        db.query(FileRecord.id)
        .filter(FileRecord.status.in_(REMEDIABLE_STATUSES))
        .filter(FileRecord.deleted_at.is_(None))
        .order_by(FileRecord.uploaded_at)
        .all()
    )
    return [r[0] for r in rows]


class BulkAllocationRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage: LocalStorage,
        parser: Parser,
        settings_provider: SettingsProvider,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.parser = parser
        self.settings_provider = settings_provider

    async def run(self, session: AllocationSession):
        logger.info("Bulk allocation %s started over %d files", session.allocation_id, session.total_files)
        stopped_early = False
        for file_id in session.file_ids:
            if session.token.cancelled:
                stopped_early = True
                break
            result = await asyncio.to_thread(self._allocate_one, file_id, session)
            session.results.append(result)
            if not result["success"]:
                session.errors.append(result)
            session.processed_files += 1

        session.current_file = None
        session.status = CANCELLED if stopped_early else COMPLETED
        session.finished_at = now_iso()
        logger.info(
            "allocation_session id=%s status=%s processed=%d total=%d succeeded=%d",
            session.allocation_id, session.status, session.processed_files,
            session.total_files, session.succeeded,
        )

    def _allocate_one(self, file_id: str, session: AllocationSession) -> dict:
        db = self.session_factory()
        try:
            file = db.get(FileRecord, file_id)
            if file is None:
                return {"file_id": file_id, "file_name": None, "success": False, "error": "File not found"}
            session.current_file = file.file_name
            result = {"file_id": file.id, "file_name": file.file_name}

            allocator = DocumentAllocator(db, self.storage, self.parser, self.settings_provider.snapshot(db))
            # Existing extraction (possibly staff-corrected) is reused; only files never parsed hit the parser.
            reparse = not file.parsed_data
            try:
                outcome = allocator.allocate(file, reparse=reparse, allocated_by=session.requested_by or "system")
            except ParserError as exc:
                db.rollback()
                allocator.mark_failed(file, PARSING_ERROR, str(exc))
                return {**result, "success": False, "error": str(exc), "failure_reason": PARSING_ERROR}
            except Exception as exc:
                db.rollback()
                logger.exception("Bulk allocation of file %s failed", file_id)
                allocator.mark_failed(file, PROCESSING_ERROR, str(exc))
                return {**result, "success": False, "error": str(exc), "failure_reason": PROCESSING_ERROR}

            if outcome.success:
                return {
                    **result,
                    "success": True,
                    "company_id": outcome.company_id,
                    "document_type": outcome.document_type,
                    "document_id": outcome.document_id,
                }
            return {
                **result,
                "success": False,
                "error": outcome.message,
                "failure_reason": outcome.failure_reason,
            }
        finally:
            db.close()
