"""
Upload intake: hash, deduplicate, store, queue.

Deduplication looks at every file row with the same content hash, including
soft-deleted ones. A repeat upload is kept on disk for audit and recorded as a
``duplicate`` row, but is never queued for processing.
"""
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.errors import IntakeError, QueueUnavailable
from portal.models.file import FileRecord
from portal.services.processing_queue import NORMAL, ProcessingJob, ProcessingQueue
from portal.services.storage_service import LocalStorage, duplicate_path, incoming_path
from portal.utils.clock import to_iso, utcnow
from portal.utils.filesystem import sanitize_filename
from portal.utils.hashing import sha256_bytes

logger = logging.getLogger(__name__)


@dataclass
class IntakeResult:
    file: FileRecord
    duplicate: bool
    duplicate_of: str | None = None
    queued: bool = False


def hash_job_id(content_hash: str) -> str:
    return f"hash-{content_hash}"


class IntakeGate:
    def __init__(self, db: Session, storage: LocalStorage, queue: ProcessingQueue, clock=utcnow):
        self.db = db
        self.storage = storage
        self.queue = queue
        self.clock = clock

    def ingest(
        self,
        content: bytes,
        filename: str,
        uploaded_by: str | None = None,
        mime_type: str | None = None,
    ) -> IntakeResult:
        try:
            content_hash = sha256_bytes(content)
        except Exception as exc:
            raise IntakeError(f"Could not compute content hash for {filename!r}: {exc}") from exc

        existing = self._find_by_hash(content_hash)
        if existing is not None:
            return self._record_duplicate(content, content_hash, filename, existing, uploaded_by, mime_type)

        if not self.queue.running:
            raise QueueUnavailable("Processing queue is not accepting uploads")

        now = to_iso(self.clock())
        stored_path = self.storage.write(incoming_path(content_hash, filename), content)
        file = FileRecord(
            id=str(uuid.uuid4()),
            file_name=sanitize_filename(filename),
            file_path=stored_path,
            content_hash=content_hash,
            file_size=len(content),
            mime_type=mime_type,
            status="pending",
            edit_log=[],
            metadata_={},
            uploaded_by=uploaded_by,
            uploaded_at=now,
            updated_at=now,
        )
        self.db.add(file)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent upload of the same bytes won the insert.
            self.db.rollback()
            existing = self._find_by_hash(content_hash)
            # Same hash and name land on the same incoming path; keep the winner's bytes.
            if existing is None or existing.file_path != stored_path:
                self.storage.delete(stored_path)
            if existing is None:
                raise
            return self._record_duplicate(content, content_hash, filename, existing, uploaded_by, mime_type)
        self.db.refresh(file)

        queued = self.queue.enqueue(
            ProcessingJob(
                file_id=file.id,
                file_path=str(self.storage.full_path(stored_path)),
                file_name=file.file_name,
                job_id=hash_job_id(content_hash),
            ),
            priority=NORMAL,
        )
        logger.info("Accepted upload %s as file %s (hash %s)", file.file_name, file.id, content_hash[:12])
        return IntakeResult(file=file, duplicate=False, queued=queued)

    def _find_by_hash(self, content_hash: str) -> FileRecord | None:
        return (
            self.db.query(FileRecord)
            .filter(FileRecord.content_hash == content_hash)
            .filter(FileRecord.status != "duplicate")
            .first()
        )

    def _record_duplicate(self, content, content_hash, filename, original, uploaded_by, mime_type) -> IntakeResult:
        now = self.clock()
        stored_path = self.storage.write(duplicate_path(content_hash, filename, now), content)
        file = FileRecord(
            id=str(uuid.uuid4()),
            file_name=sanitize_filename(filename),
            file_path=stored_path,
            content_hash=content_hash,
            file_size=len(content),
            mime_type=mime_type,
            status="duplicate",
            failure_reason="duplicate",
            error_message=f"Identical content already uploaded as {original.file_name}",
            edit_log=[],
            metadata_={"duplicate_of": original.id},
            uploaded_by=uploaded_by,
            uploaded_at=to_iso(now),
            processed_at=to_iso(now),
            updated_at=to_iso(now),
        )
        self.db.add(file)
        self.db.commit()
        self.db.refresh(file)
        logger.info(
            "Upload %s is a duplicate of file %s (hash %s)", file.file_name, original.id, content_hash[:12]
        )
        return IntakeResult(file=file, duplicate=True, duplicate_of=original.id)
