"""
Wires the intake pipeline together and owns its background tasks.

One ``Pipeline`` per process: the processing queue workers, the hourly
retention loop and the bulk allocation session store all hang off it. Routers
reach it through the ``get_pipeline`` dependency so tests can swap it out.
"""
import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from portal.config import Settings, settings
from portal.database import SessionLocal
from portal.errors import ParserError
from portal.models.file import FileRecord
from portal.services.allocation_service import (
    PARSING_ERROR,
    PROCESSING_ERROR,
    AllocationOutcome,
    DocumentAllocator,
)
from portal.services.bulk_allocation import AllocationSessionStore, BulkAllocationRunner
from portal.services.intake_service import IntakeGate, hash_job_id
from portal.services.notification_service import LoggingNotifier, Notifier
from portal.services.parser_service import Parser, TextFieldParser
from portal.services.processing_queue import NORMAL, HIGH, ProcessingJob, ProcessingQueue
from portal.services.remediation_service import RemediationService, file_job_id
from portal.services.retention_service import RetentionReaper
from portal.services.settings_service import SettingsProvider
from portal.services.storage_service import LocalStorage

logger = logging.getLogger(__name__)


class Pipeline:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage: LocalStorage,
        parser: Parser | None = None,
        notifier: Notifier | None = None,
        settings_provider: SettingsProvider | None = None,
        queue: ProcessingQueue | None = None,
        config: Settings = settings,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.parser = parser or TextFieldParser()
        self.notifier = notifier or LoggingNotifier()
        self.settings_provider = settings_provider or SettingsProvider()
        self.queue = queue or ProcessingQueue(
            self.handle_job,
            on_exhausted=self.record_exhausted,
            concurrency=config.queue_concurrency,
            max_attempts=config.queue_max_attempts,
            backoff_seconds=config.queue_backoff_seconds,
            job_timeout=config.job_timeout_seconds,
        )
        self.sessions = AllocationSessionStore(ttl_seconds=config.allocation_session_ttl_seconds)
        self.bulk_runner = BulkAllocationRunner(
            session_factory, storage, self.parser, self.settings_provider
        )
        self.reaper = RetentionReaper(session_factory, storage, self.notifier, self.settings_provider)
        self.reaper_enabled = config.reaper_enabled
        self.reaper_interval = config.reaper_interval_seconds
        self._reaper_task: asyncio.Task | None = None

    # -- per-request services --------------------------------------------------

    def intake(self, db: Session) -> IntakeGate:
        return IntakeGate(db, self.storage, self.queue)

    def remediation(self, db: Session) -> RemediationService:
        return RemediationService(db, self.storage, self.queue)

    def allocator(self, db: Session) -> DocumentAllocator:
        return DocumentAllocator(db, self.storage, self.parser, self.settings_provider.snapshot(db))

    # -- lifecycle -------------------------------------------------------------

    async def start(self):
        self.storage.ensure_dirs()
        await self.queue.start()
        self.requeue_pending()
        if self.reaper_enabled:
            self._reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info("Retention reaper scheduled every %ds", self.reaper_interval)

    async def stop(self):
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                logger.info("Retention reaper stopped")
        self._reaper_task = None
        await self.queue.stop()

    def requeue_pending(self) -> int:
        """Queue every pending file; covers jobs lost when the process stopped mid-run."""
        db = self.session_factory()
        try:
            pending = (
                db.query(FileRecord)
                .filter(FileRecord.status == "pending", FileRecord.deleted_at.is_(None))
                .order_by(FileRecord.uploaded_at)
                .all()
            )
            queued = 0
            for file in pending:
                edited = file.manually_edited_by is not None
                job = ProcessingJob(
                    file_id=file.id,
                    file_path=str(self.storage.full_path(file.file_path)),
                    file_name=file.file_name,
                    job_id=file_job_id(file.id) if edited else hash_job_id(file.content_hash),
                    manually_edited=edited,
                )
                if self.queue.enqueue(job, priority=HIGH if edited else NORMAL):
                    queued += 1
        finally:
            db.close()
        if queued:
            logger.info("Requeued %d pending files", queued)
        return queued

    # -- queue callbacks -------------------------------------------------------

    async def handle_job(self, job: ProcessingJob):
        return await asyncio.to_thread(self._process, job)

    def _process(self, job: ProcessingJob) -> AllocationOutcome | None:
        db = self.session_factory()
        try:
            file = db.get(FileRecord, job.file_id)
            if file is None or file.deleted_at is not None or file.status != "pending":
                logger.info("Skipping job %s: file is no longer pending", job.job_id)
                return None
            return self.allocator(db).allocate(file, reparse=not job.manually_edited)
        finally:
            db.close()

    async def record_exhausted(self, job: ProcessingJob, exc: Exception):
        await asyncio.to_thread(self._mark_failed, job, exc)

    def _mark_failed(self, job: ProcessingJob, exc: Exception):
        reason = PARSING_ERROR if isinstance(exc, ParserError) else PROCESSING_ERROR
        db = self.session_factory()
        try:
            file = db.get(FileRecord, job.file_id)
            if file is None:
                return
            self.allocator(db).mark_failed(file, reason, job.last_error or str(exc))
        finally:
            db.close()

    async def _reaper_loop(self):
        while True:
            try:
                await asyncio.sleep(self.reaper_interval)
                await asyncio.to_thread(self.reaper.run)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Retention run failed: %s", exc)


pipeline = Pipeline(SessionLocal, LocalStorage(settings.storage_path, extra_bases=[settings.data_path]))


def get_pipeline() -> Pipeline:
    return pipeline
