import pytest

from portal.errors import IntakeError, QueueUnavailable
from portal.models.file import FileRecord
from portal.services.intake_service import IntakeGate
from portal.services.processing_queue import NORMAL
from portal.utils.clock import now_iso


class TestIntakeGate:
    def test_new_upload_is_pending_and_queued(self, db, storage, queue):
        result = IntakeGate(db, storage, queue).ingest(b"%PDF invoice 1", "inv-1.pdf", uploaded_by="u1")

        assert not result.duplicate
        assert result.queued
        assert result.file.status == "pending"
        assert storage.exists(result.file.file_path)
        job, priority = queue.jobs[0]
        assert job.file_id == result.file.id
        assert job.job_id == f"hash-{result.file.content_hash}"
        assert priority == NORMAL

    def test_same_bytes_twice_is_duplicate(self, db, storage, queue):
        gate = IntakeGate(db, storage, queue)
        first = gate.ingest(b"same bytes", "a.pdf")
        second = gate.ingest(b"same bytes", "a-again.pdf")

        assert second.duplicate
        assert second.duplicate_of == first.file.id
        assert second.file.status == "duplicate"
        assert second.file.file_path.startswith("unprocessed/duplicates/")
        assert storage.exists(second.file.file_path)
        assert len(queue.jobs) == 1

        live = db.query(FileRecord).filter(FileRecord.status != "duplicate").all()
        assert len(live) == 1

    def test_hash_survives_soft_delete(self, db, storage, queue):
        gate = IntakeGate(db, storage, queue)
        first = gate.ingest(b"deleted later", "a.pdf")
        first.file.deleted_at = now_iso()
        db.commit()

        again = gate.ingest(b"deleted later", "a.pdf")
        assert again.duplicate
        assert again.duplicate_of == first.file.id

    def test_hash_failure_creates_nothing(self, db, storage, queue):
        with pytest.raises(IntakeError):
            IntakeGate(db, storage, queue).ingest("not bytes", "a.pdf")
        assert db.query(FileRecord).count() == 0
        assert queue.jobs == []

    def test_stopped_queue_rejects_upload(self, db, storage, queue):
        queue.running = False
        with pytest.raises(QueueUnavailable):
            IntakeGate(db, storage, queue).ingest(b"fresh", "a.pdf")
        assert db.query(FileRecord).count() == 0

    def test_concurrent_upload_of_same_bytes_becomes_duplicate(self, db, session_factory, storage, queue, monkeypatch):
        gate = IntakeGate(db, storage, queue)
        lookup = gate._find_by_hash
        winner = {}

        def lookup_after_rival_commits(content_hash):
            # The rival upload commits between our hash check and our insert.
            if not winner:
                other = session_factory()
                try:
                    winner["id"] = IntakeGate(other, storage, queue).ingest(b"raced bytes", "race.pdf").file.id
                finally:
                    other.close()
                return None
            return lookup(content_hash)

        monkeypatch.setattr(gate, "_find_by_hash", lookup_after_rival_commits)
        result = gate.ingest(b"raced bytes", "race.pdf")

        assert result.duplicate
        assert result.duplicate_of == winner["id"]
        assert result.file.status == "duplicate"
        assert len(queue.jobs) == 1
        live = db.query(FileRecord).filter(FileRecord.status != "duplicate").all()
        assert [f.id for f in live] == [winner["id"]]
        assert storage.exists(live[0].file_path)
