import asyncio

from portal.errors import ParserError
from portal.models.document import Invoice
from portal.models.file import FileRecord
from portal.services.bulk_allocation import (
    AllocationSessionStore,
    BulkAllocationRunner,
    eligible_file_ids,
)
from portal.services.settings_service import SettingsProvider


def _runner(session_factory, storage, parser):
    return BulkAllocationRunner(session_factory, storage, parser, SettingsProvider())


class TestSessionStore:
    def test_sessions_expire(self):
        now = [1000.0]
        store = AllocationSessionStore(ttl_seconds=60, clock=lambda: now[0])
        session = store.create(["a", "a", "b"])
        assert session.total_files == 2
        assert store.get(session.allocation_id) is session

        now[0] += 61
        assert store.get(session.allocation_id) is None

    def test_cancel_unknown(self):
        assert AllocationSessionStore().cancel("missing") is None


class TestBulkAllocationRunner:
    def test_allocates_all_eligible_files(self, db, session_factory, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        good = make_file(status="unallocated", parsed_data={"account_number": "45", "invoice_number": "B1"})
        bad = make_file(status="failed", parsed_data={"account_number": "999"})
        make_file(status="parsed")

        store = AllocationSessionStore()
        session = store.create(eligible_file_ids(db), requested_by="staff-1")
        asyncio.run(_runner(session_factory, storage, parser).run(session))

        assert session.status == "completed"
        assert session.processed_files == 2
        assert session.succeeded == 1
        results = {r["file_id"]: r for r in session.results}
        assert results[good.id]["success"]
        assert results[bad.id]["failure_reason"] == "no_matching_company"
        assert [e["file_id"] for e in session.errors] == [bad.id]
        assert db.query(Invoice).one().document_number == "B1"

    def test_cancel_after_first_result(self, db, session_factory, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        files = [make_file(status="unallocated", fields={"account_number": "45", "invoice_number": f"C{i}"})
                 for i in range(4)]
        store = AllocationSessionStore()
        session = store.create([f.id for f in files])
        # Cancel arrives while the first file is being allocated
        parser.on_parse = lambda path: store.cancel(session.allocation_id)

        asyncio.run(_runner(session_factory, storage, parser).run(session))

        assert session.status == "cancelled"
        assert session.processed_files == 1
        assert session.processed_files < session.total_files
        assert len(session.results) == 1
        assert session.results[0]["success"]

    def test_cancel_during_last_file_still_completes(self, db, session_factory, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(status="unallocated", fields={"account_number": "45", "invoice_number": "LAST"})
        store = AllocationSessionStore()
        session = store.create([file.id])
        parser.on_parse = lambda path: store.cancel(session.allocation_id)

        asyncio.run(_runner(session_factory, storage, parser).run(session))

        assert session.status == "completed"
        assert session.processed_files == session.total_files == 1

    def test_parser_failure_marks_file_failed(self, db, session_factory, storage, parser, make_file):
        file = make_file(status="unallocated")
        parser.error = ParserError("garbled")
        session = AllocationSessionStore().create([file.id])

        asyncio.run(_runner(session_factory, storage, parser).run(session))

        assert session.status == "completed"
        assert session.results[0]["failure_reason"] == "parsing_error"
        db.expire_all()
        assert db.get(FileRecord, file.id).status == "failed"

    def test_missing_file_is_reported(self, session_factory, storage, parser):
        session = AllocationSessionStore().create(["nope"])
        asyncio.run(_runner(session_factory, storage, parser).run(session))
        assert session.results == [{"file_id": "nope", "file_name": None, "success": False, "error": "File not found"}]
