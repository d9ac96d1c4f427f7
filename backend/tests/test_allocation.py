from datetime import datetime, timezone

import pytest

from portal.errors import ParserError
from portal.models.document import CreditNote, Invoice, Statement
from portal.models.file import FileRecord
from portal.services.allocation_service import DocumentAllocator
from portal.services.settings_service import PolicySnapshot

NOW = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def _allocator(db, storage, parser, policy=None):
    return DocumentAllocator(db, storage, parser, policy or PolicySnapshot(), clock=lambda: NOW)


class TestAllocationScenarios:
    def test_account_45_allocates_invoice(self, db, storage, parser, make_company, make_file):
        company = make_company(reference_no=45)
        file = make_file(fields={
            "account_number": "45", "invoice_number": "INV-1001",
            "date": "01/02/2024", "amount": "£1,200.00", "vat_amount": "200.00",
        })

        outcome = _allocator(db, storage, parser).allocate(file)

        assert outcome.success
        invoice = db.query(Invoice).one()
        assert invoice.company_id == company.id
        assert invoice.document_number == "INV-1001"
        assert invoice.amount == 1200.0
        assert invoice.issue_date == "2024-02-01T00:00:00Z"
        db.refresh(file)
        assert file.status == "parsed"
        assert file.company_id == company.id
        assert file.document_id == invoice.id
        assert file.metadata_["allocation"]["match_strategy"] == "reference_no"

    def test_file_moves_to_processed_area(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(file_name="jan.pdf", fields={"account_number": "45", "invoice_number": "A1"})
        incoming = file.file_path

        _allocator(db, storage, parser).allocate(file)

        invoice = db.query(Invoice).one()
        db.refresh(file)
        assert invoice.file_url == "processed/invoices/2024/01/15/jan.pdf"
        assert file.file_path == invoice.file_url
        assert storage.exists(invoice.file_url)
        assert not storage.exists(incoming)

    def test_account_999_is_unallocated(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45, code="ACME")
        file = make_file(fields={"account_number": "999", "invoice_number": "X"})

        outcome = _allocator(db, storage, parser).allocate(file)

        assert not outcome.success
        db.refresh(file)
        assert file.status == "unallocated"
        assert file.failure_reason == "no_matching_company"
        assert file.parsed_data["account_number"] == "999"
        assert len(file.metadata_["match_diagnostics"]["attempts"]) == 3
        assert db.query(Invoice).count() == 0

    def test_missing_account_number(self, db, storage, parser, make_file):
        file = make_file(fields={"invoice_number": "X"})
        outcome = _allocator(db, storage, parser).allocate(file)
        assert outcome.failure_reason == "missing_account_number"
        db.refresh(file)
        assert file.status == "unallocated"

    def test_credit_note_and_statement(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=7)
        credit = make_file(fields={"account_number": "7", "document_type": "Credit Note", "credit_number": "C1"})
        statement = make_file(fields={
            "account_number": "7", "document_type": "statement",
            "statement_number": "S1", "period_end": "31/01/2024",
        })
        allocator = _allocator(db, storage, parser)

        assert allocator.allocate(credit).document_type == "credit_note"
        assert allocator.allocate(statement).document_type == "statement"
        assert db.query(CreditNote).one().document_number == "C1"
        assert db.query(Statement).one().period_end == "2024-01-31T00:00:00Z"

    def test_synthesised_document_number(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45"})
        outcome = _allocator(db, storage, parser).allocate(file)
        millis = int(NOW.timestamp() * 1000)
        assert outcome.document_number == f"INV-{millis}-{file.content_hash[:8]}"

    def test_bad_date_and_amount_do_not_fail(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "Z", "date": "soon", "amount": "tbc"})
        outcome = _allocator(db, storage, parser).allocate(file)
        assert outcome.success
        invoice = db.query(Invoice).one()
        assert invoice.amount == 0.0
        assert invoice.issue_date == "2024-01-15T10:30:00Z"


class TestAllocationUniqueness:
    def test_second_file_with_same_number_conflicts(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        first = make_file(fields={"account_number": "45", "invoice_number": "DUP-1"})
        second = make_file(fields={"account_number": "45", "invoice_number": "DUP-1"})
        allocator = _allocator(db, storage, parser)

        assert allocator.allocate(first).success
        outcome = allocator.allocate(second)

        assert outcome.conflict
        assert outcome.failure_reason == "document_number_conflict"
        assert db.query(Invoice).count() == 1
        db.refresh(second)
        assert second.status == "unallocated"
        assert second.metadata_["conflicting_document"]["number"] == "DUP-1"

    def test_concurrent_insert_of_same_number_conflicts(
        self, db, session_factory, storage, parser, make_company, make_file, monkeypatch
    ):
        make_company(reference_no=45)
        rival = make_file(fields={"account_number": "45", "invoice_number": "RACE-1"})
        file = make_file(fields={"account_number": "45", "invoice_number": "RACE-1"})
        allocator = _allocator(db, storage, parser)
        lookup = allocator._live_document
        rival_outcome = {}

        def lookup_after_rival_commits(model, company_id, document_number):
            # The rival worker commits between our existence check and our insert.
            if not rival_outcome:
                other = session_factory()
                try:
                    rival_file = other.get(FileRecord, rival.id)
                    rival_outcome["outcome"] = _allocator(other, storage, parser).allocate(rival_file)
                finally:
                    other.close()
                return None
            return lookup(model, company_id, document_number)

        monkeypatch.setattr(allocator, "_live_document", lookup_after_rival_commits)
        outcome = allocator.allocate(file)

        assert rival_outcome["outcome"].success
        assert outcome.conflict
        assert outcome.failure_reason == "document_number_conflict"
        assert outcome.document_id is None
        assert db.query(Invoice).count() == 1
        assert db.query(Invoice).one().file_id == rival.id
        db.refresh(file)
        assert file.status == "unallocated"

    def test_rerun_after_crash_is_idempotent(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "R-1"})
        allocator = _allocator(db, storage, parser)
        first = allocator.allocate(file)

        # Document committed, file status lost
        db.query(FileRecord).filter(FileRecord.id == file.id).update(
            {"status": "pending", "document_id": None}, synchronize_session=False
        )
        db.commit()
        db.refresh(file)

        again = allocator.allocate(file)
        assert again.success
        assert again.document_id == first.document_id
        assert db.query(Invoice).count() == 1

    def test_same_number_for_other_company_is_allowed(self, db, storage, parser, make_company, make_file):
        make_company(name="A", reference_no=1)
        make_company(name="B", reference_no=2)
        allocator = _allocator(db, storage, parser)
        assert allocator.allocate(make_file(fields={"account_number": "1", "invoice_number": "N"})).success
        assert allocator.allocate(make_file(fields={"account_number": "2", "invoice_number": "N"})).success
        assert db.query(Invoice).count() == 2


class TestAllocationRetention:
    def test_upload_date_trigger(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "R", "date": "01/01/2020"})
        policy = PolicySnapshot(retention_period_days=30, retention_trigger="upload_date")

        _allocator(db, storage, parser, policy).allocate(file)

        invoice = db.query(Invoice).one()
        assert invoice.retention_start_date == "2024-01-15T10:30:00Z"
        assert invoice.retention_expiry_date == "2024-02-14T00:00:00Z"

    def test_invoice_date_trigger(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "R", "date": "01/02/2024"})
        policy = PolicySnapshot(retention_period_days=30, retention_trigger="invoice_date")

        _allocator(db, storage, parser, policy).allocate(file)

        assert db.query(Invoice).one().retention_expiry_date == "2024-03-02T00:00:00Z"

    def test_far_future_invoice_date_still_allocates(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "FAR", "date": "31/12/9999"})
        policy = PolicySnapshot(retention_period_days=30, retention_trigger="invoice_date")

        outcome = _allocator(db, storage, parser, policy).allocate(file)

        assert outcome.success
        invoice = db.query(Invoice).one()
        assert invoice.issue_date == "2024-01-15T10:30:00Z"
        assert invoice.retention_expiry_date == "2024-02-14T00:00:00Z"

    def test_three_digit_year_is_not_stored(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "OLD", "date": "01/01/0999"})

        assert _allocator(db, storage, parser).allocate(file).success
        assert db.query(Invoice).one().issue_date == "2024-01-15T10:30:00Z"

    def test_no_period_sets_no_expiry(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(fields={"account_number": "45", "invoice_number": "R"})
        _allocator(db, storage, parser).allocate(file)
        invoice = db.query(Invoice).one()
        assert invoice.retention_expiry_date is None
        assert invoice.retention_start_date is None


class TestAllocationEligibility:
    def test_parser_error_propagates_without_writes(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file()
        parser.error = ParserError("unreadable")

        with pytest.raises(ParserError):
            _allocator(db, storage, parser).allocate(file)
        db.refresh(file)
        assert file.status == "pending"

    def test_manual_edit_skips_parser(self, db, storage, parser, make_company, make_file):
        make_company(reference_no=45)
        file = make_file(status="unallocated", parsed_data={"account_number": "45", "invoice_number": "M"})

        outcome = _allocator(db, storage, parser).allocate(file, reparse=False)

        assert outcome.success
        assert parser.calls == []

    def test_already_allocated_file(self, db, storage, parser, make_file):
        file = make_file(status="parsed")
        outcome = _allocator(db, storage, parser).allocate(file)
        assert outcome.success
        assert outcome.message == "File already allocated"
        assert parser.calls == []

    def test_duplicate_is_not_allocatable(self, db, storage, parser, make_file):
        file = make_file(status="duplicate")
        outcome = _allocator(db, storage, parser).allocate(file)
        assert not outcome.success
        assert outcome.status == "duplicate"

    def test_mark_failed(self, db, storage, parser, make_file):
        file = make_file()
        outcome = _allocator(db, storage, parser).mark_failed(file, "parsing_error", "boom")
        assert outcome.status == "failed"
        db.refresh(file)
        assert file.status == "failed"
        assert file.failure_reason == "parsing_error"
        assert file.error_message == "boom"
