from sqlalchemy import JSON, Column, Float, ForeignKey, Text
from sqlalchemy.orm import declared_attr
from portal.database import Base


class DocumentMixin:
    """Columns and lifecycle shared by invoices, credit notes and statements."""

    kind: str
    number_prefix: str
    folder: str
    label: str

    id = Column(Text, primary_key=True)
    document_number = Column(Text, nullable=False)
    issue_date = Column(Text)
    amount = Column(Float, nullable=False, default=0)
    vat_amount = Column(Float, nullable=False, default=0)
    file_url = Column(Text)
    document_status = Column(Text, nullable=False, default="ready")
    retention_start_date = Column(Text)
    retention_expiry_date = Column(Text)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)
    deleted_at = Column(Text)

    @declared_attr
    def company_id(cls):
        return Column(Text, ForeignKey("companies.id"), nullable=False)

    @declared_attr
    def file_id(cls):
        return Column(Text, ForeignKey("files.id", ondelete="SET NULL"))


class Invoice(DocumentMixin, Base):
    __tablename__ = "invoices"
    kind = "invoice"
    number_prefix = "INV"
    folder = "invoices"
    label = "Invoice"


class CreditNote(DocumentMixin, Base):
    __tablename__ = "credit_notes"
    kind = "credit_note"
    number_prefix = "CN"
    folder = "creditnotes"
    label = "Credit Note"


class Statement(DocumentMixin, Base):
    __tablename__ = "statements"
    kind = "statement"
    number_prefix = "ST"
    folder = "statements"
    label = "Statement"

    period_end = Column(Text)


DOCUMENT_MODELS = {model.kind: model for model in (Invoice, CreditNote, Statement)}


def document_model(kind: str):
    try:
        return DOCUMENT_MODELS[kind]
    except KeyError:
        raise ValueError(f"Unknown document type: {kind}") from None
