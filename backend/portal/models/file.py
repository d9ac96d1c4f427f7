from sqlalchemy import JSON, Column, ForeignKey, Integer, Text
from portal.database import Base

FILE_STATUSES = ("pending", "parsed", "unallocated", "failed", "duplicate")

# Statuses staff may edit and resubmit.
REMEDIABLE_STATUSES = ("unallocated", "failed")


class FileRecord(Base):
    __tablename__ = "files"

    id = Column(Text, primary_key=True)
    file_name = Column(Text, nullable=False)
    file_path = Column(Text, nullable=False)
    content_hash = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False)
    mime_type = Column(Text)
    status = Column(Text, nullable=False, default="pending")
    failure_reason = Column(Text)
    error_message = Column(Text)
    parsed_data = Column(JSON)
    company_id = Column(Text, ForeignKey("companies.id", ondelete="SET NULL"))
    document_type = Column(Text)
    document_id = Column(Text)
    edit_log = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    uploaded_by = Column(Text)
    manually_edited_by = Column(Text)
    allocated_by = Column(Text)
    allocated_at = Column(Text)
    processed_at = Column(Text)
    uploaded_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)
    deleted_at = Column(Text)
