from pydantic import BaseModel


class DocumentResponse(BaseModel):
    id: str
    document_type: str
    company_id: str
    file_id: str | None
    document_number: str
    issue_date: str | None
    amount: float
    vat_amount: float
    file_url: str | None
    document_status: str
    retention_start_date: str | None
    retention_expiry_date: str | None
    period_end: str | None = None
    created_at: str
    updated_at: str
    deleted_at: str | None


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse]
    total: int
    page: int
    per_page: int
