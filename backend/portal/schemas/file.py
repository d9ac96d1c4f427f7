from pydantic import BaseModel, Field


class FileResponse(BaseModel):
    id: str
    file_name: str
    file_path: str
    content_hash: str
    file_size: int
    mime_type: str | None
    status: str
    failure_reason: str | None
    error_message: str | None
    parsed_data: dict | None
    company_id: str | None
    document_type: str | None
    document_id: str | None
    edit_log: list[dict] = []
    metadata: dict = {}
    uploaded_by: str | None
    manually_edited_by: str | None
    allocated_by: str | None
    allocated_at: str | None
    processed_at: str | None
    uploaded_at: str
    updated_at: str
    deleted_at: str | None


class UploadResponse(BaseModel):
    file: FileResponse
    duplicate: bool
    duplicate_of: str | None = None
    queued: bool = False


class FileListResponse(BaseModel):
    files: list[FileResponse]
    total: int
    status: str


class FileVerifyResponse(BaseModel):
    file_id: str
    stored_hash: str
    current_hash: str | None
    ok: bool
    missing: bool = False


class FileEditRequest(BaseModel):
    parsed_data: dict | None = None
    account_number: str | None = None
    company_id: str | None = None


class DiscardRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1)


class DiscardResponse(BaseModel):
    discarded: int
    skipped: int
    discarded_ids: list[str]
    skipped_ids: list[str]


class MatchAttempt(BaseModel):
    strategy: str
    value: int | str | list[str] | None
    matched: bool


class MatchDiagnostic(BaseModel):
    file_id: str
    file_name: str
    status: str
    failure_reason: str | None
    account_number: str | int | float | None
    matched_company_id: str | None
    matched_company_name: str | None
    strategy: str | None
    raw: str | None
    digits: str | None
    attempts: list[MatchAttempt]
