from pydantic import BaseModel


class AllocationRequest(BaseModel):
    # Omitted: every live unallocated or failed file.
    file_ids: list[str] | None = None


class AllocationResult(BaseModel):
    file_id: str
    file_name: str | None
    success: bool
    company_id: str | None = None
    document_type: str | None = None
    document_id: str | None = None
    error: str | None = None
    failure_reason: str | None = None


class AllocationSessionResponse(BaseModel):
    allocation_id: str
    status: str
    total_files: int
    processed_files: int
    succeeded: int
    failed: int
    current_file: str | None
    cancelled: bool
    results: list[AllocationResult]
    errors: list[AllocationResult]
    started_at: str
    finished_at: str | None
