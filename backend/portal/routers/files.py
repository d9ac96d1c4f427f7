from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from portal.config import settings
from portal.database import get_db
from portal.dependencies import require_staff
from portal.errors import IntakeError, QueueUnavailable
from portal.models.file import FileRecord
from portal.models.user import User
from portal.schemas.file import FileResponse, FileVerifyResponse, UploadResponse
from portal.services.pipeline import Pipeline, get_pipeline
from portal.utils.hashing import sha256_file

router = APIRouter(prefix="/files", tags=["files"])


def file_to_response(file: FileRecord) -> FileResponse:
    return FileResponse(
        id=file.id,
        file_name=file.file_name,
        file_path=file.file_path,
        content_hash=file.content_hash,
        file_size=file.file_size,
        mime_type=file.mime_type,
        status=file.status,
        failure_reason=file.failure_reason,
        error_message=file.error_message,
        parsed_data=file.parsed_data,
        company_id=file.company_id,
        document_type=file.document_type,
        document_id=file.document_id,
        edit_log=file.edit_log or [],
        metadata=file.metadata_ or {},
        uploaded_by=file.uploaded_by,
        manually_edited_by=file.manually_edited_by,
        allocated_by=file.allocated_by,
        allocated_at=file.allocated_at,
        processed_at=file.processed_at,
        uploaded_at=file.uploaded_at,
        updated_at=file.updated_at,
        deleted_at=file.deleted_at,
    )


@router.post("", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    max_bytes = settings.max_upload_bytes
    size = 0
    chunks: list[bytes] = []
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise HTTPException(status_code=413, detail=f"File too large (max {max_bytes} bytes)")
        chunks.append(chunk)

    content = b"".join(chunks)
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")

    try:
        result = pipeline.intake(db).ingest(
            content, file.filename or "upload", uploaded_by=user.id, mime_type=file.content_type
        )
    except IntakeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except QueueUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return UploadResponse(
        file=file_to_response(result.file),
        duplicate=result.duplicate,
        duplicate_of=result.duplicate_of,
        queued=result.queued,
    )


@router.get("/{file_id}", response_model=FileResponse)
async def get_file(file_id: str, _: User = Depends(require_staff), db: Session = Depends(get_db)):
    file = db.get(FileRecord, file_id)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")
    return file_to_response(file)


@router.get("/{file_id}/verify", response_model=FileVerifyResponse)
async def verify_file(
    file_id: str,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Re-hash the stored bytes and compare them to the recorded content hash."""
    file = db.get(FileRecord, file_id)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")

    path = pipeline.storage.resolve(file.file_path)
    if path is None:
        return FileVerifyResponse(
            file_id=file.id, stored_hash=file.content_hash, current_hash=None, ok=False, missing=True
        )
    current = sha256_file(path)
    return FileVerifyResponse(
        file_id=file.id, stored_hash=file.content_hash, current_hash=current, ok=current == file.content_hash
    )
