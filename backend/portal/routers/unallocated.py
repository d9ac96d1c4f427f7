from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from portal.database import get_db
from portal.dependencies import require_staff
from portal.errors import NotEligible, NotFound, QueueUnavailable
from portal.models.user import User
from portal.routers.files import file_to_response
from portal.schemas.file import (
    DiscardRequest,
    DiscardResponse,
    FileEditRequest,
    FileListResponse,
    FileResponse,
    MatchDiagnostic,
)
from portal.services.pipeline import Pipeline, get_pipeline
from portal.services.remediation_service import FileFilter

router = APIRouter(prefix="/unallocated", tags=["unallocated"], dependencies=[Depends(require_staff)])


@router.get("", response_model=FileListResponse)
async def list_unallocated(
    status: str | None = Query(None, description="unallocated | failed | duplicate | all"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        file_filter = FileFilter.named(status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    service = pipeline.remediation(db)
    files = service.list_files(file_filter, limit=limit, offset=offset)
    return FileListResponse(
        files=[file_to_response(f) for f in files],
        total=service.count_files(file_filter),
        status=status or "all",
    )


@router.get("/diagnostics", response_model=list[MatchDiagnostic])
async def match_diagnostics(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.remediation(db).diagnostics(limit=limit)


@router.post("/discard", response_model=DiscardResponse)
async def discard_files(
    req: DiscardRequest,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return pipeline.remediation(db).discard_files(req.file_ids)


@router.put("/{file_id}", response_model=FileResponse)
async def edit_file(
    file_id: str,
    req: FileEditRequest,
    user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Correct the extracted fields of a file and send it back through allocation."""
    try:
        file = pipeline.remediation(db).edit_and_requeue(
            file_id,
            editor=user,
            parsed_data=req.parsed_data,
            account_number=req.account_number,
            company_id=req.company_id,
        )
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except NotEligible as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except QueueUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return file_to_response(file)


@router.delete("/{file_id}", status_code=204)
async def discard_file(
    file_id: str,
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    result = pipeline.remediation(db).discard_files([file_id])
    if not result["discarded"]:
        raise HTTPException(status_code=404, detail="File not found or not discardable")
