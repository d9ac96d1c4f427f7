from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from portal.database import get_db
from portal.dependencies import require_staff
from portal.models.user import User
from portal.schemas.allocation import AllocationRequest, AllocationSessionResponse
from portal.services.bulk_allocation import eligible_file_ids
from portal.services.pipeline import Pipeline, get_pipeline

router = APIRouter(prefix="/allocations", tags=["allocations"])


@router.post("", response_model=AllocationSessionResponse, status_code=202)
async def start_allocation(
    req: AllocationRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_staff),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    file_ids = req.file_ids if req.file_ids is not None else eligible_file_ids(db)
    if not file_ids:
        raise HTTPException(status_code=400, detail="No files to allocate")

    session = pipeline.sessions.create(file_ids, requested_by=user.id)
    background_tasks.add_task(pipeline.bulk_runner.run, session)
    return session.to_dict()


@router.get("/{allocation_id}", response_model=AllocationSessionResponse)
async def get_allocation(
    allocation_id: str,
    _: User = Depends(require_staff),
    pipeline: Pipeline = Depends(get_pipeline),
):
    session = pipeline.sessions.get(allocation_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Allocation session not found")
    return session.to_dict()


@router.post("/{allocation_id}/cancel", response_model=AllocationSessionResponse)
async def cancel_allocation(
    allocation_id: str,
    _: User = Depends(require_staff),
    pipeline: Pipeline = Depends(get_pipeline),
):
    session = pipeline.sessions.cancel(allocation_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Allocation session not found")
    return session.to_dict()
