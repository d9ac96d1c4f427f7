import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from portal.dependencies import require_admin
from portal.schemas.settings import PurgeRequest, RetentionRunResponse
from portal.services.pipeline import Pipeline, get_pipeline

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/retention/run", response_model=RetentionRunResponse)
async def run_retention(pipeline: Pipeline = Depends(get_pipeline)):
    summary = await asyncio.to_thread(pipeline.reaper.run)
    return summary.to_dict()


@router.post("/purge", response_model=RetentionRunResponse)
async def purge_documents(req: PurgeRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """Hard-delete every document created before the given date. Dry run by default."""
    cutoff = datetime(req.created_before.year, req.created_before.month, req.created_before.day, tzinfo=timezone.utc)
    summary = await asyncio.to_thread(pipeline.reaper.purge, cutoff, req.dry_run)
    return summary.to_dict()
