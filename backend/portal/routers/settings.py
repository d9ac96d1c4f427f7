from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from portal.database import get_db
from portal.dependencies import require_admin, require_staff
from portal.models.user import User
from portal.schemas.settings import RetentionSettingsResponse, RetentionSettingsUpdate
from portal.services.pipeline import Pipeline, get_pipeline
from portal.services.retention_service import recompute_retention

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("/retention", response_model=RetentionSettingsResponse)
async def get_retention(
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    policy = pipeline.settings_provider.snapshot(db)
    return RetentionSettingsResponse(
        retention_period_days=policy.retention_period_days,
        retention_trigger=policy.retention_trigger,
    )


@router.put("/retention", response_model=RetentionSettingsResponse)
async def update_retention(
    req: RetentionSettingsUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        policy = pipeline.settings_provider.update_retention(
            db, req.retention_period_days, req.retention_trigger
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    recomputed = recompute_retention(db, policy) if req.recompute else None
    return RetentionSettingsResponse(
        retention_period_days=policy.retention_period_days,
        retention_trigger=policy.retention_trigger,
        recomputed=recomputed,
    )
