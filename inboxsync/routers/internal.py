"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external cron when the worker's own sweep scheduling is off.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from inboxsync.core.config import settings
from inboxsync.core.deps import get_db
from inboxsync.core.errors import SchedulingFailure
from inboxsync.services import token_refresh_service, watch_renewal_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


class SweepEnqueueResponse(BaseModel):
    job_id: UUID | None
    duplicate: bool


@router.post(
    "/token-refresh-sweep",
    response_model=SweepEnqueueResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def enqueue_token_refresh_sweep(db: Session = Depends(get_db)):
    """Queue the bulk token refresh for the current sweep window."""
    try:
        job_id = token_refresh_service.schedule_sweep(db)
    except SchedulingFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return SweepEnqueueResponse(job_id=job_id, duplicate=job_id is None)


@router.post(
    "/watch-reconcile",
    response_model=SweepEnqueueResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def enqueue_watch_reconcile(db: Session = Depends(get_db)):
    """Queue the watch reconcile sweep for the current window."""
    try:
        job_id = watch_renewal_service.schedule_reconcile(db)
    except SchedulingFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return SweepEnqueueResponse(job_id=job_id, duplicate=job_id is None)
