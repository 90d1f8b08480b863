"""Sync queue and backfill endpoints.

WHAT:
    Thin HTTP wrappers over adsync/services/sync_operations.py.

WHY:
    - Routers handle request parsing and status codes only
    - The same operations are used by admin scripts and the OAuth flow, so
      no queue logic lives here

REFERENCES:
    - adsync/services/sync_operations.py
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.exceptions import AuthError, ValidationError
from adsync.models import JobStatusEnum, SyncJob
from adsync.schemas import (
    BackfillRequest,
    BackfillResponse,
    ConnectionProgressOut,
    EnqueueJobResponse,
    QueueStatsOut,
    RemoveJobResponse,
)
from adsync.services import sync_operations
from adsync.services.job_queue import RemoveResult
from adsync.services.sync_operations import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("/jobs", response_model=EnqueueJobResponse, status_code=status.HTTP_201_CREATED)
def enqueue_job(
    job_spec: Dict[str, Any] = Body(..., examples=[{
        "kind": "historical_metrics",
        "brand_id": "6f1c1c64-5b8e-4a4e-9a53-0d7c1f3f8f10",
        "connection_id": "0b8a3c4e-2f5d-4c1a-8e7b-9d6f5a4b3c2d",
        "time_range": {"since": "2024-01-01", "until": "2024-01-30"},
        "priority": "normal",
    }]),
    db: Session = Depends(get_db),
) -> EnqueueJobResponse:
    """Validate and enqueue one sync job (422 on a malformed spec)."""
    try:
        job_id = sync_operations.enqueue_job(db, job_spec)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)

    job_status = db.query(SyncJob.status).filter(SyncJob.id == job_id).scalar()
    return EnqueueJobResponse(job_id=job_id, status=job_status or JobStatusEnum.waiting)


@router.get("/queue/stats", response_model=QueueStatsOut)
def queue_stats(brand_id: Optional[UUID] = None, db: Session = Depends(get_db)) -> QueueStatsOut:
    """Job counts per status; `failed` is the dead-letter count."""
    return QueueStatsOut(**sync_operations.get_queue_stats(db, brand_id))


@router.get("/connections/{connection_id}/progress", response_model=ConnectionProgressOut)
def connection_progress(connection_id: UUID, db: Session = Depends(get_db)) -> ConnectionProgressOut:
    try:
        return ConnectionProgressOut(**sync_operations.get_connection_progress(db, connection_id))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/backfill", response_model=BackfillResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_backfill(request: BackfillRequest, db: Session = Depends(get_db)) -> BackfillResponse:
    """Queue the historical sync of a connection (12 months by default)."""
    logger.info(
        "[BACKFILL] HTTP backfill requested: brand=%s connection=%s start=%s",
        request.brand_id, request.connection_id, request.start_date,
    )
    try:
        plan = sync_operations.trigger_backfill(
            db, request.brand_id, request.connection_id, start_date=request.start_date,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return BackfillResponse(
        since=plan.date_range.since,
        until=plan.date_range.until,
        job_ids=plan.job_ids,
        deferred_demographic_jobs=plan.deferred_demographic_jobs,
    )


@router.delete("/jobs/{job_id}", response_model=RemoveJobResponse)
def remove_job(job_id: UUID, db: Session = Depends(get_db)) -> RemoveJobResponse:
    """Remove a waiting/delayed job or request cancellation of an active one."""
    result = sync_operations.remove_job(db, job_id)
    if result == RemoveResult.not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return RemoveJobResponse(job_id=job_id, result=result.value)
