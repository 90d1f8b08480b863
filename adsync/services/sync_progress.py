"""Per-connection backfill progress.

WHAT:
    Reads and writes SyncProgress rows: stage, days completed, days targeted.

WHY:
    Status endpoints need a cheap answer to "how far along is this account"
    without scanning the queue. days_completed only grows (capped at the
    target), so the reported percentage never goes backwards even when a
    chunk is redelivered.

STAGES:
    pending -> backfilling -> live
    any -> stalled (retries exhausted) / reconnect_required (AuthError)

    stalled is sticky: while a historical chunk of the current backfill sits
    in the dead-letter (and no later run of the same chunk completed), later
    successes do not move the connection back to backfilling or live.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import exists
from sqlalchemy.orm import Session, aliased

from adsync.models import JobKindEnum, JobStatusEnum, SyncJob, SyncProgress, SyncStageEnum
from adsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Job kinds whose days count toward backfill progress
PROGRESS_KINDS = (JobKindEnum.historical_metrics, JobKindEnum.historical_demographics)

_RESUMABLE_STAGES = (SyncStageEnum.pending, SyncStageEnum.stalled, SyncStageEnum.reconnect_required)


def get_or_create(db: Session, connection_id: UUID, brand_id: UUID) -> SyncProgress:
    progress = db.query(SyncProgress).filter(SyncProgress.connection_id == connection_id).first()
    if progress is None:
        progress = SyncProgress(
            connection_id=connection_id,
            brand_id=brand_id,
            stage=SyncStageEnum.pending,
            days_completed=0,
            days_target=0,
            updated_at=utcnow(),
        )
        db.add(progress)
        db.flush()
    return progress


def start_backfill(db: Session, connection_id: UUID, brand_id: UUID, days_target: int) -> SyncProgress:
    """Reset progress for a new historical sync (caller commits)."""
    progress = get_or_create(db, connection_id, brand_id)
    progress.stage = SyncStageEnum.backfilling
    progress.days_completed = 0
    progress.days_target = days_target
    progress.last_error = None
    progress.backfill_started_at = utcnow()
    progress.updated_at = progress.backfill_started_at
    return progress


def failed_chunk(db: Session, progress: SyncProgress) -> Optional[SyncJob]:
    """Oldest dead-lettered historical chunk of the current backfill.

    A failure is ignored once a later job with the same dedupe key completed
    (the chunk was re-run successfully).
    """
    rerun = aliased(SyncJob)
    superseded = exists().where(
        rerun.dedupe_key == SyncJob.dedupe_key,
        rerun.status == JobStatusEnum.completed,
        rerun.finished_at >= SyncJob.finished_at,
    )
    query = db.query(SyncJob).filter(
        SyncJob.connection_id == progress.connection_id,
        SyncJob.kind.in_(PROGRESS_KINDS),
        SyncJob.status == JobStatusEnum.failed,
        ~superseded,
    )
    if progress.backfill_started_at is not None:
        query = query.filter(SyncJob.finished_at >= progress.backfill_started_at)
    return query.order_by(SyncJob.finished_at.asc()).first()


def _settle_stage(db: Session, progress: SyncProgress) -> None:
    failed = failed_chunk(db, progress)
    if failed is not None:
        if progress.stage != SyncStageEnum.stalled:
            logger.warning("[SYNC_WORKER] Connection %s stays stalled: chunk %s is dead-lettered",
                           progress.connection_id, failed.id)
        progress.stage = SyncStageEnum.stalled
        progress.last_error = failed.last_error
        return

    if progress.days_target and progress.days_completed >= progress.days_target:
        if progress.stage != SyncStageEnum.live:
            logger.info("[SYNC_WORKER] Connection %s backfill complete, now live", progress.connection_id)
        progress.stage = SyncStageEnum.live
    elif progress.stage in _RESUMABLE_STAGES:
        progress.stage = SyncStageEnum.backfilling if progress.days_target else SyncStageEnum.live
    progress.last_error = None


def record_days(db: Session, connection_id: UUID, brand_id: UUID, days: int) -> SyncProgress:
    """Add completed days from one finished historical job (caller commits).

    Capped at the target; reaching the target moves the stage to live.
    A job that completes after a stall or reconnect puts the connection back
    into backfilling (or live) unless another chunk is still dead-lettered.
    """
    progress = get_or_create(db, connection_id, brand_id)
    if progress.days_target:
        progress.days_completed = min(progress.days_target, progress.days_completed + max(0, days))

    _settle_stage(db, progress)
    progress.updated_at = utcnow()
    return progress


def resume(db: Session, connection_id: UUID) -> Optional[SyncProgress]:
    """Clear a stall or reconnect stage after a successful non-historical job.

    Connections that never started a backfill keep no progress row.
    """
    progress = db.query(SyncProgress).filter(SyncProgress.connection_id == connection_id).first()
    if progress is None or progress.stage not in _RESUMABLE_STAGES:
        return progress
    _settle_stage(db, progress)
    progress.updated_at = utcnow()
    return progress


def mark_stage(
    db: Session,
    connection_id: UUID,
    brand_id: UUID,
    stage: SyncStageEnum,
    error: Optional[str] = None,
) -> SyncProgress:
    """Set a terminal-ish stage with the error shown to users (caller commits)."""
    progress = get_or_create(db, connection_id, brand_id)
    progress.stage = stage
    progress.last_error = error
    progress.updated_at = utcnow()
    logger.warning("[SYNC_WORKER] Connection %s stage -> %s: %s", connection_id, stage.value, error)
    return progress
