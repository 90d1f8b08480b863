"""Durable sync job queue backed by the `sync_jobs` table.

WHAT:
    enqueue / dequeue / ack / fail / remove over SyncJob rows, plus the
    housekeeping the worker runtime needs (lease recovery, stats, archival,
    brand cleanup).

WHY:
    - Queue state survives process restarts and is shared by every worker
      process, with no in-memory queue objects
    - Dequeue respects priority (high > normal > low) and admits at most one
      in-flight job per connection, because Meta rate limits are per account
      and progress must never regress from out-of-order jobs
    - Claims are conditional UPDATEs (waiting -> active) backed by a partial
      unique index, so two dequeuers racing for the same job or connection
      cannot both win

DELIVERY:
    At-least-once. A worker that dies mid-job leaves an expired lease;
    `requeue_expired_leases` puts the job back. Consumers are idempotent
    (upserts), and acks are fenced on `locked_by` so a superseded worker
    cannot complete a redelivered job.

REFERENCES:
    - adsync/models.py (SyncJob, uq_sync_jobs_one_active_per_connection)
    - adsync/services/sync_worker.py (consumer)
"""

from __future__ import annotations

import enum
import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.models import (
    PRIORITY_RANKS,
    Connection,
    JobKindEnum,
    JobPriorityEnum,
    JobStatusEnum,
    SyncJob,
    SyncJobArchive,
)
from adsync.schemas import JobSpec, parse_job_spec
from adsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = (JobStatusEnum.waiting, JobStatusEnum.delayed, JobStatusEnum.active)

# Sorts jobs without a range ahead of every dated job in the same tier
_FAR_FUTURE = date(9999, 12, 31)


class RemoveResult(str, enum.Enum):
    removed = "removed"
    cancel_requested = "cancel_requested"
    not_removable = "not_removable"
    not_found = "not_found"


def build_dedupe_key(spec: JobSpec, account_id: Optional[str] = None) -> Optional[str]:
    """Deterministic key for a job spec; equal open jobs are enqueued once.

    Format: meta:{account|connection}:{kind}:{breakdown}:{since}:{until}
    """
    time_range = getattr(spec, "time_range", None)
    if spec.kind == JobKindEnum.rollover.value:
        return f"meta:{spec.brand_id}:rollover"
    if time_range is None:
        return None
    owner = account_id or str(spec.connection_id)
    breakdown = getattr(spec, "breakdown", None) or "none"
    return f"meta:{owner}:{spec.kind}:{breakdown}:{time_range.since}:{time_range.until}"


def backoff_seconds(attempts: int, base: float, cap: float) -> float:
    """Exponential backoff: base * 2^(attempts-1), capped."""
    return min(cap, base * (2 ** max(0, attempts - 1)))


class JobQueue:
    """Queue operations over one SQLAlchemy session.

    Every mutating method commits unless `commit=False` is passed, in which
    case the caller folds the transition into its own transaction (the
    worker acks and records progress atomically).
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        job_spec: Union[JobSpec, dict],
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> UUID:
        """Validate and persist a job.

        Args:
            job_spec: JobSpec model or raw dict with a `kind`
            dedupe_key: Explicit key; derived from the spec when omitted
            now: Clock override (tests)
            commit: Commit immediately

        Returns:
            The new job id, or the id of an equal job that is still open

        Raises:
            ValidationError: If the spec is malformed for its kind
        """
        spec = parse_job_spec(job_spec)
        now = now or utcnow()
        dedupe_key = dedupe_key or build_dedupe_key(spec)

        if dedupe_key:
            existing = (
                self.db.query(SyncJob.id)
                .filter(SyncJob.dedupe_key == dedupe_key, SyncJob.status.in_(OPEN_STATUSES))
                .first()
            )
            if existing:
                logger.info("[QUEUE] Job %s already open for key %s", existing.id, dedupe_key)
                return existing.id

        time_range = getattr(spec, "time_range", None)
        priority = JobPriorityEnum(spec.priority)
        delayed = spec.delay_seconds > 0

        job = SyncJob(
            kind=JobKindEnum(spec.kind),
            brand_id=spec.brand_id,
            connection_id=spec.connection_id,
            range_since=time_range.since if time_range else None,
            range_until=time_range.until if time_range else None,
            breakdown=getattr(spec, "breakdown", None),
            payload=spec.model_dump(mode="json", exclude={"priority", "delay_seconds", "max_attempts"}),
            priority=priority,
            priority_rank=PRIORITY_RANKS[priority],
            status=JobStatusEnum.delayed if delayed else JobStatusEnum.waiting,
            run_at=now + timedelta(seconds=spec.delay_seconds) if delayed else now,
            attempts=0,
            max_attempts=spec.max_attempts or self.settings.QUEUE_MAX_ATTEMPTS,
            dedupe_key=dedupe_key,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self.db.flush()

        logger.info(
            "[QUEUE] Enqueued %s job %s (brand=%s, connection=%s, range=%s..%s, priority=%s%s)",
            job.kind.value, job.id, job.brand_id, job.connection_id,
            job.range_since, job.range_until, priority.value,
            f", delayed {spec.delay_seconds:.0f}s" if delayed else "",
        )
        if commit:
            self.db.commit()
        return job.id

    # =========================================================================
    # Dequeue
    # =========================================================================

    def promote_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose run_at has passed back to waiting."""
        now = now or utcnow()
        result = self.db.execute(
            update(SyncJob)
            .where(SyncJob.status == JobStatusEnum.delayed, SyncJob.run_at <= now)
            .values(status=JobStatusEnum.waiting, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount:
            logger.debug("[QUEUE] Promoted %d delayed jobs", result.rowcount)
        return result.rowcount

    def dequeue(self, max_jobs: int, worker_id: str, now: Optional[datetime] = None) -> List[SyncJob]:
        """Claim up to `max_jobs` ready jobs for `worker_id`.

        Ordering: priority tier, then most recent data range, then enqueue
        time. Never returns two jobs for one connection, never returns a job
        for a connection that already has one active or is rate limited.
        """
        if max_jobs <= 0:
            return []
        now = now or utcnow()
        self.promote_due_jobs(now)

        busy_connections = (
            select(SyncJob.connection_id)
            .where(SyncJob.status == JobStatusEnum.active, SyncJob.connection_id.isnot(None))
        )
        limited_connections = (
            select(Connection.id)
            .where(Connection.rate_limited_until.isnot(None), Connection.rate_limited_until > now)
        )

        ready = and_(
            SyncJob.status == JobStatusEnum.waiting,
            or_(
                SyncJob.connection_id.is_(None),
                and_(
                    SyncJob.connection_id.notin_(busy_connections),
                    SyncJob.connection_id.notin_(limited_connections),
                ),
            ),
        )
        range_key = func.coalesce(SyncJob.range_until, _FAR_FUTURE)

        # Best job per connection; jobs without a connection each stand alone
        ranked = (
            select(
                SyncJob.id.label("job_id"),
                SyncJob.connection_id.label("connection_id"),
                SyncJob.priority_rank.label("priority_rank"),
                range_key.label("range_key"),
                SyncJob.created_at.label("created_at"),
                func.row_number().over(
                    partition_by=func.coalesce(SyncJob.connection_id, SyncJob.id),
                    order_by=(
                        SyncJob.priority_rank.asc(),
                        range_key.desc(),
                        SyncJob.created_at.asc(),
                        SyncJob.id.asc(),
                    ),
                ).label("position"),
            )
            .where(ready)
            .subquery()
        )
        candidates = self.db.execute(
            select(ranked.c.job_id)
            .where(ranked.c.position == 1)
            .order_by(
                ranked.c.priority_rank.asc(),
                ranked.c.range_key.desc(),
                ranked.c.created_at.asc(),
                ranked.c.job_id.asc(),
            )
            .limit(max_jobs * 2)  # slack for claims lost to other workers
        ).scalars().all()

        claimed_ids: List[UUID] = []
        for job_id in candidates:
            if len(claimed_ids) >= max_jobs:
                break
            if self._try_claim(job_id, worker_id, now):
                claimed_ids.append(job_id)

        if not claimed_ids:
            return []

        jobs = self.db.query(SyncJob).filter(SyncJob.id.in_(claimed_ids)).all()
        order = {job_id: i for i, job_id in enumerate(claimed_ids)}
        jobs.sort(key=lambda j: order[j.id])
        logger.info("[QUEUE] Worker %s claimed %d jobs", worker_id, len(jobs))
        return jobs

    def _try_claim(self, job_id: UUID, worker_id: str, now: datetime) -> bool:
        """Atomically move one job from waiting to active.

        Returns False when another worker claimed it first or when the
        connection already has an active job (admission index violation).
        """
        try:
            result = self.db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatusEnum.waiting)
                .values(
                    status=JobStatusEnum.active,
                    locked_by=worker_id,
                    locked_at=now,
                    lease_expires_at=now + timedelta(seconds=self.settings.JOB_LEASE_SECONDS),
                    attempts=SyncJob.attempts + 1,
                    started_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug("[QUEUE] Connection of job %s already has an active job", job_id)
            return False
        return result.rowcount == 1

    # =========================================================================
    # Transitions
    # =========================================================================

    def ack(
        self,
        job_id: UUID,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> bool:
        """Mark an active job completed.

        Returns:
            False if the job is no longer active for this worker (lease was
            recovered and the job redelivered)
        """
        now = now or utcnow()
        conditions = [SyncJob.id == job_id, SyncJob.status == JobStatusEnum.active]
        if worker_id:
            conditions.append(SyncJob.locked_by == worker_id)

        result = self.db.execute(
            update(SyncJob)
            .where(*conditions)
            .values(
                status=JobStatusEnum.completed,
                finished_at=now,
                updated_at=now,
                locked_by=None,
                lease_expires_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        acked = result.rowcount == 1
        if not acked:
            logger.warning("[QUEUE] Ack ignored for job %s (not active for worker %s)", job_id, worker_id)
        if commit:
            self.db.commit()
        return acked

    def fail(
        self,
        job_id: UUID,
        error: Union[str, Exception],
        retryable: bool,
        retry_after: Optional[float] = None,
        worker_id: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Optional[JobStatusEnum]:
        """Record a failed attempt.

        Retryable failures with attempts left become `delayed` with
        run_at = now + (retry_after or exponential backoff). Everything else
        becomes `failed` (dead-letter).

        Returns:
            The resulting status, or None if the job was not active for
            this worker
        """
        now = now or utcnow()
        query = self.db.query(SyncJob).filter(SyncJob.id == job_id, SyncJob.status == JobStatusEnum.active)
        if worker_id:
            query = query.filter(SyncJob.locked_by == worker_id)
        job = query.first()
        if not job:
            logger.warning("[QUEUE] Fail ignored for job %s (not active for worker %s)", job_id, worker_id)
            return None

        message = str(error)[:2000]
        job.last_error = message
        job.locked_by = None
        job.lease_expires_at = None
        job.updated_at = now

        if retryable and job.attempts < job.max_attempts:
            delay = retry_after if retry_after is not None else backoff_seconds(
                job.attempts, self.settings.RETRY_BASE_SECONDS, self.settings.RETRY_CAP_SECONDS,
            )
            job.status = JobStatusEnum.delayed
            job.run_at = now + timedelta(seconds=delay)
            logger.warning(
                "[QUEUE] Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                job_id, job.attempts, job.max_attempts, delay, message,
            )
        else:
            job.status = JobStatusEnum.failed
            job.finished_at = now
            logger.error(
                "[QUEUE] Job %s failed permanently after %d attempt(s): %s",
                job_id, job.attempts, message,
            )

        status = job.status
        if commit:
            self.db.commit()
        return status

    def check_in(self, job_id: UUID, worker_id: str, now: Optional[datetime] = None) -> bool:
        """Extend the lease of an active job and report cancellation.

        Called by the worker at every page boundary.

        Returns:
            True if the job should stop (cancel requested, job removed or
            lease lost to another worker)
        """
        now = now or utcnow()
        self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.locked_by == worker_id, SyncJob.status == JobStatusEnum.active)
            .values(lease_expires_at=now + timedelta(seconds=self.settings.JOB_LEASE_SECONDS), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        row = (
            self.db.query(SyncJob.cancel_requested, SyncJob.locked_by, SyncJob.status)
            .filter(SyncJob.id == job_id)
            .first()
        )
        if row is None:
            return True
        return bool(row.cancel_requested) or row.locked_by != worker_id or row.status != JobStatusEnum.active

    def remove(self, job_id: UUID) -> RemoveResult:
        """Cancel a job.

        Waiting/delayed jobs are deleted outright. Active jobs get a
        cancellation flag the worker honors at the next page boundary.
        Completed and failed jobs are left for stats and archival.
        """
        job = self.db.query(SyncJob).filter(SyncJob.id == job_id).first()
        if not job:
            return RemoveResult.not_found

        if job.status in (JobStatusEnum.waiting, JobStatusEnum.delayed):
            self.db.delete(job)
            self.db.commit()
            logger.info("[QUEUE] Removed %s job %s", job.kind.value, job_id)
            return RemoveResult.removed

        if job.status == JobStatusEnum.active:
            job.cancel_requested = True
            job.updated_at = utcnow()
            self.db.commit()
            logger.info("[QUEUE] Cancellation requested for active job %s", job_id)
            return RemoveResult.cancel_requested

        return RemoveResult.not_removable

    def finalize_cancelled(self, job_id: UUID, worker_id: str) -> bool:
        """Delete an active job whose cancellation the worker observed."""
        job = (
            self.db.query(SyncJob)
            .filter(SyncJob.id == job_id, SyncJob.locked_by == worker_id, SyncJob.status == JobStatusEnum.active)
            .first()
        )
        if not job:
            return False
        self.db.delete(job)
        self.db.commit()
        logger.info("[QUEUE] Active job %s cancelled at page boundary", job_id)
        return True

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def requeue_expired_leases(self, now: Optional[datetime] = None) -> int:
        """Return jobs of crashed workers to the queue.

        Jobs with attempts left go back to waiting; exhausted ones are failed.
        """
        now = now or utcnow()
        expired = (
            self.db.query(SyncJob)
            .filter(SyncJob.status == JobStatusEnum.active, SyncJob.lease_expires_at < now)
            .all()
        )
        for job in expired:
            logger.warning(
                "[QUEUE] Lease expired for job %s (worker %s, attempt %d/%d)",
                job.id, job.locked_by, job.attempts, job.max_attempts,
            )
            job.locked_by = None
            job.lease_expires_at = None
            job.updated_at = now
            if job.attempts >= job.max_attempts:
                job.status = JobStatusEnum.failed
                job.finished_at = now
                job.last_error = "Worker lease expired and attempts are exhausted"
            else:
                job.status = JobStatusEnum.waiting
                job.last_error = "Worker lease expired; redelivering"
        if expired:
            self.db.commit()
        return len(expired)

    def get_stats(self, brand_id: Optional[UUID] = None) -> Dict[str, int]:
        """Job counts for every status (failed = dead-letter)."""
        query = self.db.query(SyncJob.status, func.count(SyncJob.id))
        if brand_id:
            query = query.filter(SyncJob.brand_id == brand_id)
        counts = {status.value: 0 for status in JobStatusEnum}
        for status, count in query.group_by(SyncJob.status).all():
            counts[JobStatusEnum(status).value] = count
        return counts

    def count_open_jobs(self, brand_id: UUID, kind: JobKindEnum) -> int:
        return (
            self.db.query(func.count(SyncJob.id))
            .filter(SyncJob.brand_id == brand_id, SyncJob.kind == kind, SyncJob.status.in_(OPEN_STATUSES))
            .scalar()
        )

    def archive_finished(self, now: Optional[datetime] = None) -> int:
        """Move old completed/failed jobs to `sync_jobs_archive`."""
        now = now or utcnow()
        completed_cutoff = now - timedelta(days=self.settings.COMPLETED_JOB_RETENTION_DAYS)
        failed_cutoff = now - timedelta(days=self.settings.FAILED_JOB_RETENTION_DAYS)

        finished = (
            self.db.query(SyncJob)
            .filter(
                or_(
                    and_(SyncJob.status == JobStatusEnum.completed, SyncJob.finished_at < completed_cutoff),
                    and_(SyncJob.status == JobStatusEnum.failed, SyncJob.finished_at < failed_cutoff),
                )
            )
            .all()
        )
        for job in finished:
            self.db.add(SyncJobArchive(
                id=job.id,
                kind=job.kind.value,
                brand_id=job.brand_id,
                connection_id=job.connection_id,
                range_since=job.range_since,
                range_until=job.range_until,
                breakdown=job.breakdown,
                payload=job.payload,
                status=job.status.value,
                attempts=job.attempts,
                last_error=job.last_error,
                created_at=job.created_at,
                finished_at=job.finished_at,
                archived_at=now,
            ))
            self.db.delete(job)

        if finished:
            self.db.commit()
            logger.info("[QUEUE] Archived %d finished jobs", len(finished))
        return len(finished)

    def cleanup_brand(self, brand_id: UUID, connection_id: Optional[UUID] = None) -> Dict[str, int]:
        """Drop queued work for a brand (or one of its connections).

        Waiting, delayed and failed jobs are deleted; active jobs get a
        cancellation request.
        """
        query = self.db.query(SyncJob).filter(SyncJob.brand_id == brand_id)
        if connection_id:
            query = query.filter(SyncJob.connection_id == connection_id)

        removed = cancelled = 0
        for job in query.filter(SyncJob.status != JobStatusEnum.completed).all():
            if job.status == JobStatusEnum.active:
                job.cancel_requested = True
                cancelled += 1
            else:
                self.db.delete(job)
                removed += 1
        self.db.commit()

        logger.info("[QUEUE] Brand %s cleanup: removed=%d, cancel_requested=%d", brand_id, removed, cancelled)
        return {"removed": removed, "cancel_requested": cancelled}
