"""Sync Worker - executes queued sync jobs.

WHAT:
    Pulls ready jobs from the durable queue and runs the fetch / normalize /
    store cycle for each:
    - historical_metrics, daily_refresh: account-level totals, then ad rows;
      a daily_refresh then re-fetches the breakdown streams it carries
    - historical_demographics: one breakdown dimension, long tail collapsed,
      replacing the stored daily rows of the range
    - rollover: demographic rollover for the job's brand

WHY:
    - Pagination is explicit so cancellation is checked between pages and
      never in the middle of applying one
    - Every failure is classified (adsync/exceptions.py) and mapped to exactly
      one queue transition, so retries, dead-letters and "reconnect required"
      never depend on log scraping
    - Jobs for different connections run in parallel threads, one session
      each; the queue guarantees one job per connection at a time

FAILURE MAPPING:
    RateLimitError        -> connection.rate_limited_until, retry after the
                             advisory delay (backoff when absent)
    AuthError             -> connection inactive, stage reconnect_required,
                             job failed without retry
    TransientNetworkError -> retry with exponential backoff up to max_attempts,
                             then stage stalled
    ValidationError /
    PermanentFailure      -> job failed, stage stalled
    anything else         -> reported to Sentry, retried like a transient error

REFERENCES:
    - adsync/services/job_queue.py
    - adsync/services/meta_insights_client.py
    - adsync/services/upsert_service.py
"""

from __future__ import annotations

import logging
import os
import socket
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.exceptions import (
    AuthError,
    DuplicateKeyConflict,
    JobCancelled,
    PermanentFailure,
    RateLimitError,
    SyncError,
    ValidationError,
)
from adsync.models import (
    Connection,
    ConnectionStatusEnum,
    DemographicBreakdown,
    GranularityEnum,
    JobKindEnum,
    JobStatusEnum,
    LevelEnum,
    SyncJob,
    SyncStageEnum,
)
from adsync.services import sync_progress, upsert_service
from adsync.services.backfill_orchestrator import BackfillOrchestrator
from adsync.services.data_changed import data_changed
from adsync.services.demographics_rollover import RolloverManager
from adsync.services.insights_parser import (
    DailyMetricRecord,
    DemographicRecord,
    MetricValues,
    collapse_breakdown_records,
    get_breakdown_config,
    normalize_account_id,
    parse_demographic_row,
    parse_metric_row,
)
from adsync.services.job_queue import JobQueue, backoff_seconds
from adsync.services.meta_insights_client import MetaInsightsClient, client_for_connection
from adsync.telemetry import capture_exception, capture_message
from adsync.utils.dates import DateRange, utc_today, utcnow

logger = logging.getLogger(__name__)

# Max concurrent jobs per batch (one DB connection each)
MAX_PARALLEL_JOBS = 5

ClientFactory = Callable[[Connection], MetaInsightsClient]

# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class JobContext:
    """Plain copy of the job fields the worker needs after a rollback."""

    id: UUID
    kind: JobKindEnum
    brand_id: UUID
    connection_id: Optional[UUID]
    since: Optional[date]
    until: Optional[date]
    breakdown: Optional[str]
    payload: Dict[str, Any]

    @classmethod
    def from_job(cls, job: SyncJob) -> "JobContext":
        return cls(
            id=job.id,
            kind=job.kind,
            brand_id=job.brand_id,
            connection_id=job.connection_id,
            since=job.range_since,
            until=job.range_until,
            breakdown=job.breakdown,
            payload=dict(job.payload or {}),
        )


@dataclass
class JobStats:
    pages: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    zero_filled_days: int = 0
    since: Optional[date] = None
    until: Optional[date] = None


@dataclass
class BatchResult:
    claimed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def add(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def __repr__(self):
        return f"BatchResult(claimed={self.claimed}, outcomes={self.outcomes})"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# =============================================================================
# WORKER
# =============================================================================

class SyncWorker:
    """Stateless job executor.

    Usage:
        worker = SyncWorker(SessionLocal)
        worker.process_batch()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
        max_parallel: int = MAX_PARALLEL_JOBS,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (lambda connection: client_for_connection(connection, self.settings))
        self.worker_id = worker_id or default_worker_id()
        self.max_parallel = max(1, max_parallel)

    # =========================================================================
    # Batch
    # =========================================================================

    def process_batch(self, max_jobs: Optional[int] = None) -> BatchResult:
        """Claim up to `max_jobs` jobs (distinct connections) and run them.

        Returns:
            BatchResult with one outcome per claimed job
        """
        max_jobs = max_jobs or self.settings.WORKER_BATCH_SIZE
        db = self.session_factory()
        try:
            job_ids = [job.id for job in JobQueue(db, self.settings).dequeue(max_jobs, self.worker_id)]
        finally:
            db.close()

        result = BatchResult(claimed=len(job_ids))
        if not job_ids:
            return result

        if self.max_parallel == 1 or len(job_ids) == 1:
            for job_id in job_ids:
                result.add(self.process_job(job_id))
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_parallel, len(job_ids))) as executor:
                futures = {executor.submit(self.process_job, job_id): job_id for job_id in job_ids}
                for future in as_completed(futures):
                    result.add(future.result())

        logger.info("[SYNC_WORKER] Batch done: %r", result)
        return result

    # =========================================================================
    # One job
    # =========================================================================

    def process_job(self, job_id: UUID) -> str:
        """Run one claimed job to a queue transition.

        Returns:
            Outcome: completed, retrying, failed, cancelled or skipped
        """
        db = self.session_factory()
        queue = JobQueue(db, self.settings)
        try:
            job = db.get(SyncJob, job_id)
            if not job or job.status != JobStatusEnum.active or job.locked_by != self.worker_id:
                logger.warning("[SYNC_WORKER] Job %s is not claimed by %s, skipping", job_id, self.worker_id)
                return "skipped"
            ctx = JobContext.from_job(job)

            logger.info(
                "[SYNC_WORKER] Starting %s job %s (connection=%s, range=%s..%s, breakdown=%s, attempt %d/%d)",
                ctx.kind.value, ctx.id, ctx.connection_id, ctx.since, ctx.until, ctx.breakdown,
                job.attempts, job.max_attempts,
            )

            try:
                stats = self._execute(db, queue, ctx)
            except JobCancelled:
                db.rollback()
                queue.finalize_cancelled(ctx.id, self.worker_id)
                return "cancelled"
            except RateLimitError as e:
                db.rollback()
                return self._on_rate_limit(db, queue, ctx, e)
            except AuthError as e:
                db.rollback()
                return self._on_auth_error(db, queue, ctx, e)
            except SyncError as e:
                db.rollback()
                return self._on_failure(db, queue, ctx, e, retryable=e.retryable)
            except Exception as e:
                db.rollback()
                logger.exception("[SYNC_WORKER] Unexpected error in job %s", ctx.id)
                capture_exception(e, extra={
                    "operation": "sync_job",
                    "job_id": str(ctx.id),
                    "kind": ctx.kind.value,
                    "connection_id": str(ctx.connection_id),
                })
                return self._on_failure(db, queue, ctx, e, retryable=True)

            return self._on_success(db, queue, ctx, stats)
        finally:
            db.close()

    def _execute(self, db: Session, queue: JobQueue, ctx: JobContext) -> JobStats:
        if ctx.kind == JobKindEnum.rollover:
            result = RolloverManager(db, self.settings).run_for_brand(ctx.brand_id)
            logger.info("[SYNC_WORKER] Rollover for brand %s: %s", ctx.brand_id, result.as_dict())
            return JobStats(
                rows_written=result.weekly_buckets + result.monthly_buckets + result.pruned_rows,
                since=result.changed_since,
                until=result.changed_until,
            )

        connection = self._load_connection(db, ctx)
        connection.last_sync_attempted_at = utcnow()
        connection.sync_status = "syncing"
        db.commit()

        client = self.client_factory(connection)
        try:
            account_id = normalize_account_id(connection.external_account_id)
            if ctx.kind == JobKindEnum.historical_demographics:
                return self._run_demographics(db, queue, ctx, client, account_id, ctx.breakdown or "")

            stats = self._run_metrics(db, queue, ctx, client, account_id)
            if ctx.kind == JobKindEnum.daily_refresh:
                for breakdown in ctx.payload.get("breakdowns") or ():
                    streamed = self._run_demographics(db, queue, ctx, client, account_id, breakdown)
                    stats.pages += streamed.pages
                    stats.rows_written += streamed.rows_written
                    stats.rows_skipped += streamed.rows_skipped
            return stats
        finally:
            client.close()

    def _load_connection(self, db: Session, ctx: JobContext) -> Connection:
        connection = db.get(Connection, ctx.connection_id) if ctx.connection_id else None
        if not connection or connection.brand_id != ctx.brand_id:
            raise PermanentFailure(f"Connection {ctx.connection_id} not found for brand {ctx.brand_id}")
        if connection.status == ConnectionStatusEnum.inactive:
            raise AuthError(f"Connection {connection.id} is inactive; reconnect required", provider="meta")
        if connection.status != ConnectionStatusEnum.active:
            raise PermanentFailure(f"Connection {connection.id} is {connection.status.value}")
        return connection

    def _job_range(self, ctx: JobContext) -> DateRange:
        if ctx.since and ctx.until:
            return DateRange.inclusive(ctx.since, ctx.until)
        if ctx.kind == JobKindEnum.daily_refresh:
            today = utc_today()
            return DateRange(today - timedelta(days=self.settings.DAILY_REFRESH_DAYS), today + timedelta(days=1))
        raise ValidationError(f"{ctx.kind.value} job {ctx.id} has no time range", field="time_range")

    # =========================================================================
    # Pagination
    # =========================================================================

    def _paginate(
        self,
        queue: JobQueue,
        ctx: JobContext,
        client: MetaInsightsClient,
        account_id: str,
        date_range: DateRange,
        level: str,
        stats: JobStats,
        on_page: Callable[[List[Dict[str, Any]]], None],
        breakdowns: Sequence[str] = (),
    ) -> None:
        """Fetch pages until the API returns no next cursor.

        Cancellation (and lease renewal) is checked before every request.
        """
        cursor = None
        while True:
            if queue.check_in(ctx.id, self.worker_id):
                logger.info("[SYNC_WORKER] Job %s cancelled after %d pages", ctx.id, stats.pages)
                raise JobCancelled(f"Job {ctx.id} cancelled")

            page = client.get_insights_page(
                account_id, date_range.since, date_range.until,
                level=level, breakdowns=breakdowns, after=cursor,
            )
            stats.pages += 1
            on_page(page.rows)

            if not page.next_cursor:
                return
            cursor = page.next_cursor

    def _write(self, db: Session, records: Sequence[Any]) -> None:
        """Upsert records and commit; a racing writer is resolved by one re-apply."""
        try:
            upsert_service.apply_many(db, records)
            db.commit()
        except DuplicateKeyConflict:
            db.rollback()
            logger.info("[SYNC_WORKER] Re-applying %d records after a concurrent write", len(records))
            upsert_service.apply_many(db, records)
            db.commit()

    # =========================================================================
    # Metrics
    # =========================================================================

    def _run_metrics(
        self,
        db: Session,
        queue: JobQueue,
        ctx: JobContext,
        client: MetaInsightsClient,
        account_id: str,
    ) -> JobStats:
        date_range = self._job_range(ctx)
        stats = JobStats(since=date_range.since, until=date_range.until)
        levels = [LevelEnum(level) for level in ctx.payload.get("levels") or (LevelEnum.account, LevelEnum.ad)]
        if LevelEnum.account in levels:
            levels.remove(LevelEnum.account)
            levels.insert(0, LevelEnum.account)

        for level in levels:
            seen_days = set()

            def apply_page(rows: List[Dict[str, Any]], level: LevelEnum = level) -> None:
                records = []
                for row in rows:
                    try:
                        records.append(parse_metric_row(
                            row, brand_id=ctx.brand_id, level=level,
                            account_id=account_id, connection_id=ctx.connection_id,
                        ))
                    except ValidationError as e:
                        stats.rows_skipped += 1
                        logger.warning("[SYNC_WORKER] Skipping malformed %s row in job %s: %s", level.value, ctx.id, e)
                self._write(db, records)
                stats.rows_written += len(records)
                seen_days.update(record.date for record in records)

            self._paginate(queue, ctx, client, account_id, date_range, level.value, stats, apply_page)

            if level == LevelEnum.account:
                self._zero_fill(db, ctx, account_id, date_range, seen_days, stats)

        logger.info(
            "[SYNC_WORKER] Job %s metrics: %d pages, %d rows written, %d skipped, %d zero days",
            ctx.id, stats.pages, stats.rows_written, stats.rows_skipped, stats.zero_filled_days,
        )
        return stats

    def _zero_fill(
        self,
        db: Session,
        ctx: JobContext,
        account_id: str,
        date_range: DateRange,
        seen_days: set,
        stats: JobStats,
    ) -> None:
        """Store explicit zero account rows for days the API returned nothing.

        Meta omits days without delivery; without a row, gap detection would
        re-request them forever.
        """
        missing = [day for day in date_range.iter_days() if day not in seen_days]
        if not missing:
            return
        self._write(db, [
            DailyMetricRecord(
                brand_id=ctx.brand_id,
                connection_id=ctx.connection_id,
                date=day,
                ad_id=account_id,
                level=LevelEnum.account,
                metrics=MetricValues(),
            )
            for day in missing
        ])
        stats.zero_filled_days += len(missing)

    # =========================================================================
    # Demographics
    # =========================================================================

    def _run_demographics(
        self,
        db: Session,
        queue: JobQueue,
        ctx: JobContext,
        client: MetaInsightsClient,
        account_id: str,
        breakdown: str,
    ) -> JobStats:
        config = get_breakdown_config(breakdown)
        date_range = self._job_range(ctx)
        stats = JobStats(since=date_range.since, until=date_range.until)
        records = []

        def collect_page(rows: List[Dict[str, Any]]) -> None:
            for row in rows:
                try:
                    records.append(parse_demographic_row(
                        row, brand_id=ctx.brand_id, config=config, connection_id=ctx.connection_id,
                    ))
                except ValidationError as e:
                    stats.rows_skipped += 1
                    logger.warning("[SYNC_WORKER] Skipping malformed %s row in job %s: %s", config.name, ctx.id, e)

        self._paginate(
            queue, ctx, client, account_id, date_range, LevelEnum.account.value, stats,
            collect_page, breakdowns=config.api_breakdowns,
        )

        collapsed = collapse_breakdown_records(records, config)
        rollover = RolloverManager(db, self.settings)
        try:
            dropped = self._replace_daily_slice(db, ctx, config.name, date_range, collapsed)
            rollover.reopen_buckets_for_dates(ctx.brand_id, date_range.since, date_range.until)
            db.commit()
        except DuplicateKeyConflict:
            db.rollback()
            dropped = self._replace_daily_slice(db, ctx, config.name, date_range, collapsed)
            rollover.reopen_buckets_for_dates(ctx.brand_id, date_range.since, date_range.until)
            db.commit()
        stats.rows_written = len(collapsed) + dropped

        logger.info(
            "[SYNC_WORKER] Job %s %s: %d pages, %d raw rows -> %d stored, %d skipped",
            ctx.id, config.name, stats.pages, len(records), len(collapsed), stats.rows_skipped,
        )
        return stats

    def _replace_daily_slice(
        self,
        db: Session,
        ctx: JobContext,
        breakdown_type: str,
        date_range: DateRange,
        records: Sequence[DemographicRecord],
    ) -> int:
        """Make the stored daily rows of the range exactly the fresh collapse.

        The top-N cut is recomputed on every fetch, so a value can move into
        "Other" between fetches; its old row must go or its impressions are
        counted twice. Caller commits.

        Returns:
            Number of stored rows deleted
        """
        keep = {(record.date_range_start, record.breakdown_value) for record in records}
        stored = (
            db.query(DemographicBreakdown.id, DemographicBreakdown.date_range_start, DemographicBreakdown.breakdown_value)
            .filter(
                DemographicBreakdown.brand_id == ctx.brand_id,
                DemographicBreakdown.granularity == GranularityEnum.daily,
                DemographicBreakdown.breakdown_type == breakdown_type,
                DemographicBreakdown.date_range_start >= date_range.start,
                DemographicBreakdown.date_range_start < date_range.end,
                or_(
                    DemographicBreakdown.connection_id == ctx.connection_id,
                    DemographicBreakdown.connection_id.is_(None),
                ),
            )
            .all()
        )
        dropped = [row_id for row_id, day, value in stored if (day, value) not in keep]
        if dropped:
            db.query(DemographicBreakdown).filter(
                DemographicBreakdown.id.in_(dropped),
            ).delete(synchronize_session=False)
            logger.info("[SYNC_WORKER] Job %s dropped %d %s rows no longer in the fetch", ctx.id, len(dropped), breakdown_type)

        upsert_service.apply_many(db, records)
        return len(dropped)

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _on_success(self, db: Session, queue: JobQueue, ctx: JobContext, stats: JobStats) -> str:
        if not queue.ack(ctx.id, self.worker_id, commit=False):
            db.rollback()
            return "skipped"

        connection = db.get(Connection, ctx.connection_id) if ctx.connection_id else None
        if connection:
            if ctx.kind in sync_progress.PROGRESS_KINDS and stats.since and stats.until:
                days = (stats.until - stats.since).days + 1
                sync_progress.record_days(db, connection.id, ctx.brand_id, days)
            else:
                sync_progress.resume(db, connection.id)
            connection.sync_status = "idle"
            connection.last_sync_completed_at = utcnow()
            connection.last_sync_error = None
        db.commit()

        if stats.since and stats.until and stats.rows_written + stats.zero_filled_days > 0:
            data_changed(ctx.brand_id, stats.since, stats.until, source=ctx.kind.value, extra={"job_id": str(ctx.id)})

        if ctx.kind == JobKindEnum.historical_demographics:
            BackfillOrchestrator(db, self.settings, queue=queue).release_backlog(ctx.brand_id)

        logger.info("[SYNC_WORKER] Job %s completed", ctx.id)
        return "completed"

    def _on_rate_limit(self, db: Session, queue: JobQueue, ctx: JobContext, error: RateLimitError) -> str:
        attempts = db.query(SyncJob.attempts).filter(SyncJob.id == ctx.id).scalar() or 1
        delay = error.retry_after if error.retry_after is not None else backoff_seconds(
            attempts, self.settings.RETRY_BASE_SECONDS, self.settings.RETRY_CAP_SECONDS,
        )
        connection = db.get(Connection, ctx.connection_id) if ctx.connection_id else None
        if connection:
            connection.rate_limited_until = utcnow() + timedelta(seconds=delay)
            connection.last_sync_error = error.message

        logger.warning("[SYNC_WORKER] Rate limited on job %s, backing off %.1fs", ctx.id, delay)
        status = queue.fail(ctx.id, error, retryable=True, retry_after=delay, worker_id=self.worker_id, commit=False)
        return self._finish_failure(db, ctx, status, error)

    def _on_auth_error(self, db: Session, queue: JobQueue, ctx: JobContext, error: AuthError) -> str:
        connection = db.get(Connection, ctx.connection_id) if ctx.connection_id else None
        if connection:
            connection.status = ConnectionStatusEnum.inactive
            connection.sync_status = "reconnect_required"
            connection.last_sync_error = error.message
            sync_progress.mark_stage(
                db, connection.id, ctx.brand_id, SyncStageEnum.reconnect_required, error.message,
            )

        logger.error("[SYNC_WORKER] Auth error on job %s, connection %s needs reconnect: %s",
                     ctx.id, ctx.connection_id, error.message)
        queue.fail(ctx.id, error, retryable=False, worker_id=self.worker_id, commit=False)
        db.commit()

        capture_message("Connection requires reconnect", level="warning", extra={
            "job_id": str(ctx.id),
            "connection_id": str(ctx.connection_id),
            "brand_id": str(ctx.brand_id),
        })
        return "failed"

    def _on_failure(self, db: Session, queue: JobQueue, ctx: JobContext, error: Exception, retryable: bool) -> str:
        connection = db.get(Connection, ctx.connection_id) if ctx.connection_id else None
        if connection:
            connection.sync_status = "error"
            connection.last_sync_error = str(error)[:2000]

        status = queue.fail(ctx.id, error, retryable=retryable, worker_id=self.worker_id, commit=False)
        return self._finish_failure(db, ctx, status, error)

    def _finish_failure(self, db: Session, ctx: JobContext, status: Optional[JobStatusEnum], error: Exception) -> str:
        if status == JobStatusEnum.failed and ctx.connection_id:
            sync_progress.mark_stage(db, ctx.connection_id, ctx.brand_id, SyncStageEnum.stalled, str(error)[:2000])
        db.commit()

        if status is None:
            return "skipped"
        return "failed" if status == JobStatusEnum.failed else "retrying"
