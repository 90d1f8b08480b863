"""Backfill Orchestrator - historical sync planning.

WHAT:
    Turns "sync this account's history" into bounded queue jobs:
    - One daily refresh job for the most recent days and today (high
      priority), also re-fetching every breakdown stream
    - Fixed-size metric chunks over [start, today), most recent first
    - One demographic job stream per breakdown dimension, throttled per brand
    Also turns detected gaps into repair jobs and plans the recurring daily
    sync that keeps live connections current.

WHY:
    - A failed chunk is retried on its own instead of redoing a year
    - Recent data first: dashboards show the current month within minutes
      while older history fills in behind it
    - Demographics need one API call per dimension; queueing all of them at
      once would flood the queue and trip the account's rate limit, so excess
      chunks wait in `backfill_backlog` and are released as jobs finish

PRIORITIES:
    - daily refresh, first metric chunk, repairs: high
    - next two metric chunks: normal
    - everything older: low

REFERENCES:
    - adsync/utils/dates.py (split_range, add_months)
    - adsync/services/job_queue.py
    - adsync/services/gap_detection.py (repairs)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.exceptions import ValidationError
from adsync.models import (
    BackfillBacklogItem,
    Connection,
    ConnectionStatusEnum,
    JobKindEnum,
    JobPriorityEnum,
    ProviderEnum,
)
from adsync.schemas import (
    DailyRefreshJobSpec,
    HistoricalDemographicsJobSpec,
    HistoricalMetricsJobSpec,
    TimeRange,
)
from adsync.services import sync_progress
from adsync.services.insights_parser import get_breakdown_config, normalize_account_id
from adsync.services.job_queue import JobQueue, build_dedupe_key
from adsync.utils.dates import DateRange, add_months, contiguous_ranges, split_range, utc_today

logger = logging.getLogger(__name__)


@dataclass
class BackfillPlan:
    """What queue_historical_sync enqueued."""

    date_range: DateRange
    refresh_job_id: Optional[UUID] = None
    metric_job_ids: List[UUID] = field(default_factory=list)
    demographic_job_ids: List[UUID] = field(default_factory=list)
    deferred_demographic_jobs: int = 0

    @property
    def job_ids(self) -> List[UUID]:
        ids = [self.refresh_job_id] if self.refresh_job_id else []
        return ids + self.metric_job_ids + self.demographic_job_ids


def chunk_priority(index: int) -> JobPriorityEnum:
    """Priority of the index-th most recent chunk."""
    if index == 0:
        return JobPriorityEnum.high
    if index <= 2:
        return JobPriorityEnum.normal
    return JobPriorityEnum.low


def _time_range(chunk: DateRange) -> TimeRange:
    return TimeRange(since=chunk.since, until=chunk.until)


class BackfillOrchestrator:
    """Plans historical syncs and repairs for one session."""

    def __init__(self, db: Session, settings: Optional[Settings] = None, queue: Optional[JobQueue] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.queue = queue or JobQueue(db, self.settings)

    # =========================================================================
    # Historical sync
    # =========================================================================

    def backfill_range(
        self,
        connection: Connection,
        start_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> DateRange:
        """Target range [start, today).

        Default start is BACKFILL_MONTHS calendar months before the connection
        was created; a forced start_date wins. Either is clamped to the oldest
        day the API still serves.
        """
        today = today or utc_today()
        if start_date is None:
            connected = connection.connected_at or datetime.combine(today, datetime.min.time())
            start_date = add_months(connected.date(), -self.settings.BACKFILL_MONTHS)

        oldest = today - timedelta(days=self.settings.API_HISTORY_LIMIT_DAYS)
        if start_date < oldest:
            logger.info("[BACKFILL] Clamping start %s to API history limit %s", start_date, oldest)
            start_date = oldest
        return DateRange(min(start_date, today), today)

    def queue_historical_sync(
        self,
        brand_id: UUID,
        connection_id: UUID,
        access_token: str,
        account_id: str,
        start_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> BackfillPlan:
        """Plan and enqueue the full historical sync of one ad account.

        Args:
            brand_id: Owning brand
            connection_id: Connection to sync
            access_token: Token the caller holds; only checked for presence
                (workers always read the current token from the connection)
            account_id: Ad account id ("act_123" or "123")
            start_date: Forced first day
            today: Clock override (tests)

        Returns:
            BackfillPlan with the enqueued job ids

        Raises:
            ValidationError: Missing token, unknown connection or connection
                of another brand
        """
        if not access_token:
            raise ValidationError("access_token is required to queue a historical sync", field="access_token")
        if not account_id:
            raise ValidationError("account_id is required to queue a historical sync", field="account_id")

        connection = self.db.query(Connection).filter(Connection.id == connection_id).first()
        if not connection or connection.brand_id != brand_id:
            raise ValidationError(f"Connection {connection_id} not found for brand {brand_id}", field="connection_id")

        today = today or utc_today()
        account_id = normalize_account_id(account_id)
        date_range = self.backfill_range(connection, start_date=start_date, today=today)
        chunks = list(reversed(split_range(date_range, self.settings.BACKFILL_CHUNK_DAYS)))
        breakdowns = self.settings.demographic_breakdowns
        for name in breakdowns:
            get_breakdown_config(name)

        plan = BackfillPlan(date_range=date_range)
        logger.info(
            "[BACKFILL] Planning %s..%s (%d days, %d chunks, %d breakdowns) for connection %s",
            date_range.since, date_range.until, date_range.days, len(chunks), len(breakdowns), connection_id,
        )

        # 1. Most recent days first, today included
        refresh = self._refresh_spec(brand_id, connection_id, self.refresh_range(today), breakdowns)
        plan.refresh_job_id = self.queue.enqueue(
            refresh, dedupe_key=build_dedupe_key(refresh, account_id), commit=False,
        )

        # 2. Metric chunks, most recent first
        for index, chunk in enumerate(chunks):
            spec = HistoricalMetricsJobSpec(
                kind="historical_metrics",
                brand_id=brand_id,
                connection_id=connection_id,
                time_range=_time_range(chunk),
                priority=chunk_priority(index),
            )
            plan.metric_job_ids.append(
                self.queue.enqueue(spec, dedupe_key=build_dedupe_key(spec, account_id), commit=False)
            )

        # 3. Demographic streams, throttled per brand
        self.db.query(BackfillBacklogItem).filter(
            BackfillBacklogItem.connection_id == connection_id,
        ).delete(synchronize_session=False)

        available = self._demographic_slots(brand_id)
        for index, chunk in enumerate(chunks):
            priority = JobPriorityEnum.normal if index == 0 else JobPriorityEnum.low
            for breakdown in breakdowns:
                if available > 0:
                    plan.demographic_job_ids.append(
                        self._enqueue_demographics(brand_id, connection_id, account_id, breakdown, chunk, priority)
                    )
                    available -= 1
                else:
                    self.db.add(BackfillBacklogItem(
                        brand_id=brand_id,
                        connection_id=connection_id,
                        account_id=account_id,
                        breakdown=breakdown,
                        range_since=chunk.since,
                        range_until=chunk.until,
                        priority=priority,
                    ))
                    plan.deferred_demographic_jobs += 1

        sync_progress.start_backfill(
            self.db, connection_id, brand_id, days_target=date_range.days * (1 + len(breakdowns)),
        )
        self.db.commit()

        logger.info(
            "[BACKFILL] Queued %d metric + %d demographic jobs (%d deferred) for connection %s",
            len(plan.metric_job_ids), len(plan.demographic_job_ids), plan.deferred_demographic_jobs, connection_id,
        )
        return plan

    def refresh_range(self, today: Optional[date] = None) -> DateRange:
        """The last DAILY_REFRESH_DAYS days plus today."""
        today = today or utc_today()
        return DateRange(today - timedelta(days=self.settings.DAILY_REFRESH_DAYS), today + timedelta(days=1))

    def _refresh_spec(
        self,
        brand_id: UUID,
        connection_id: UUID,
        date_range: DateRange,
        breakdowns: Sequence[str] = (),
    ) -> DailyRefreshJobSpec:
        return DailyRefreshJobSpec(
            kind="daily_refresh",
            brand_id=brand_id,
            connection_id=connection_id,
            time_range=_time_range(date_range),
            breakdowns=list(breakdowns),
            priority=JobPriorityEnum.high,
        )

    def _demographic_slots(self, brand_id: UUID) -> int:
        open_jobs = self.queue.count_open_jobs(brand_id, JobKindEnum.historical_demographics)
        return max(0, self.settings.MAX_QUEUED_DEMOGRAPHIC_JOBS_PER_BRAND - open_jobs)

    def _enqueue_demographics(
        self,
        brand_id: UUID,
        connection_id: UUID,
        account_id: str,
        breakdown: str,
        chunk: DateRange,
        priority: JobPriorityEnum,
    ) -> UUID:
        spec = HistoricalDemographicsJobSpec(
            kind="historical_demographics",
            brand_id=brand_id,
            connection_id=connection_id,
            time_range=_time_range(chunk),
            breakdown=breakdown,
            priority=priority,
        )
        return self.queue.enqueue(spec, dedupe_key=build_dedupe_key(spec, account_id), commit=False)

    # =========================================================================
    # Back-pressure
    # =========================================================================

    def release_backlog(self, brand_id: UUID) -> int:
        """Move deferred demographic chunks into the queue up to the cap.

        Most recent chunks are released first.

        Returns:
            Number of jobs enqueued
        """
        available = self._demographic_slots(brand_id)
        if available <= 0:
            return 0

        items = (
            self.db.query(BackfillBacklogItem)
            .filter(BackfillBacklogItem.brand_id == brand_id)
            .order_by(
                BackfillBacklogItem.range_until.desc(),
                BackfillBacklogItem.created_at.asc(),
                BackfillBacklogItem.breakdown.asc(),
            )
            .limit(available)
            .all()
        )
        for item in items:
            self._enqueue_demographics(
                item.brand_id, item.connection_id, item.account_id, item.breakdown,
                DateRange.inclusive(item.range_since, item.range_until), item.priority,
            )
            self.db.delete(item)

        if items:
            self.db.commit()
            logger.info("[BACKFILL] Released %d demographic jobs from backlog for brand %s", len(items), brand_id)
        return len(items)

    def brands_with_backlog(self) -> List[UUID]:
        return [row[0] for row in self.db.query(BackfillBacklogItem.brand_id).distinct().all()]

    # =========================================================================
    # Repairs
    # =========================================================================

    def queue_repairs(self, brand_id: UUID, connection_id: UUID, dates: Iterable[date]) -> List[UUID]:
        """Enqueue high-priority refresh jobs covering the given days.

        Consecutive days share one job; repairs do not count toward backfill
        progress.
        """
        connection = self.db.query(Connection).filter(Connection.id == connection_id).first()
        if not connection or connection.brand_id != brand_id:
            raise ValidationError(f"Connection {connection_id} not found for brand {brand_id}", field="connection_id")

        account_id = normalize_account_id(connection.external_account_id)
        job_ids = []
        for gap in contiguous_ranges(dates):
            for chunk in split_range(gap, self.settings.BACKFILL_CHUNK_DAYS):
                spec = self._refresh_spec(brand_id, connection_id, chunk)
                job_ids.append(self.queue.enqueue(spec, dedupe_key=build_dedupe_key(spec, account_id), commit=False))
        self.db.commit()

        if job_ids:
            logger.info("[BACKFILL] Queued %d repair jobs for connection %s", len(job_ids), connection_id)
        return job_ids

    # =========================================================================
    # Recurring refresh
    # =========================================================================

    def queue_daily_syncs(self, today: Optional[date] = None) -> List[UUID]:
        """Enqueue the recurring refresh of every active Meta connection.

        One high-priority daily_refresh per connection over the refresh
        window, carrying every configured breakdown stream, so new days land
        for metrics and demographics alike and late attribution is picked
        up. An equal refresh that is still open is reused (dedupe key), so
        overlapping ticks do not pile up jobs.

        Returns:
            Job ids, one per connection
        """
        date_range = self.refresh_range(today)
        breakdowns = self.settings.demographic_breakdowns
        connections = (
            self.db.query(Connection)
            .filter(
                Connection.provider == ProviderEnum.meta,
                Connection.status == ConnectionStatusEnum.active,
            )
            .order_by(Connection.connected_at.asc(), Connection.id.asc())
            .all()
        )

        job_ids = []
        for connection in connections:
            spec = self._refresh_spec(connection.brand_id, connection.id, date_range, breakdowns)
            account_id = normalize_account_id(connection.external_account_id)
            job_ids.append(self.queue.enqueue(spec, dedupe_key=build_dedupe_key(spec, account_id), commit=False))
        self.db.commit()

        logger.info(
            "[BACKFILL] Daily sync queued for %d connections (%s..%s, %d breakdowns)",
            len(job_ids), date_range.since, date_range.until, len(breakdowns),
        )
        return job_ids
