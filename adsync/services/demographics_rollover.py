"""Demographic rollover lifecycle.

WHAT:
    Ages daily demographic rows into weekly aggregates, and weekly aggregates
    into monthly ones, exactly once per (brand, bucket, granularity).

WHY:
    - Breakdown tables grow by (days x dimensions x values); older data is
      only ever read at week/month resolution
    - Every bucket is claimed in the rollover ledger and marked done in the
      same transaction that writes its aggregates, so a crash or a concurrent
      runner can never produce a double-counted bucket
    - Aggregates are recomputed from sums (rates derived from summed base
      measures), read in key order with Decimal arithmetic, so a re-run is
      bit-identical

BUCKETS:
    - weekly: Monday-based week segment, clipped to its calendar month,
      eligible once it ended more than ROLLOVER_WEEKLY_AFTER_DAYS ago
    - monthly: calendar month, eligible once it ended more than
      ROLLOVER_MONTHLY_AFTER_DAYS ago and every week in it is rolled

RETENTION (DEMOGRAPHIC_RETENTION_POLICY):
    - prune: finer rows of a done bucket are deleted with the aggregate
      write; rows re-delivered later into a done bucket are swept on the
      next run (the aggregate stays authoritative)
    - retain: finer rows are kept; late daily rows reopen their buckets and
      the next run recomputes them by overwrite

REFERENCES:
    - adsync/models.py (DemographicBreakdown, RolloverLedgerEntry)
    - adsync/services/insights_parser.py (sum_metrics, derive_rates)
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.models import (
    BackfillBacklogItem,
    DemographicBreakdown,
    GranularityEnum,
    JobKindEnum,
    JobStatusEnum,
    LedgerStatusEnum,
    RetentionPolicyEnum,
    RolloverLedgerEntry,
    SyncJob,
)
from adsync.services import upsert_service
from adsync.services.insights_parser import DemographicRecord, MetricValues, sum_metrics
from adsync.utils.dates import month_bucket, utc_today, utcnow, week_segment

logger = logging.getLogger(__name__)

Bucket = Tuple[date, date]  # inclusive (start, end)

# Source granularity for each target granularity
SOURCE_GRANULARITY = {
    GranularityEnum.weekly: GranularityEnum.daily,
    GranularityEnum.monthly: GranularityEnum.weekly,
}

_OPEN_JOB_STATUSES = (JobStatusEnum.waiting, JobStatusEnum.delayed, JobStatusEnum.active)


class BucketState(str, enum.Enum):
    collecting = "collecting"
    rolled_to_weekly = "rolled_to_weekly"
    rolled_to_monthly = "rolled_to_monthly"
    archived = "archived"


@dataclass
class RolloverResult:
    weekly_buckets: int = 0
    monthly_buckets: int = 0
    skipped_buckets: int = 0  # already done or blocked by open demographic work
    pruned_rows: int = 0
    # Span of days whose demographic rows were written or deleted
    changed_since: Optional[date] = None
    changed_until: Optional[date] = None

    def touch(self, start: date, end: date) -> None:
        self.changed_since = start if self.changed_since is None else min(self.changed_since, start)
        self.changed_until = end if self.changed_until is None else max(self.changed_until, end)

    def as_dict(self) -> Dict[str, int]:
        return {
            "weekly_buckets": self.weekly_buckets,
            "monthly_buckets": self.monthly_buckets,
            "skipped_buckets": self.skipped_buckets,
            "pruned_rows": self.pruned_rows,
        }


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _row_metrics(row: DemographicBreakdown) -> MetricValues:
    return MetricValues(
        spend=_to_decimal(row.spend),
        impressions=int(row.impressions or 0),
        clicks=int(row.clicks or 0),
        conversions=_to_decimal(row.conversions),
        conversion_value=_to_decimal(row.conversion_value),
        reach=int(row.reach or 0),
    )


class RolloverManager:
    """Runs the rollover for one brand at a time.

    Usage:
        with session_scope() as db:
            result = RolloverManager(db).run_for_brand(brand_id)
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    @property
    def policy(self) -> RetentionPolicyEnum:
        return RetentionPolicyEnum(self.settings.DEMOGRAPHIC_RETENTION_POLICY)

    # =========================================================================
    # Entry point
    # =========================================================================

    def run_for_brand(self, brand_id: UUID, today: Optional[date] = None) -> RolloverResult:
        """Roll every eligible bucket of a brand (weekly first, then monthly).

        Each bucket commits on its own; a failure rolls back only the bucket
        in progress and is re-raised.
        """
        today = today or utc_today()
        result = RolloverResult()
        blocked = self._open_demographic_ranges(brand_id)

        weekly_cutoff = today - timedelta(days=self.settings.ROLLOVER_WEEKLY_AFTER_DAYS)
        for bucket in self._weekly_candidates(brand_id, weekly_cutoff):
            self._run_bucket(brand_id, bucket, GranularityEnum.weekly, blocked, result)

        monthly_cutoff = today - timedelta(days=self.settings.ROLLOVER_MONTHLY_AFTER_DAYS)
        for bucket in self._monthly_candidates(brand_id, monthly_cutoff):
            if not self._weeks_rolled(brand_id, bucket):
                logger.debug("[ROLLOVER] Month %s waits for its weeks (brand %s)", bucket[0], brand_id)
                result.skipped_buckets += 1
                continue
            self._run_bucket(brand_id, bucket, GranularityEnum.monthly, blocked, result)

        if self.policy == RetentionPolicyEnum.prune:
            result.pruned_rows += self._sweep_done_buckets(brand_id, result)

        logger.info(
            "[ROLLOVER] Brand %s: weekly=%d, monthly=%d, skipped=%d, pruned=%d",
            brand_id, result.weekly_buckets, result.monthly_buckets,
            result.skipped_buckets, result.pruned_rows,
        )
        return result

    def _run_bucket(
        self,
        brand_id: UUID,
        bucket: Bucket,
        granularity: GranularityEnum,
        blocked: List[Bucket],
        result: RolloverResult,
    ) -> None:
        if any(start <= bucket[1] and bucket[0] <= end for start, end in blocked):
            logger.debug("[ROLLOVER] %s bucket %s blocked by open demographic work", granularity.value, bucket[0])
            result.skipped_buckets += 1
            return

        try:
            rolled, pruned = self.rollover_bucket(brand_id, bucket, granularity)
        except Exception:
            self.db.rollback()
            logger.exception("[ROLLOVER] Failed %s bucket %s..%s for brand %s",
                             granularity.value, bucket[0], bucket[1], brand_id)
            raise

        if not rolled:
            result.skipped_buckets += 1
            return
        result.pruned_rows += pruned
        result.touch(*bucket)
        if granularity == GranularityEnum.weekly:
            result.weekly_buckets += 1
        else:
            result.monthly_buckets += 1

    # =========================================================================
    # One bucket
    # =========================================================================

    def rollover_bucket(self, brand_id: UUID, bucket: Bucket, granularity: GranularityEnum) -> Tuple[bool, int]:
        """Aggregate one bucket in a single transaction.

        Steps: claim the ledger entry, recompute the aggregate rows by
        overwrite, mark the entry done (conditional on it still being
        pending), apply retention, commit.

        Returns:
            (rolled, pruned_rows); rolled is False when the bucket was
            already done or had no source rows
        """
        start, end = bucket
        entry = self._claim(brand_id, bucket, granularity)
        if entry.status == LedgerStatusEnum.done:
            self.db.rollback()
            return False, 0

        source = self._source_rows(brand_id, bucket, SOURCE_GRANULARITY[granularity])
        if not source:
            self.db.rollback()
            return False, 0

        aggregates = self._aggregate(brand_id, bucket, granularity, source)

        # Overwrite: drop whatever a previous computation left in this bucket
        self.db.query(DemographicBreakdown).filter(
            DemographicBreakdown.brand_id == brand_id,
            DemographicBreakdown.granularity == granularity,
            DemographicBreakdown.date_range_start == start,
            DemographicBreakdown.date_range_end == end,
        ).delete(synchronize_session=False)
        upsert_service.apply_many(self.db, aggregates)

        now = utcnow()
        marked = self.db.execute(
            update(RolloverLedgerEntry)
            .where(RolloverLedgerEntry.id == entry.id, RolloverLedgerEntry.status == LedgerStatusEnum.pending)
            .values(status=LedgerStatusEnum.done, source_row_count=len(source), completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            # Another runner finished this bucket first
            self.db.rollback()
            logger.info("[ROLLOVER] %s bucket %s already completed elsewhere", granularity.value, start)
            return False, 0

        pruned = 0
        if self.policy == RetentionPolicyEnum.prune:
            pruned = self._delete_rows(brand_id, bucket, SOURCE_GRANULARITY[granularity])

        self.db.commit()
        logger.info(
            "[ROLLOVER] Rolled %d %s rows into %d %s rows for %s..%s (brand %s)",
            len(source), SOURCE_GRANULARITY[granularity].value, len(aggregates),
            granularity.value, start, end, brand_id,
        )
        return True, pruned

    def _claim(self, brand_id: UUID, bucket: Bucket, granularity: GranularityEnum) -> RolloverLedgerEntry:
        stmt = upsert_service.dialect_insert(self.db, RolloverLedgerEntry).values(
            brand_id=brand_id,
            bucket_start=bucket[0],
            bucket_end=bucket[1],
            granularity=granularity,
            status=LedgerStatusEnum.pending,
            source_row_count=0,
            created_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["brand_id", "bucket_start", "granularity"])
        self.db.execute(stmt)

        return (
            self.db.query(RolloverLedgerEntry)
            .filter(
                RolloverLedgerEntry.brand_id == brand_id,
                RolloverLedgerEntry.bucket_start == bucket[0],
                RolloverLedgerEntry.granularity == granularity,
            )
            .populate_existing()
            .one()
        )

    def _source_rows(self, brand_id: UUID, bucket: Bucket, granularity: GranularityEnum) -> List[DemographicBreakdown]:
        return (
            self.db.query(DemographicBreakdown)
            .filter(
                DemographicBreakdown.brand_id == brand_id,
                DemographicBreakdown.granularity == granularity,
                DemographicBreakdown.date_range_start >= bucket[0],
                DemographicBreakdown.date_range_end <= bucket[1],
            )
            .order_by(
                DemographicBreakdown.breakdown_type,
                DemographicBreakdown.breakdown_value,
                DemographicBreakdown.date_range_start,
            )
            .all()
        )

    def _aggregate(
        self,
        brand_id: UUID,
        bucket: Bucket,
        granularity: GranularityEnum,
        rows: List[DemographicBreakdown],
    ) -> List[DemographicRecord]:
        grouped: "OrderedDict[Tuple[str, str], List[MetricValues]]" = OrderedDict()
        connections: Dict[Tuple[str, str], Optional[UUID]] = {}
        for row in rows:
            key = (row.breakdown_type, row.breakdown_value)
            grouped.setdefault(key, []).append(_row_metrics(row))
            connections.setdefault(key, row.connection_id)

        return [
            DemographicRecord(
                brand_id=brand_id,
                connection_id=connections[key],
                date_range_start=bucket[0],
                date_range_end=bucket[1],
                granularity=granularity,
                breakdown_type=key[0],
                breakdown_value=key[1],
                metrics=sum_metrics(values),
            )
            for key, values in grouped.items()
        ]

    def _delete_rows(self, brand_id: UUID, bucket: Bucket, granularity: GranularityEnum) -> int:
        return (
            self.db.query(DemographicBreakdown)
            .filter(
                DemographicBreakdown.brand_id == brand_id,
                DemographicBreakdown.granularity == granularity,
                DemographicBreakdown.date_range_start >= bucket[0],
                DemographicBreakdown.date_range_end <= bucket[1],
            )
            .delete(synchronize_session=False)
        )

    # =========================================================================
    # Candidates
    # =========================================================================

    def _weekly_candidates(self, brand_id: UUID, cutoff: date) -> List[Bucket]:
        """Week segments with daily rows that ended before the cutoff."""
        days = (
            self.db.query(DemographicBreakdown.date_range_start)
            .filter(
                DemographicBreakdown.brand_id == brand_id,
                DemographicBreakdown.granularity == GranularityEnum.daily,
                DemographicBreakdown.date_range_start < cutoff,
            )
            .distinct()
            .all()
        )
        segments = {week_segment(day) for (day,) in days}
        return sorted(segment for segment in segments if segment[1] < cutoff)

    def _monthly_candidates(self, brand_id: UUID, cutoff: date) -> List[Bucket]:
        """Calendar months with weekly rows that ended before the cutoff."""
        starts = (
            self.db.query(DemographicBreakdown.date_range_start)
            .filter(
                DemographicBreakdown.brand_id == brand_id,
                DemographicBreakdown.granularity == GranularityEnum.weekly,
                DemographicBreakdown.date_range_start < cutoff,
            )
            .distinct()
            .all()
        )
        months = {month_bucket(day) for (day,) in starts}
        return sorted(month for month in months if month[1] < cutoff)

    def _weeks_rolled(self, brand_id: UUID, month: Bucket) -> bool:
        """True when every week segment of the month holding daily rows is done."""
        days = (
            self.db.query(DemographicBreakdown.date_range_start)
            .filter(
                DemographicBreakdown.brand_id == brand_id,
                DemographicBreakdown.granularity == GranularityEnum.daily,
                DemographicBreakdown.date_range_start >= month[0],
                DemographicBreakdown.date_range_start <= month[1],
            )
            .distinct()
            .all()
        )
        week_starts = {week_segment(day)[0] for (day,) in days}
        if not week_starts:
            return True
        done = self._done_starts(brand_id, GranularityEnum.weekly, month)
        return week_starts <= done

    def _done_starts(self, brand_id: UUID, granularity: GranularityEnum, within: Bucket) -> Set[date]:
        rows = (
            self.db.query(RolloverLedgerEntry.bucket_start)
            .filter(
                RolloverLedgerEntry.brand_id == brand_id,
                RolloverLedgerEntry.granularity == granularity,
                RolloverLedgerEntry.status == LedgerStatusEnum.done,
                RolloverLedgerEntry.bucket_start >= within[0],
                RolloverLedgerEntry.bucket_start <= within[1],
            )
            .all()
        )
        return {start for (start,) in rows}

    def _open_demographic_ranges(self, brand_id: UUID) -> List[Bucket]:
        """Ranges still being backfilled for the brand (queued jobs and backlog)."""
        jobs = (
            self.db.query(SyncJob.range_since, SyncJob.range_until)
            .filter(
                SyncJob.brand_id == brand_id,
                SyncJob.kind == JobKindEnum.historical_demographics,
                SyncJob.status.in_(_OPEN_JOB_STATUSES),
            )
            .all()
        )
        backlog = (
            self.db.query(BackfillBacklogItem.range_since, BackfillBacklogItem.range_until)
            .filter(BackfillBacklogItem.brand_id == brand_id)
            .all()
        )
        return [(since, until) for since, until in list(jobs) + list(backlog) if since and until]

    # =========================================================================
    # Retention
    # =========================================================================

    def _sweep_done_buckets(self, brand_id: UUID, result: Optional[RolloverResult] = None) -> int:
        """Delete finer rows re-delivered into buckets that are already done."""
        swept = 0
        for granularity, source in SOURCE_GRANULARITY.items():
            entries = (
                self.db.query(RolloverLedgerEntry.bucket_start, RolloverLedgerEntry.bucket_end)
                .filter(
                    RolloverLedgerEntry.brand_id == brand_id,
                    RolloverLedgerEntry.granularity == granularity,
                    RolloverLedgerEntry.status == LedgerStatusEnum.done,
                )
                .all()
            )
            for start, end in entries:
                deleted = self._delete_rows(brand_id, (start, end), source)
                if deleted and result is not None:
                    result.touch(start, end)
                swept += deleted
        if swept:
            self.db.commit()
            logger.info("[ROLLOVER] Swept %d re-delivered rows for brand %s", swept, brand_id)
        return swept

    def reopen_buckets_for_dates(self, brand_id: UUID, since: date, until: date) -> int:
        """Reopen done buckets that just received daily rows (retain policy).

        Called by the worker in the transaction that wrote the daily rows;
        the caller commits. Monthly buckets containing a reopened week are
        reopened too, so the month is recomputed from the new weekly rows.

        Returns:
            Number of ledger entries moved back to pending
        """
        if self.policy != RetentionPolicyEnum.retain:
            return 0

        week_start = week_segment(since)[0]
        month_start = month_bucket(since)[0]
        result = self.db.execute(
            update(RolloverLedgerEntry)
            .where(
                RolloverLedgerEntry.brand_id == brand_id,
                RolloverLedgerEntry.status == LedgerStatusEnum.done,
                or_(
                    and_(
                        RolloverLedgerEntry.granularity == GranularityEnum.weekly,
                        RolloverLedgerEntry.bucket_start >= week_start,
                        RolloverLedgerEntry.bucket_start <= until,
                    ),
                    and_(
                        RolloverLedgerEntry.granularity == GranularityEnum.monthly,
                        RolloverLedgerEntry.bucket_start >= month_start,
                        RolloverLedgerEntry.bucket_start <= until,
                    ),
                ),
            )
            .values(status=LedgerStatusEnum.pending, completed_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("[ROLLOVER] Reopened %d buckets for brand %s (%s..%s)", result.rowcount, brand_id, since, until)
        return result.rowcount

    # =========================================================================
    # Introspection
    # =========================================================================

    def bucket_state(self, brand_id: UUID, day: date) -> BucketState:
        """Lifecycle state of the buckets containing `day`."""
        month = month_bucket(day)
        week = week_segment(day)

        def _done(granularity: GranularityEnum, start: date) -> bool:
            return (
                self.db.query(RolloverLedgerEntry.id)
                .filter(
                    RolloverLedgerEntry.brand_id == brand_id,
                    RolloverLedgerEntry.granularity == granularity,
                    RolloverLedgerEntry.bucket_start == start,
                    RolloverLedgerEntry.status == LedgerStatusEnum.done,
                )
                .first()
                is not None
            )

        if _done(GranularityEnum.monthly, month[0]):
            finer = (
                self.db.query(DemographicBreakdown.id)
                .filter(
                    DemographicBreakdown.brand_id == brand_id,
                    DemographicBreakdown.granularity.in_((GranularityEnum.daily, GranularityEnum.weekly)),
                    DemographicBreakdown.date_range_start >= month[0],
                    DemographicBreakdown.date_range_start <= month[1],
                )
                .first()
            )
            return BucketState.rolled_to_monthly if finer else BucketState.archived
        if _done(GranularityEnum.weekly, week[0]):
            return BucketState.rolled_to_weekly
        return BucketState.collecting
