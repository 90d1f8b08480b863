"""Stale / gap detection.

WHAT:
    Scans a bounded recent window of a brand's account-level daily metrics:
    - gaps: days with no stored row at all
    - stale: days whose stored totals no longer match what the API reports
      (late attribution, spend adjustments)
    and hands the union to the backfill orchestrator as repair jobs.

WHY:
    Missed cron runs, failed jobs that hit the dead-letter and Meta's
    attribution window all leave recent days wrong without any error being
    raised. Account-level rows exist for every synced day (zero-delivery
    days are stored as explicit zero rows), so "no row" always means
    "never synced".

REFERENCES:
    - adsync/services/backfill_orchestrator.py (queue_repairs)
    - adsync/services/meta_insights_client.py (get_daily_account_totals)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.exceptions import SyncError, ValidationError
from adsync.models import (
    Connection,
    ConnectionStatusEnum,
    DailyMetric,
    JobKindEnum,
    LevelEnum,
    ProviderEnum,
    SyncJob,
)
from adsync.services.backfill_orchestrator import BackfillOrchestrator
from adsync.services.insights_parser import normalize_account_id, parse_metric_row
from adsync.services.job_queue import OPEN_STATUSES
from adsync.services.meta_insights_client import MetaInsightsClient, client_for_connection
from adsync.telemetry import capture_exception
from adsync.utils.dates import DateRange, contiguous_ranges, utc_today

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Connection], MetaInsightsClient]


@dataclass
class BackfillDecision:
    should_backfill: bool
    dates: List[date] = field(default_factory=list)


@dataclass(frozen=True)
class GapRange:
    start: date
    end: date  # inclusive

    @property
    def day_count(self) -> int:
        return (self.end - self.start).days + 1


def decide_backfill(gaps: Iterable[date], stale: Iterable[date]) -> BackfillDecision:
    """Sorted union of gap and stale days; any day triggers a backfill."""
    dates = sorted(set(gaps) | set(stale))
    return BackfillDecision(should_backfill=bool(dates), dates=dates)


def find_gap_ranges(dates: Iterable[date]) -> List[GapRange]:
    """Collapse days into contiguous inclusive ranges."""
    return [GapRange(start=r.since, end=r.until) for r in contiguous_ranges(dates)]


class GapDetector:
    """Gap and staleness checks for one brand at a time."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (lambda connection: client_for_connection(connection, self.settings))

    def _window(self, lookback_days: int, today: Optional[date]) -> DateRange:
        today = today or utc_today()
        return DateRange(today - timedelta(days=lookback_days), today)

    def _active_connections(self, brand_id: UUID, platform: str) -> List[Connection]:
        return (
            self.db.query(Connection)
            .filter(
                Connection.brand_id == brand_id,
                Connection.provider == ProviderEnum(platform),
                Connection.status == ConnectionStatusEnum.active,
            )
            .all()
        )

    def _covered_days(self, brand_id: UUID, window: DateRange, account_ids: Optional[Sequence[str]] = None) -> set:
        query = self.db.query(DailyMetric.date).filter(
            DailyMetric.brand_id == brand_id,
            DailyMetric.level == LevelEnum.account,
            DailyMetric.date >= window.start,
            DailyMetric.date < window.end,
        )
        if account_ids is not None:
            query = query.filter(DailyMetric.ad_id.in_(list(account_ids)))
        return {row[0] for row in query.distinct().all()}

    def _has_open_backfill(self, connection_id: UUID) -> bool:
        return (
            self.db.query(SyncJob.id)
            .filter(
                SyncJob.connection_id == connection_id,
                SyncJob.kind == JobKindEnum.historical_metrics,
                SyncJob.status.in_(OPEN_STATUSES),
            )
            .first()
        ) is not None

    # =========================================================================
    # Detection
    # =========================================================================

    def detect_gaps(
        self,
        brand_id: UUID,
        platform: str = ProviderEnum.meta.value,
        lookback_days: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[date]:
        """Days in [today - lookback, today - 1] with no account-level row.

        Returns [] when the brand has no active connection for the platform.
        """
        if not self._active_connections(brand_id, platform):
            return []
        window = self._window(lookback_days or self.settings.GAP_LOOKBACK_DAYS, today)
        covered = self._covered_days(brand_id, window)
        gaps = [day for day in window.iter_days() if day not in covered]
        if gaps:
            logger.info("[GAPS] Brand %s missing %d days in %s..%s", brand_id, len(gaps), window.since, window.until)
        return gaps

    def detect_stale(
        self,
        brand_id: UUID,
        platform: str = ProviderEnum.meta.value,
        lookback_days: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[date]:
        """Days whose stored account totals differ from fresh API totals."""
        stale = set()
        for connection in self._active_connections(brand_id, platform):
            stale.update(self._stale_for_connection(connection, lookback_days, today))
        return sorted(stale)

    def _stale_for_connection(
        self,
        connection: Connection,
        lookback_days: Optional[int],
        today: Optional[date],
    ) -> List[date]:
        window = self._window(lookback_days or self.settings.STALE_LOOKBACK_DAYS, today)
        if window.days <= 0:
            return []
        account_id = normalize_account_id(connection.external_account_id)

        stored: Dict[date, DailyMetric] = {
            row.date: row
            for row in self.db.query(DailyMetric).filter(
                DailyMetric.brand_id == connection.brand_id,
                DailyMetric.level == LevelEnum.account,
                DailyMetric.ad_id == account_id,
                DailyMetric.date >= window.start,
                DailyMetric.date < window.end,
            )
        }
        if not stored:
            return []

        client = self.client_factory(connection)
        try:
            rows = client.get_daily_account_totals(account_id, window.since, window.until)
        finally:
            client.close()

        epsilon = Decimal(str(self.settings.STALE_SPEND_EPSILON))
        stale = []
        for raw in rows:
            try:
                fresh = parse_metric_row(
                    raw, brand_id=connection.brand_id, level=LevelEnum.account, account_id=account_id,
                )
            except ValidationError as e:
                logger.warning("[GAPS] Skipping malformed totals row for %s: %s", account_id, e)
                continue

            current = stored.get(fresh.date)
            if current is None:
                continue  # left to gap detection
            # Compare at storage precision
            columns = fresh.metrics.as_columns()
            if (
                abs(Decimal(str(current.spend)) - columns["spend"]) > epsilon
                or int(current.impressions) != columns["impressions"]
                or Decimal(str(current.conversions)) != columns["conversions"]
            ):
                stale.append(fresh.date)

        if stale:
            logger.info("[GAPS] Connection %s has %d stale days", connection.id, len(stale))
        return sorted(stale)

    # =========================================================================
    # Scheduled run
    # =========================================================================

    def run_for_brand(
        self,
        brand_id: UUID,
        platform: str = ProviderEnum.meta.value,
        today: Optional[date] = None,
        orchestrator: Optional[BackfillOrchestrator] = None,
    ) -> BackfillDecision:
        """Detect, decide and queue repairs for every active connection.

        Connections with historical metric chunks still queued are skipped;
        those chunks cover the window themselves. A stalled backfill (chunks
        dead-lettered, nothing left open) is repaired like any other.
        A failing staleness check (token revoked, API down) is reported and
        the connection is repaired from gap detection alone.
        """
        orchestrator = orchestrator or BackfillOrchestrator(self.db, self.settings)
        all_dates = set()

        for connection in self._active_connections(brand_id, platform):
            if self._has_open_backfill(connection.id):
                logger.debug("[GAPS] Connection %s still has historical chunks queued, skipping", connection.id)
                continue

            window = self._window(self.settings.GAP_LOOKBACK_DAYS, today)
            account_id = normalize_account_id(connection.external_account_id)
            covered = self._covered_days(brand_id, window, account_ids=[account_id])
            gaps = [day for day in window.iter_days() if day not in covered]

            try:
                stale = self._stale_for_connection(connection, None, today)
            except SyncError as e:
                logger.warning("[GAPS] Staleness check failed for connection %s: %s", connection.id, e)
                capture_exception(e, extra={"operation": "detect_stale", "connection_id": str(connection.id)})
                stale = []

            decision = decide_backfill(gaps, stale)
            if decision.should_backfill:
                ranges = find_gap_ranges(decision.dates)
                logger.info(
                    "[GAPS] Connection %s: %d gap days, %d stale days -> %d repair ranges",
                    connection.id, len(gaps), len(stale), len(ranges),
                )
                orchestrator.queue_repairs(brand_id, connection.id, decision.dates)
                all_dates.update(decision.dates)

        return decide_backfill(all_dates, [])
