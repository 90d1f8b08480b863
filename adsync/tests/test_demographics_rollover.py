"""Tests for the demographic rollover lifecycle.

WHAT:
    Weekly and monthly aggregation, exactly-once ledger semantics, both
    retention policies, late rows, and buckets blocked by open backfills.

REFERENCES:
    - adsync/services/demographics_rollover.py (module under test)
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from adsync.deps import Settings
from adsync.models import (
    DemographicBreakdown,
    GranularityEnum,
    LedgerStatusEnum,
    RetentionPolicyEnum,
    RolloverLedgerEntry,
)
from adsync.services import upsert_service
from adsync.services.demographics_rollover import BucketState, RolloverManager
from adsync.services.insights_parser import DemographicRecord, MetricValues
from adsync.services.job_queue import JobQueue
from adsync.tests.factories import d

TODAY = date(2024, 7, 1)
WEEK = (d("2024-06-03"), d("2024-06-09"))  # Monday..Sunday, inside June


def _store_daily(db, brand, day, value, spend="1.00", impressions=100, clicks=1, reach=10):
    upsert_service.apply(db, DemographicRecord(
        brand_id=brand.id,
        date_range_start=day,
        date_range_end=day,
        granularity=GranularityEnum.daily,
        breakdown_type="region",
        breakdown_value=value,
        metrics=MetricValues(spend=Decimal(spend), impressions=impressions, clicks=clicks, reach=reach),
    ))
    db.commit()


def _store_week(db, brand, value="California", **metrics):
    for offset in range(7):
        _store_daily(db, brand, WEEK[0] + timedelta(days=offset), value, **metrics)


def _rows(db, granularity):
    db.expire_all()
    return (
        db.query(DemographicBreakdown)
        .filter(DemographicBreakdown.granularity == granularity)
        .order_by(DemographicBreakdown.date_range_start, DemographicBreakdown.breakdown_value)
        .all()
    )


def _settings(policy):
    return Settings(_env_file=None, DEMOGRAPHIC_RETENTION_POLICY=policy)


@pytest.fixture
def retain(test_db_session):
    return RolloverManager(test_db_session, _settings(RetentionPolicyEnum.retain))


@pytest.fixture
def prune(test_db_session):
    return RolloverManager(test_db_session, _settings(RetentionPolicyEnum.prune))


# ============================================================================
# Weekly
# ============================================================================

class TestWeeklyRollover:
    def test_week_is_aggregated_from_sums(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand, spend="1.50", impressions=200, clicks=3, reach=20)
        _store_week(test_db_session, test_brand, value="Texas", spend="0.50", impressions=100, clicks=0)

        result = retain.run_for_brand(test_brand.id, today=TODAY)

        assert result.weekly_buckets == 1
        weekly = _rows(test_db_session, GranularityEnum.weekly)
        assert [(r.breakdown_value, r.date_range_start, r.date_range_end) for r in weekly] == [
            ("California", WEEK[0], WEEK[1]),
            ("Texas", WEEK[0], WEEK[1]),
        ]
        california = weekly[0]
        assert california.spend == Decimal("10.50")
        assert california.impressions == 1400
        assert california.clicks == 21
        assert california.reach == 140
        assert california.ctr == Decimal("1.500000")
        assert california.cpc == Decimal("0.500000")
        assert weekly[1].cpc is None

        entry = test_db_session.query(RolloverLedgerEntry).one()
        assert entry.status == LedgerStatusEnum.done
        assert entry.source_row_count == 14

    def test_recent_weeks_are_not_rolled(self, retain, test_db_session, test_brand):
        _store_daily(test_db_session, test_brand, d("2024-06-20"), "California")

        assert retain.run_for_brand(test_brand.id, today=TODAY).weekly_buckets == 0
        assert _rows(test_db_session, GranularityEnum.weekly) == []

    def test_week_segments_stop_at_month_end(self, retain, test_db_session, test_brand):
        # Friday 2024-05-31 and Saturday 2024-06-01 share a Monday-based week
        _store_daily(test_db_session, test_brand, d("2024-05-31"), "California")
        _store_daily(test_db_session, test_brand, d("2024-06-01"), "California")

        retain.run_for_brand(test_brand.id, today=TODAY)

        weekly = _rows(test_db_session, GranularityEnum.weekly)
        assert [(r.date_range_start, r.date_range_end) for r in weekly] == [
            (d("2024-05-27"), d("2024-05-31")),
            (d("2024-06-01"), d("2024-06-02")),
        ]

    def test_rerun_is_exactly_once(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)
        retain.run_for_brand(test_brand.id, today=TODAY)

        result = retain.run_for_brand(test_brand.id, today=TODAY)

        assert result.weekly_buckets == 0
        assert result.skipped_buckets == 1
        weekly = _rows(test_db_session, GranularityEnum.weekly)
        assert len(weekly) == 1
        assert weekly[0].spend == Decimal("7.00")

    def test_concurrent_runner_cannot_double_count(self, session_factory, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)
        settings = _settings(RetentionPolicyEnum.retain)
        db1, db2 = session_factory(), session_factory()
        try:
            assert RolloverManager(db1, settings).rollover_bucket(test_brand.id, WEEK, GranularityEnum.weekly)[0] is True
            assert RolloverManager(db2, settings).rollover_bucket(test_brand.id, WEEK, GranularityEnum.weekly)[0] is False
        finally:
            db1.close()
            db2.close()

        assert _rows(test_db_session, GranularityEnum.weekly)[0].spend == Decimal("7.00")

    def test_open_demographic_backfill_blocks_bucket(self, retain, test_db_session, test_brand, test_connection, settings):
        _store_week(test_db_session, test_brand)
        JobQueue(test_db_session, settings).enqueue({
            "kind": "historical_demographics",
            "brand_id": test_brand.id,
            "connection_id": test_connection.id,
            "time_range": {"since": "2024-06-05", "until": "2024-06-20"},
            "breakdown": "region",
        })

        result = retain.run_for_brand(test_brand.id, today=TODAY)

        assert result.weekly_buckets == 0
        assert result.skipped_buckets == 1
        assert test_db_session.query(RolloverLedgerEntry).count() == 0


# ============================================================================
# Retention
# ============================================================================

class TestRetention:
    def test_retain_keeps_daily_rows(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)

        retain.run_for_brand(test_brand.id, today=TODAY)

        assert len(_rows(test_db_session, GranularityEnum.daily)) == 7
        assert retain.bucket_state(test_brand.id, d("2024-06-05")) == BucketState.rolled_to_weekly

    def test_retain_recomputes_after_late_rows(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)
        retain.run_for_brand(test_brand.id, today=TODAY)

        # A re-fetch corrects one day
        _store_daily(test_db_session, test_brand, d("2024-06-05"), "California", spend="3.00")
        assert retain.reopen_buckets_for_dates(test_brand.id, d("2024-06-05"), d("2024-06-05")) == 1
        test_db_session.commit()
        assert retain.bucket_state(test_brand.id, d("2024-06-05")) == BucketState.collecting

        assert retain.run_for_brand(test_brand.id, today=TODAY).weekly_buckets == 1
        weekly = _rows(test_db_session, GranularityEnum.weekly)
        assert len(weekly) == 1
        assert weekly[0].spend == Decimal("9.00")

    def test_prune_deletes_rolled_daily_rows(self, prune, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)

        result = prune.run_for_brand(test_brand.id, today=TODAY)

        assert result.pruned_rows == 7
        assert _rows(test_db_session, GranularityEnum.daily) == []
        assert _rows(test_db_session, GranularityEnum.weekly)[0].spend == Decimal("7.00")

    def test_prune_sweeps_redelivered_rows(self, prune, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)
        prune.run_for_brand(test_brand.id, today=TODAY)

        _store_daily(test_db_session, test_brand, d("2024-06-05"), "California", spend="3.00")
        assert prune.reopen_buckets_for_dates(test_brand.id, d("2024-06-05"), d("2024-06-05")) == 0

        result = prune.run_for_brand(test_brand.id, today=TODAY)

        assert result.pruned_rows == 1
        assert _rows(test_db_session, GranularityEnum.daily) == []
        assert _rows(test_db_session, GranularityEnum.weekly)[0].spend == Decimal("7.00")
        assert (result.changed_since, result.changed_until) == WEEK


# ============================================================================
# Monthly
# ============================================================================

class TestMonthlyRollover:
    LATER = date(2024, 10, 15)  # June is past both thresholds

    def test_month_is_built_from_weeks(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)
        _store_daily(test_db_session, test_brand, d("2024-06-20"), "California", spend="2.00")

        result = retain.run_for_brand(test_brand.id, today=self.LATER)

        assert result.weekly_buckets == 2
        assert result.monthly_buckets == 1
        monthly = _rows(test_db_session, GranularityEnum.monthly)
        assert [(r.date_range_start, r.date_range_end, r.spend) for r in monthly] == [
            (d("2024-06-01"), d("2024-06-30"), Decimal("9.00")),
        ]
        assert retain.bucket_state(test_brand.id, d("2024-06-05")) == BucketState.rolled_to_monthly

    def test_changed_range_spans_rolled_buckets(self, retain, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)

        result = retain.run_for_brand(test_brand.id, today=self.LATER)

        assert (result.changed_since, result.changed_until) == (d("2024-06-01"), d("2024-06-30"))

    def test_nothing_rolled_leaves_changed_range_empty(self, retain, test_db_session, test_brand):
        result = retain.run_for_brand(test_brand.id, today=self.LATER)

        assert result.changed_since is None
        assert result.changed_until is None

    def test_pruned_month_is_archived(self, prune, test_db_session, test_brand):
        _store_week(test_db_session, test_brand)

        prune.run_for_brand(test_brand.id, today=self.LATER)

        assert _rows(test_db_session, GranularityEnum.daily) == []
        assert _rows(test_db_session, GranularityEnum.weekly) == []
        assert len(_rows(test_db_session, GranularityEnum.monthly)) == 1
        assert prune.bucket_state(test_brand.id, d("2024-06-05")) == BucketState.archived

    def test_month_waits_for_blocked_week(self, retain, test_db_session, test_brand, test_connection, settings):
        _store_week(test_db_session, test_brand)
        _store_daily(test_db_session, test_brand, d("2024-06-20"), "California")
        # First week rolls; the week of the 20th is still being backfilled
        retain.run_for_brand(test_brand.id, today=TODAY)
        JobQueue(test_db_session, settings).enqueue({
            "kind": "historical_demographics",
            "brand_id": test_brand.id,
            "connection_id": test_connection.id,
            "time_range": {"since": "2024-06-17", "until": "2024-06-23"},
            "breakdown": "region",
        })

        result = retain.run_for_brand(test_brand.id, today=self.LATER)

        assert result.monthly_buckets == 0
        assert _rows(test_db_session, GranularityEnum.monthly) == []
