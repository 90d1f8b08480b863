"""Tests for the metric upsert layer.

WHAT:
    Idempotent writes by natural key, level isolation, and the mapping of
    database unique violations to DuplicateKeyConflict.

REFERENCES:
    - adsync/services/upsert_service.py (module under test)
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from adsync.exceptions import DuplicateKeyConflict
from adsync.models import DailyMetric, DemographicBreakdown, GranularityEnum, LevelEnum
from adsync.services import upsert_service
from adsync.services.insights_parser import DailyMetricRecord, DemographicRecord, MetricValues
from adsync.tests.factories import d


def _ad_record(brand, spend="5.00", clicks=2, level=LevelEnum.ad, ad_id="ad_1"):
    return DailyMetricRecord(
        brand_id=brand.id,
        date=d("2024-06-01"),
        ad_id=ad_id,
        level=level,
        metrics=MetricValues(spend=Decimal(spend), impressions=1000, clicks=clicks),
        currency="USD",
    )


class TestDailyMetrics:
    def test_reapplying_overwrites(self, test_db_session, test_brand):
        upsert_service.apply(test_db_session, _ad_record(test_brand, spend="5.00"))
        upsert_service.apply(test_db_session, _ad_record(test_brand, spend="5.00"))
        upsert_service.apply(test_db_session, _ad_record(test_brand, spend="7.50", clicks=3))
        test_db_session.commit()

        rows = test_db_session.query(DailyMetric).all()
        assert len(rows) == 1
        row = rows[0]
        assert row.spend == Decimal("7.50")
        assert row.clicks == 3
        assert row.ctr == Decimal("0.300000")
        assert row.cpc == Decimal("2.500000")
        assert row.cpm == Decimal("7.500000")
        assert row.currency == "USD"

    def test_account_and_ad_rows_do_not_collide(self, test_db_session, test_brand):
        written = upsert_service.apply_many(test_db_session, [
            _ad_record(test_brand, spend="5.00"),
            _ad_record(test_brand, spend="20.00", level=LevelEnum.account, ad_id="act_123"),
        ])
        test_db_session.commit()

        assert written == 2
        by_level = {row.level: row.spend for row in test_db_session.query(DailyMetric).all()}
        assert by_level == {LevelEnum.ad: Decimal("5.00"), LevelEnum.account: Decimal("20.00")}

    def test_zero_impressions_have_no_rates(self, test_db_session, test_brand):
        upsert_service.apply(test_db_session, DailyMetricRecord(
            brand_id=test_brand.id, date=d("2024-06-01"), ad_id="act_123", level=LevelEnum.account,
        ))
        test_db_session.commit()

        row = test_db_session.query(DailyMetric).one()
        assert (row.spend, row.impressions) == (Decimal("0"), 0)
        assert (row.ctr, row.cpc, row.cpm) == (None, None, None)


class TestDemographics:
    def test_reapplying_overwrites(self, test_db_session, test_brand):
        def record(spend):
            return DemographicRecord(
                brand_id=test_brand.id,
                date_range_start=d("2024-06-01"),
                date_range_end=d("2024-06-01"),
                granularity=GranularityEnum.daily,
                breakdown_type="age_gender",
                breakdown_value="25-34|female",
                metrics=MetricValues(spend=Decimal(spend), impressions=100),
            )

        upsert_service.apply(test_db_session, record("1.00"))
        upsert_service.apply(test_db_session, record("4.00"))
        test_db_session.commit()

        row = test_db_session.query(DemographicBreakdown).one()
        assert row.spend == Decimal("4.00")
        assert row.cpm == Decimal("40.000000")

    def test_unknown_record_type(self, test_db_session):
        with pytest.raises(TypeError):
            upsert_service.apply(test_db_session, {"spend": 1})


class TestConflicts:
    def test_unique_violation_becomes_duplicate_key_conflict(self, test_db_session, test_brand, monkeypatch):
        # Built first: reading test_brand.id may refresh it through execute
        record = _ad_record(test_brand)

        def raise_unique(*args, **kwargs):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: daily_metrics.brand_id"))

        monkeypatch.setattr(test_db_session, "execute", raise_unique)

        with pytest.raises(DuplicateKeyConflict) as exc:
            upsert_service.apply(test_db_session, record)

        assert exc.value.retryable is True

    def test_other_integrity_errors_propagate(self, test_db_session, test_brand, monkeypatch):
        record = _ad_record(test_brand)
        calls = []

        def raise_fk(*args, **kwargs):
            calls.append(args)
            raise IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))

        monkeypatch.setattr(test_db_session, "execute", raise_fk)

        with pytest.raises(IntegrityError) as exc:
            upsert_service.apply(test_db_session, record)

        assert not isinstance(exc.value, DuplicateKeyConflict)
        assert len(calls) == 1
