"""
Insights Parser Tests (Unit)
============================

WHAT: Unit tests for raw insights row normalization and the breakdown collapse.
WHY: Malformed rows must be rejected individually and purchase conversions
must never be double counted across action type aliases.

REFERENCES:
- adsync/services/insights_parser.py
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from adsync.exceptions import ValidationError
from adsync.models import GranularityEnum, LevelEnum
from adsync.services.insights_parser import (
    OTHER_VALUE,
    BreakdownConfig,
    DailyMetricRecord,
    DemographicRecord,
    MetricValues,
    breakdown_value_for,
    collapse_breakdown_records,
    derive_rates,
    get_breakdown_config,
    parse_demographic_row,
    parse_metric_row,
    sum_metrics,
)

BRAND_ID = uuid4()


def _row(**overrides):
    row = {
        "date_start": "2024-06-01",
        "date_stop": "2024-06-01",
        "ad_id": "120000001",
        "spend": "12.34",
        "impressions": "1000",
        "clicks": "25",
        "reach": "800",
        "account_currency": "EUR",
    }
    row.update(overrides)
    return row


# =============================================================================
# Metric rows
# =============================================================================

def test_parse_ad_row() -> None:
    record = parse_metric_row(_row(), brand_id=BRAND_ID, level=LevelEnum.ad, account_id="act_1")

    assert record.ad_id == "120000001"
    assert record.level == LevelEnum.ad
    assert record.date == date(2024, 6, 1)
    assert record.currency == "EUR"
    assert record.metrics == MetricValues(
        spend=Decimal("12.34"), impressions=1000, clicks=25, reach=800,
    )


def test_account_row_is_keyed_by_account_id() -> None:
    record = parse_metric_row(_row(ad_id=None), brand_id=BRAND_ID, level=LevelEnum.account, account_id="987")

    assert record.ad_id == "act_987"


def test_conversions_use_first_matching_action_type() -> None:
    row = _row(
        actions=[
            {"action_type": "link_click", "value": "40"},
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"},
            {"action_type": "omni_purchase", "value": "3"},
        ],
        action_values=[{"action_type": "purchase", "value": "150.50"}],
    )

    metrics = parse_metric_row(row, brand_id=BRAND_ID, level=LevelEnum.ad, account_id="act_1").metrics

    assert metrics.conversions == Decimal("3")
    assert metrics.conversion_value == Decimal("150.50")


@pytest.mark.parametrize("overrides", [
    {"date_start": None},
    {"date_start": "06/01/2024"},
    {"date_stop": "2024-06-07"},
    {"spend": "abc"},
    {"spend": "-1"},
    {"impressions": "1.5"},
    {"ad_id": ""},
    {"actions": "omni_purchase"},
])
def test_malformed_rows_are_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        parse_metric_row(_row(**overrides), brand_id=BRAND_ID, level=LevelEnum.ad, account_id="act_1")


def test_missing_measures_default_to_zero() -> None:
    row = {"date_start": "2024-06-01", "ad_id": "1"}

    metrics = parse_metric_row(row, brand_id=BRAND_ID, level=LevelEnum.ad, account_id="act_1").metrics

    assert metrics == MetricValues()


def test_level_and_entity_id_must_agree() -> None:
    with pytest.raises(ValidationError):
        DailyMetricRecord(brand_id=BRAND_ID, date=date(2024, 6, 1), ad_id="120000001", level=LevelEnum.account)
    with pytest.raises(ValidationError):
        DailyMetricRecord(brand_id=BRAND_ID, date=date(2024, 6, 1), ad_id="act_1", level=LevelEnum.ad)


# =============================================================================
# Arithmetic
# =============================================================================

def test_rates_are_derived_from_sums() -> None:
    total = sum_metrics([
        MetricValues(spend=Decimal("10"), impressions=1000, clicks=10),
        MetricValues(spend=Decimal("30"), impressions=3000, clicks=50),
    ])

    assert total == MetricValues(spend=Decimal("40"), impressions=4000, clicks=60)
    assert derive_rates(total) == {
        "ctr": Decimal("1.500000"),
        "cpc": Decimal("0.666667"),
        "cpm": Decimal("10.000000"),
    }


def test_rates_are_none_without_denominator() -> None:
    assert derive_rates(MetricValues(spend=Decimal("5"))) == {"ctr": None, "cpc": None, "cpm": None}


# =============================================================================
# Breakdowns
# =============================================================================

def test_breakdown_values() -> None:
    age_gender = get_breakdown_config("age_gender")

    assert breakdown_value_for({"age": "25-34", "gender": "female"}, age_gender) == "25-34|female"
    assert breakdown_value_for({"age": "25-34"}, age_gender) == "25-34|unknown"
    with pytest.raises(ValidationError):
        breakdown_value_for({"region": "Texas"}, age_gender)


def test_unknown_breakdown() -> None:
    with pytest.raises(ValidationError) as exc:
        get_breakdown_config("income")

    assert exc.value.field == "breakdown"


def test_parse_demographic_row() -> None:
    record = parse_demographic_row(
        _row(region="California"), brand_id=BRAND_ID, config=get_breakdown_config("region"),
    )

    assert record.granularity == GranularityEnum.daily
    assert (record.breakdown_type, record.breakdown_value) == ("region", "California")
    assert record.date_range_start == record.date_range_end == date(2024, 6, 1)


def _region(value, impressions, spend="1", day=date(2024, 6, 1)):
    return DemographicRecord(
        brand_id=BRAND_ID,
        date_range_start=day,
        date_range_end=day,
        granularity=GranularityEnum.daily,
        breakdown_type="region",
        breakdown_value=value,
        metrics=MetricValues(spend=Decimal(spend), impressions=impressions),
    )


def test_long_tail_is_collapsed_into_other() -> None:
    config = BreakdownConfig("region", ("region",), max_values=2, min_impressions=50)
    records = [
        _region("Texas", 500),
        _region("Ohio", 40),           # below min_impressions
        _region("California", 900),
        _region("Nevada", 300),        # beyond max_values
        _region("California", 950),    # redelivered, replaces
    ]

    collapsed = collapse_breakdown_records(records, config)

    assert [(r.breakdown_value, r.metrics.impressions) for r in collapsed] == [
        ("California", 950),
        ("Texas", 500),
        (OTHER_VALUE, 340),
    ]
    assert collapsed[-1].metrics.spend == Decimal("2")


def test_collapse_is_per_day() -> None:
    config = BreakdownConfig("region", ("region",), max_values=1, min_impressions=0)
    records = [
        _region("Texas", 10, day=date(2024, 6, 2)),
        _region("Texas", 10, day=date(2024, 6, 1)),
        _region("Ohio", 5, day=date(2024, 6, 1)),
    ]

    collapsed = collapse_breakdown_records(records, config)

    assert [(r.date_range_start, r.breakdown_value) for r in collapsed] == [
        (date(2024, 6, 1), "Texas"),
        (date(2024, 6, 1), OTHER_VALUE),
        (date(2024, 6, 2), "Texas"),
    ]
