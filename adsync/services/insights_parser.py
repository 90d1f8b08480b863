"""Insights row normalization.

WHAT:
    Turns raw Graph API insight rows into typed records for the upsert layer:
    - DailyMetricRecord: one entity/day at an explicit aggregation level
    - DemographicRecord: one breakdown value over a date range
    Also owns the breakdown catalog (which API breakdowns make up each
    demographic dimension) and the long-tail collapse into "Other".

WHY:
    - Row-level problems (missing dates, non-numeric spend) must raise
      ValidationError so the worker can skip exactly that row
    - Derived rates are computed from base measures in one place, so daily
      rows and rolled-up aggregates use identical arithmetic

REFERENCES:
    - adsync/services/upsert_service.py (consumer)
    - adsync/services/demographics_rollover.py (reuses sum_metrics/derive_rates)
    - https://developers.facebook.com/docs/marketing-api/insights/breakdowns
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from facebook_business.adobjects.adsinsights import AdsInsights

from adsync.exceptions import ValidationError
from adsync.models import GranularityEnum, LevelEnum

logger = logging.getLogger(__name__)

RATE_QUANTUM = Decimal("0.000001")
MONEY_QUANTUM = Decimal("0.0001")

# Purchase action types in priority order; the first one present wins so
# omni_purchase and its pixel alias are never added together.
CONVERSION_ACTION_TYPES = (
    "omni_purchase",
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
)

OTHER_VALUE = "Other"
UNKNOWN_VALUE = "unknown"

# Field holding the entity id for each level (account rows use the account id)
LEVEL_ID_FIELDS = {
    LevelEnum.campaign: AdsInsights.Field.campaign_id,
    LevelEnum.adset: AdsInsights.Field.adset_id,
    LevelEnum.ad: AdsInsights.Field.ad_id,
}


# =============================================================================
# BREAKDOWN CATALOG
# =============================================================================

@dataclass(frozen=True)
class BreakdownConfig:
    """One demographic dimension as the worker requests and stores it."""

    name: str
    api_breakdowns: Tuple[str, ...]
    max_values: int  # distinct values kept per day before collapsing
    min_impressions: int  # values below this are folded into "Other"


BREAKDOWN_CATALOG: Dict[str, BreakdownConfig] = {
    "age_gender": BreakdownConfig(
        "age_gender",
        (AdsInsights.Breakdowns.age, AdsInsights.Breakdowns.gender),
        max_values=20,
        min_impressions=100,
    ),
    "region": BreakdownConfig(
        "region",
        (AdsInsights.Breakdowns.region,),
        max_values=50,
        min_impressions=50,
    ),
    "device_platform": BreakdownConfig(
        "device_platform",
        (AdsInsights.Breakdowns.device_platform,),
        max_values=10,
        min_impressions=20,
    ),
    "placement": BreakdownConfig(
        "placement",
        (AdsInsights.Breakdowns.publisher_platform, AdsInsights.Breakdowns.platform_position),
        max_values=15,
        min_impressions=30,
    ),
}


def get_breakdown_config(name: str) -> BreakdownConfig:
    try:
        return BREAKDOWN_CATALOG[name]
    except KeyError:
        raise ValidationError(
            f"Unknown breakdown '{name}'. Expected one of: {', '.join(sorted(BREAKDOWN_CATALOG))}",
            field="breakdown",
        ) from None


# =============================================================================
# RECORD TYPES
# =============================================================================

@dataclass(frozen=True)
class MetricValues:
    """Additive base measures. Rates are derived, never summed."""

    spend: Decimal = Decimal("0")
    impressions: int = 0
    clicks: int = 0
    conversions: Decimal = Decimal("0")
    conversion_value: Decimal = Decimal("0")
    reach: int = 0

    def __add__(self, other: "MetricValues") -> "MetricValues":
        return MetricValues(
            spend=self.spend + other.spend,
            impressions=self.impressions + other.impressions,
            clicks=self.clicks + other.clicks,
            conversions=self.conversions + other.conversions,
            conversion_value=self.conversion_value + other.conversion_value,
            reach=self.reach + other.reach,
        )

    def rates(self) -> Dict[str, Optional[Decimal]]:
        return derive_rates(self)

    def as_columns(self) -> Dict[str, Any]:
        """Column values for DailyMetric/DemographicBreakdown, rates included."""
        return {
            "spend": self.spend.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN),
            "impressions": self.impressions,
            "clicks": self.clicks,
            "conversions": self.conversions.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN),
            "conversion_value": self.conversion_value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN),
            "reach": self.reach,
            **self.rates(),
        }


@dataclass(frozen=True)
class DailyMetricRecord:
    brand_id: UUID
    date: date
    ad_id: str
    level: LevelEnum
    metrics: MetricValues = field(default_factory=MetricValues)
    connection_id: Optional[UUID] = None
    currency: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.ad_id:
            raise ValidationError("Metric record has no entity id", field="ad_id")
        is_account_id = self.ad_id.startswith("act_")
        if self.level == LevelEnum.account and not is_account_id:
            raise ValidationError(
                f"Account-level record must carry an ad account id, got '{self.ad_id}'",
                field="ad_id",
            )
        if self.level != LevelEnum.account and is_account_id:
            raise ValidationError(
                f"{self.level.value}-level record cannot be keyed by account id '{self.ad_id}'",
                field="ad_id",
            )


@dataclass(frozen=True)
class DemographicRecord:
    brand_id: UUID
    date_range_start: date
    date_range_end: date
    granularity: GranularityEnum
    breakdown_type: str
    breakdown_value: str
    metrics: MetricValues = field(default_factory=MetricValues)
    connection_id: Optional[UUID] = None

    def __post_init__(self) -> None:
        if self.date_range_end < self.date_range_start:
            raise ValidationError("Breakdown range ends before it starts", field="date_range_end")
        if not self.breakdown_value:
            raise ValidationError("Breakdown value is empty", field="breakdown_value")


# =============================================================================
# ARITHMETIC
# =============================================================================

def derive_rates(metrics: MetricValues) -> Dict[str, Optional[Decimal]]:
    """CTR (percent), CPC and CPM from base measures.

    Computing from sums is the impression/click weighted average of the
    per-row rates, so rollups use the same function as daily rows.
    """
    def _q(value: Decimal) -> Decimal:
        return value.quantize(RATE_QUANTUM, rounding=ROUND_HALF_EVEN)

    impressions = Decimal(metrics.impressions)
    clicks = Decimal(metrics.clicks)
    return {
        "ctr": _q(clicks / impressions * 100) if impressions else None,
        "cpc": _q(metrics.spend / clicks) if clicks else None,
        "cpm": _q(metrics.spend / impressions * 1000) if impressions else None,
    }


def sum_metrics(values: Iterable[MetricValues]) -> MetricValues:
    total = MetricValues()
    for value in values:
        total = total + value
    return total


# =============================================================================
# PARSING
# =============================================================================

def normalize_account_id(account_id: str) -> str:
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _to_decimal(raw: Any, field_name: str) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Non-numeric {field_name}: {raw!r}", field=field_name) from None
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Invalid {field_name}: {raw!r}", field=field_name)
    return value


def _to_int(raw: Any, field_name: str) -> int:
    value = _to_decimal(raw, field_name)
    if value != value.to_integral_value():
        raise ValidationError(f"Non-integer {field_name}: {raw!r}", field=field_name)
    return int(value)


def _to_date(raw: Any, field_name: str) -> date:
    if not raw:
        raise ValidationError(f"Missing {field_name}", field=field_name)
    try:
        return datetime.strptime(str(raw), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {raw!r}", field=field_name) from None


def _action_total(entries: Any, field_name: str) -> Decimal:
    if not entries:
        return Decimal("0")
    if not isinstance(entries, list):
        raise ValidationError(f"{field_name} must be a list", field=field_name)

    by_type = {}
    for entry in entries:
        if isinstance(entry, dict) and entry.get("action_type"):
            by_type[entry["action_type"]] = entry.get("value")

    for action_type in CONVERSION_ACTION_TYPES:
        if action_type in by_type:
            return _to_decimal(by_type[action_type], field_name)
    return Decimal("0")


def parse_metric_values(row: Dict[str, Any]) -> MetricValues:
    """Extract base measures from an insights row.

    Raises:
        ValidationError: If any measure is non-numeric or negative
    """
    return MetricValues(
        spend=_to_decimal(row.get(AdsInsights.Field.spend), "spend"),
        impressions=_to_int(row.get(AdsInsights.Field.impressions), "impressions"),
        clicks=_to_int(row.get(AdsInsights.Field.clicks), "clicks"),
        conversions=_action_total(row.get(AdsInsights.Field.actions), "actions"),
        conversion_value=_action_total(row.get(AdsInsights.Field.action_values), "action_values"),
        reach=_to_int(row.get(AdsInsights.Field.reach), "reach"),
    )


def _row_date(row: Dict[str, Any]) -> date:
    start = _to_date(row.get(AdsInsights.Field.date_start), "date_start")
    stop = row.get(AdsInsights.Field.date_stop)
    if stop and _to_date(stop, "date_stop") != start:
        raise ValidationError(
            f"Expected a single-day row, got {start}..{stop}", field="date_stop",
        )
    return start


def parse_metric_row(
    row: Dict[str, Any],
    *,
    brand_id: UUID,
    level: LevelEnum,
    account_id: str,
    connection_id: Optional[UUID] = None,
) -> DailyMetricRecord:
    """Parse one daily insights row (time_increment=1) at the requested level.

    Args:
        row: Raw row from the insights edge
        brand_id: Owning brand
        level: Level the request was made at
        account_id: Ad account id (used as the entity id for account rows)
        connection_id: Source connection

    Returns:
        DailyMetricRecord keyed by (brand_id, date, ad_id, level)

    Raises:
        ValidationError: For malformed rows (skipped by the worker)
    """
    if not isinstance(row, dict):
        raise ValidationError(f"Row is not an object: {type(row).__name__}")

    if level == LevelEnum.account:
        entity_id = normalize_account_id(account_id)
    else:
        id_field = LEVEL_ID_FIELDS[level]
        entity_id = str(row.get(id_field) or "").strip()
        if not entity_id:
            raise ValidationError(f"Row missing {id_field}", field=id_field)

    return DailyMetricRecord(
        brand_id=brand_id,
        connection_id=connection_id,
        date=_row_date(row),
        ad_id=entity_id,
        level=level,
        metrics=parse_metric_values(row),
        currency=row.get(AdsInsights.Field.account_currency),
    )


def breakdown_value_for(row: Dict[str, Any], config: BreakdownConfig) -> str:
    """Compose the stored value, e.g. "25-34|female" for age_gender."""
    parts = [row.get(key) for key in config.api_breakdowns]
    if all(part in (None, "") for part in parts):
        raise ValidationError(
            f"Row has none of the {config.name} breakdown fields", field="breakdowns",
        )
    return "|".join(str(part) if part not in (None, "") else UNKNOWN_VALUE for part in parts)


def parse_demographic_row(
    row: Dict[str, Any],
    *,
    brand_id: UUID,
    config: BreakdownConfig,
    connection_id: Optional[UUID] = None,
) -> DemographicRecord:
    """Parse one daily breakdown row into a daily DemographicRecord."""
    if not isinstance(row, dict):
        raise ValidationError(f"Row is not an object: {type(row).__name__}")

    day = _row_date(row)
    return DemographicRecord(
        brand_id=brand_id,
        connection_id=connection_id,
        date_range_start=day,
        date_range_end=day,
        granularity=GranularityEnum.daily,
        breakdown_type=config.name,
        breakdown_value=breakdown_value_for(row, config),
        metrics=parse_metric_values(row),
    )


def collapse_breakdown_records(
    records: Iterable[DemographicRecord],
    config: BreakdownConfig,
) -> List[DemographicRecord]:
    """Fold the long tail of each day's values into a single "Other" row.

    Per (brand, range): values are ranked by impressions, then spend, then
    name; the top `max_values` with at least `min_impressions` are kept and
    everything else is summed into OTHER_VALUE. Output order is deterministic.
    """
    groups: Dict[Tuple, Dict[str, MetricValues]] = {}
    templates: Dict[Tuple, DemographicRecord] = {}
    for record in records:
        key = (record.brand_id, record.date_range_start, record.date_range_end, record.granularity)
        values = groups.setdefault(key, {})
        templates.setdefault(key, record)
        # Duplicate deliveries of the same value replace, never add
        values[record.breakdown_value] = record.metrics

    collapsed: List[DemographicRecord] = []
    for key in sorted(groups, key=lambda k: (str(k[0]), k[1], k[2], k[3].value)):
        values = groups[key]
        template = templates[key]
        ranked = sorted(
            (v for v in values if v != OTHER_VALUE),
            key=lambda v: (-values[v].impressions, -values[v].spend, v),
        )

        kept = []
        tail = [values[OTHER_VALUE]] if OTHER_VALUE in values else []
        for value in ranked:
            if len(kept) < config.max_values and values[value].impressions >= config.min_impressions:
                kept.append(value)
            else:
                tail.append(values[value])

        for value in sorted(kept):
            collapsed.append(_with_value(template, value, values[value]))
        if tail:
            collapsed.append(_with_value(template, OTHER_VALUE, sum_metrics(tail)))

    return collapsed


def _with_value(template: DemographicRecord, value: str, metrics: MetricValues) -> DemographicRecord:
    return DemographicRecord(
        brand_id=template.brand_id,
        connection_id=template.connection_id,
        date_range_start=template.date_range_start,
        date_range_end=template.date_range_end,
        granularity=template.granularity,
        breakdown_type=template.breakdown_type,
        breakdown_value=value,
        metrics=metrics,
    )
