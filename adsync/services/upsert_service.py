"""Upsert / dedup layer for metric rows.

WHAT:
    Writes DailyMetricRecord and DemographicRecord rows with
    INSERT ... ON CONFLICT (natural key) DO UPDATE: last write wins.

WHY:
    - Delivery is at-least-once: the same page can be applied twice after a
      worker crash or a retry, so applying a record must be idempotent
    - Keys carry an explicit level/granularity tag so an account summary and
      an ad row can never overwrite or double-count each other
    - Each record is one INSERT ... ON CONFLICT statement, so no partially
      written row is ever visible

REFERENCES:
    - adsync/models.py (DailyMetric, DemographicBreakdown unique constraints)
    - adsync/services/insights_parser.py (record types)
"""

import logging
from typing import Iterable, Union

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.exceptions import DuplicateKeyConflict
from adsync.models import DailyMetric, DemographicBreakdown
from adsync.services.insights_parser import DailyMetricRecord, DemographicRecord
from adsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

DAILY_METRIC_KEY = ["brand_id", "date", "ad_id", "level"]
DEMOGRAPHIC_KEY = [
    "brand_id", "date_range_start", "date_range_end",
    "granularity", "breakdown_type", "breakdown_value",
]

# Columns overwritten on conflict (everything except key, id and created_at)
MEASURE_COLUMNS = [
    "spend", "impressions", "clicks", "conversions", "conversion_value",
    "reach", "ctr", "cpc", "cpm", "updated_at",
]

Record = Union[DailyMetricRecord, DemographicRecord]


def dialect_insert(db: Session, model):
    """INSERT construct for the session's dialect (PostgreSQL in production,
    SQLite in tests); both support ON CONFLICT.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upserts are not supported on dialect '{dialect}'")


def _daily_metric_values(record: DailyMetricRecord) -> dict:
    now = utcnow()
    return {
        "brand_id": record.brand_id,
        "connection_id": record.connection_id,
        "date": record.date,
        "ad_id": record.ad_id,
        "level": record.level,
        "currency": record.currency,
        "created_at": now,
        "updated_at": now,
        **record.metrics.as_columns(),
    }


def _demographic_values(record: DemographicRecord) -> dict:
    now = utcnow()
    return {
        "brand_id": record.brand_id,
        "connection_id": record.connection_id,
        "date_range_start": record.date_range_start,
        "date_range_end": record.date_range_end,
        "granularity": record.granularity,
        "breakdown_type": record.breakdown_type,
        "breakdown_value": record.breakdown_value,
        "created_at": now,
        "updated_at": now,
        **record.metrics.as_columns(),
    }


def _upsert_statement(db: Session, record: Record):
    if isinstance(record, DailyMetricRecord):
        model, key, values = DailyMetric, DAILY_METRIC_KEY, _daily_metric_values(record)
        update_columns = MEASURE_COLUMNS + ["currency", "connection_id"]
    elif isinstance(record, DemographicRecord):
        model, key, values = DemographicBreakdown, DEMOGRAPHIC_KEY, _demographic_values(record)
        update_columns = MEASURE_COLUMNS + ["connection_id"]
    else:
        raise TypeError(f"Cannot upsert {type(record).__name__}")

    stmt = dialect_insert(db, model).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=key,
        set_={column: stmt.excluded[column] for column in update_columns},
    )


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    return getattr(orig, "pgcode", None) == "23505" or "UNIQUE constraint failed" in str(orig)


def apply(db: Session, record: Record) -> None:
    """Insert or overwrite one record by its natural key.

    A single INSERT ... ON CONFLICT statement, so the row write is atomic.
    The caller owns the transaction (the worker commits per page).

    Raises:
        DuplicateKeyConflict: If the database still reported a unique
            violation (the worker rolls back and re-applies the page)
    """
    try:
        db.execute(_upsert_statement(db, record))
    except IntegrityError as e:
        if not _is_unique_violation(e):
            raise
        logger.warning("[UPSERT] Unique conflict writing %s: %s", type(record).__name__, e.orig)
        raise DuplicateKeyConflict(f"Concurrent write on {type(record).__name__} key") from e


def apply_many(db: Session, records: Iterable[Record]) -> int:
    """Apply records in order; returns the number written."""
    count = 0
    for record in records:
        apply(db, record)
        count += 1
    return count
