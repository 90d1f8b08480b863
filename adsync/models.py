"""SQLAlchemy ORM models and enums.

This module defines the ingestion schema: brands and their ad platform
connections, the normalized metric tables written by the upsert layer, the
durable sync job queue, the rollover ledger and per-connection progress.
All primary keys are UUIDs; all timestamps are naive UTC.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire package
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"


class ConnectionStatusEnum(str, enum.Enum):
    active = "active"
    inactive = "inactive"  # token expired/revoked, reconnect required
    disconnected = "disconnected"


class LevelEnum(str, enum.Enum):
    account = "account"
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class GranularityEnum(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class JobKindEnum(str, enum.Enum):
    historical_metrics = "historical_metrics"
    historical_demographics = "historical_demographics"
    daily_refresh = "daily_refresh"
    rollover = "rollover"


class JobPriorityEnum(str, enum.Enum):
    high = "high"
    normal = "normal"
    low = "low"


# Lower rank is dequeued first
PRIORITY_RANKS = {
    JobPriorityEnum.high: 0,
    JobPriorityEnum.normal: 1,
    JobPriorityEnum.low: 2,
}


class JobStatusEnum(str, enum.Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"  # dead-letter
    delayed = "delayed"


class LedgerStatusEnum(str, enum.Enum):
    pending = "pending"
    done = "done"


class SyncStageEnum(str, enum.Enum):
    pending = "pending"
    backfilling = "backfilling"
    live = "live"
    stalled = "stalled"
    reconnect_required = "reconnect_required"


class RetentionPolicyEnum(str, enum.Enum):
    retain = "retain"  # keep finer rows next to their aggregates
    prune = "prune"  # delete finer rows once their bucket is rolled


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        Enum(enum_cls, name=name, values_callable=lambda obj: [e.value for e in obj]),
        **kwargs,
    )


# Tenancy -------------------------------------------------------

class Brand(Base):
    """A brand owns ad platform connections and all metric rows."""
    __tablename__ = "brands"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    connections = relationship("Connection", back_populates="brand")

    def __str__(self):
        return self.name


class Connection(Base):
    """Link to one advertising account on an ad platform.

    The access token and metadata are written by the external OAuth flow.
    Workers only read the token and write sync bookkeeping columns.
    """
    __tablename__ = "connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False, index=True)
    provider = _enum_column(ProviderEnum, "provider_enum", nullable=False, default=ProviderEnum.meta)
    external_account_id = Column(String, nullable=False)  # Meta ad account id ("act_123")
    name = Column(String, nullable=False)
    access_token_enc = Column(Text, nullable=True)  # Fernet ciphertext, see adsync/security.py
    status = _enum_column(
        ConnectionStatusEnum, "connection_status_enum",
        nullable=False, default=ConnectionStatusEnum.active,
    )
    connected_at = Column(DateTime, default=datetime.utcnow)

    # Sync bookkeeping
    sync_status = Column(String, default="idle")  # idle, syncing, error, reconnect_required
    last_sync_attempted_at = Column(DateTime, nullable=True)
    last_sync_completed_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    rate_limited_until = Column(DateTime, nullable=True)  # dequeue skips until then

    # "metadata" is reserved on declarative classes
    connection_metadata = Column("metadata", JSON, nullable=True)

    brand = relationship("Brand", back_populates="connections")

    def __str__(self):
        return f"{self.name} ({self.provider.value})"


# Metrics -------------------------------------------------------

class DailyMetric(Base):
    """One day of delivery metrics for one entity at one aggregation level.

    Natural key: (brand_id, date, ad_id, level). Account-level rows carry the
    ad account id in `ad_id`, ad-level rows carry the ad id, so an account
    summary and an ad row can never share a key.
    """
    __tablename__ = "daily_metrics"
    __table_args__ = (
        UniqueConstraint("brand_id", "date", "ad_id", "level", name="uq_daily_metrics_natural_key"),
        Index("ix_daily_metrics_brand_level_date", "brand_id", "level", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="SET NULL"), nullable=True)
    date = Column(Date, nullable=False)
    ad_id = Column(String, nullable=False)
    level = _enum_column(LevelEnum, "level_enum", nullable=False)

    # Base measures
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)

    # Derived from the base measures at write time
    ctr = Column(Numeric(18, 6), nullable=True)
    cpc = Column(Numeric(18, 6), nullable=True)
    cpm = Column(Numeric(18, 6), nullable=True)

    currency = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class DemographicBreakdown(Base):
    """Metrics for one breakdown value over a daily, weekly or monthly range."""
    __tablename__ = "demographic_breakdowns"
    __table_args__ = (
        UniqueConstraint(
            "brand_id", "date_range_start", "date_range_end", "granularity",
            "breakdown_type", "breakdown_value",
            name="uq_demographic_breakdowns_natural_key",
        ),
        Index("ix_demographic_breakdowns_brand_granularity_start", "brand_id", "granularity", "date_range_start"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="SET NULL"), nullable=True)
    date_range_start = Column(Date, nullable=False)
    date_range_end = Column(Date, nullable=False)  # inclusive
    granularity = _enum_column(GranularityEnum, "granularity_enum", nullable=False)
    breakdown_type = Column(String(50), nullable=False)  # age_gender, region, ...
    breakdown_value = Column(String(255), nullable=False)  # "25-34|female", "Other", ...

    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    ctr = Column(Numeric(18, 6), nullable=True)
    cpc = Column(Numeric(18, 6), nullable=True)
    cpm = Column(Numeric(18, 6), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


# Queue ---------------------------------------------------------

class SyncJob(Base):
    """Durable sync job.

    WHAT:
        One unit of work for the worker pool: a date range of metrics, one
        breakdown stream of demographics, a daily refresh, or a rollover.
    WHY:
        Queue state must survive restarts and be shared by many worker
        processes; the partial unique index below enforces one in-flight job
        per connection even when two dequeuers race.
    """
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uq_sync_jobs_one_active_per_connection",
            "connection_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_sync_jobs_status_priority", "status", "priority_rank", "created_at"),
        Index("ix_sync_jobs_dedupe_key", "dedupe_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = _enum_column(JobKindEnum, "job_kind_enum", nullable=False)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False, index=True)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=True)
    range_since = Column(Date, nullable=True)
    range_until = Column(Date, nullable=True)  # inclusive
    breakdown = Column(String(50), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)

    priority = _enum_column(JobPriorityEnum, "job_priority_enum", nullable=False, default=JobPriorityEnum.normal)
    priority_rank = Column(Integer, nullable=False, default=1)
    status = _enum_column(JobStatusEnum, "job_status_enum", nullable=False, default=JobStatusEnum.waiting)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    run_at = Column(DateTime, nullable=True)  # earliest execution time for delayed jobs

    # Lease (at-least-once delivery)
    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    dedupe_key = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    def __str__(self):
        return f"{self.kind.value} {self.range_since}..{self.range_until} ({self.status.value})"


class SyncJobArchive(Base):
    """Finished jobs moved out of the hot queue table after retention."""
    __tablename__ = "sync_jobs_archive"

    id = Column(UUID(as_uuid=True), primary_key=True)
    kind = Column(String(50), nullable=False)
    brand_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    connection_id = Column(UUID(as_uuid=True), nullable=True)
    range_since = Column(Date, nullable=True)
    range_until = Column(Date, nullable=True)
    breakdown = Column(String(50), nullable=True)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, default=datetime.utcnow)


class BackfillBacklogItem(Base):
    """Demographic backfill chunk held back by the per-brand queue cap."""
    __tablename__ = "backfill_backlog"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False, index=True)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    account_id = Column(String, nullable=False)
    breakdown = Column(String(50), nullable=False)
    range_since = Column(Date, nullable=False)
    range_until = Column(Date, nullable=False)
    priority = _enum_column(JobPriorityEnum, "backlog_priority_enum", nullable=False, default=JobPriorityEnum.low)
    created_at = Column(DateTime, default=datetime.utcnow)


# Lifecycle -----------------------------------------------------

class RolloverLedgerEntry(Base):
    """Records which demographic buckets have been aggregated.

    A bucket is aggregated only while it can be moved from pending to done in
    the same transaction that writes the aggregate.
    """
    __tablename__ = "rollover_ledger"
    __table_args__ = (
        UniqueConstraint("brand_id", "bucket_start", "granularity", name="uq_rollover_ledger_bucket"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False)
    bucket_start = Column(Date, nullable=False)
    bucket_end = Column(Date, nullable=False)  # inclusive
    granularity = _enum_column(GranularityEnum, "ledger_granularity_enum", nullable=False)  # target granularity
    status = _enum_column(LedgerStatusEnum, "ledger_status_enum", nullable=False, default=LedgerStatusEnum.pending)
    source_row_count = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SyncProgress(Base):
    """Backfill progress for one connection, read by status endpoints."""
    __tablename__ = "sync_progress"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    brand_id = Column(UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False)
    stage = _enum_column(SyncStageEnum, "sync_stage_enum", nullable=False, default=SyncStageEnum.pending)
    days_completed = Column(Integer, nullable=False, default=0)
    days_target = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    backfill_started_at = Column(DateTime, nullable=True)  # failures before this belong to an older backfill
    updated_at = Column(DateTime, default=datetime.utcnow)

    @property
    def percent(self) -> int:
        if not self.days_target:
            return 100 if self.stage == SyncStageEnum.live else 0
        return min(100, round(self.days_completed / self.days_target * 100))
