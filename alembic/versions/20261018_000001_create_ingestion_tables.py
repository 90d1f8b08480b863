"""Create ingestion tables (brands, connections, metrics, queue, ledger, progress)

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Initial schema of the ingestion core:
    - brands, connections: tenancy and ad account links
    - daily_metrics, demographic_breakdowns: normalized metric storage
    - sync_jobs, sync_jobs_archive, backfill_backlog: durable job queue
    - rollover_ledger: exactly-once demographic aggregation
    - sync_progress: per-connection backfill progress

WHY:
    - Natural-key unique constraints make every metric write an idempotent
      upsert
    - The partial unique index on sync_jobs(connection_id) WHERE
      status = 'active' is the per-connection admission limit; claims that
      would violate it fail in the database, not in application code

REFERENCES:
    - adsync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def _measure_columns():
    return [
        sa.Column('spend', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('impressions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('clicks', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('conversion_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('reach', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('ctr', sa.Numeric(18, 6), nullable=True),
        sa.Column('cpc', sa.Numeric(18, 6), nullable=True),
        sa.Column('cpm', sa.Numeric(18, 6), nullable=True),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenancy
    # =========================================================================
    op.create_table(
        'brands',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column('provider', sa.Enum('meta', name='provider_enum'), nullable=False),
        sa.Column('external_account_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column(
            'status',
            sa.Enum('active', 'inactive', 'disconnected', name='connection_status_enum'),
            nullable=False,
            server_default='active',
        ),
        sa.Column('connected_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('sync_status', sa.String(), server_default='idle'),
        sa.Column('last_sync_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_completed_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('rate_limited_until', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_connections_brand_id', 'connections', ['brand_id'])

    # =========================================================================
    # STEP 2: Metric storage
    # =========================================================================
    # WHAT: One row per (brand, day, entity, level) and per breakdown bucket
    # WHY: Natural keys back the INSERT ... ON CONFLICT upserts
    op.create_table(
        'daily_metrics',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column(
            'connection_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('connections.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('ad_id', sa.String(), nullable=False),
        sa.Column('level', sa.Enum('account', 'campaign', 'adset', 'ad', name='level_enum'), nullable=False),
        *_measure_columns(),
        sa.Column('currency', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('brand_id', 'date', 'ad_id', 'level', name='uq_daily_metrics_natural_key'),
    )
    op.create_index('ix_daily_metrics_brand_level_date', 'daily_metrics', ['brand_id', 'level', 'date'])

    op.create_table(
        'demographic_breakdowns',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column(
            'connection_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('connections.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('date_range_start', sa.Date(), nullable=False),
        sa.Column('date_range_end', sa.Date(), nullable=False),
        sa.Column('granularity', sa.Enum('daily', 'weekly', 'monthly', name='granularity_enum'), nullable=False),
        sa.Column('breakdown_type', sa.String(50), nullable=False),
        sa.Column('breakdown_value', sa.String(255), nullable=False),
        *_measure_columns(),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            'brand_id', 'date_range_start', 'date_range_end', 'granularity',
            'breakdown_type', 'breakdown_value',
            name='uq_demographic_breakdowns_natural_key',
        ),
    )
    op.create_index(
        'ix_demographic_breakdowns_brand_granularity_start',
        'demographic_breakdowns', ['brand_id', 'granularity', 'date_range_start'],
    )

    # =========================================================================
    # STEP 3: Job queue
    # =========================================================================
    op.create_table(
        'sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'kind',
            sa.Enum('historical_metrics', 'historical_demographics', 'daily_refresh', 'rollover', name='job_kind_enum'),
            nullable=False,
        ),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column(
            'connection_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=True,
        ),
        sa.Column('range_since', sa.Date(), nullable=True),
        sa.Column('range_until', sa.Date(), nullable=True),
        sa.Column('breakdown', sa.String(50), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column(
            'priority', sa.Enum('high', 'normal', 'low', name='job_priority_enum'),
            nullable=False, server_default='normal',
        ),
        sa.Column('priority_rank', sa.Integer(), nullable=False, server_default='1'),
        sa.Column(
            'status',
            sa.Enum('waiting', 'active', 'completed', 'failed', 'delayed', name='job_status_enum'),
            nullable=False,
            server_default='waiting',
        ),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('run_at', sa.DateTime(), nullable=True),
        sa.Column('locked_by', sa.String(), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dedupe_key', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_sync_jobs_brand_id', 'sync_jobs', ['brand_id'])
    op.create_index('ix_sync_jobs_status_priority', 'sync_jobs', ['status', 'priority_rank', 'created_at'])
    op.create_index('ix_sync_jobs_dedupe_key', 'sync_jobs', ['dedupe_key'])
    # WHAT: At most one active job per connection
    # WHY: Enforced even when two workers claim at the same time
    op.create_index(
        'uq_sync_jobs_one_active_per_connection',
        'sync_jobs',
        ['connection_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'sync_jobs_archive',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('connection_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('range_since', sa.Date(), nullable=True),
        sa.Column('range_until', sa.Date(), nullable=True),
        sa.Column('breakdown', sa.String(50), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('archived_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_sync_jobs_archive_brand_id', 'sync_jobs_archive', ['brand_id'])

    op.create_table(
        'backfill_backlog',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column(
            'connection_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('breakdown', sa.String(50), nullable=False),
        sa.Column('range_since', sa.Date(), nullable=False),
        sa.Column('range_until', sa.Date(), nullable=False),
        sa.Column(
            'priority', sa.Enum('high', 'normal', 'low', name='backlog_priority_enum'),
            nullable=False, server_default='low',
        ),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_backfill_backlog_brand_id', 'backfill_backlog', ['brand_id'])

    # =========================================================================
    # STEP 4: Lifecycle
    # =========================================================================
    op.create_table(
        'rollover_ledger',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column('bucket_start', sa.Date(), nullable=False),
        sa.Column('bucket_end', sa.Date(), nullable=False),
        sa.Column(
            'granularity', sa.Enum('daily', 'weekly', 'monthly', name='ledger_granularity_enum'), nullable=False,
        ),
        sa.Column(
            'status', sa.Enum('pending', 'done', name='ledger_status_enum'),
            nullable=False, server_default='pending',
        ),
        sa.Column('source_row_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('brand_id', 'bucket_start', 'granularity', name='uq_rollover_ledger_bucket'),
    )

    op.create_table(
        'sync_progress',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'connection_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False, unique=True,
        ),
        sa.Column('brand_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('brands.id'), nullable=False),
        sa.Column(
            'stage',
            sa.Enum('pending', 'backfilling', 'live', 'stalled', 'reconnect_required', name='sync_stage_enum'),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('days_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('days_target', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('sync_progress')
    op.drop_table('rollover_ledger')
    op.drop_table('backfill_backlog')
    op.drop_table('sync_jobs_archive')
    op.drop_index('uq_sync_jobs_one_active_per_connection', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_table('demographic_breakdowns')
    op.drop_table('daily_metrics')
    op.drop_table('connections')
    op.drop_table('brands')

    for enum_name in (
        'sync_stage_enum', 'ledger_status_enum', 'ledger_granularity_enum', 'backlog_priority_enum',
        'job_status_enum', 'job_priority_enum', 'job_kind_enum', 'granularity_enum', 'level_enum',
        'connection_status_enum', 'provider_enum',
    ):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
