"""Add sync_progress.backfill_started_at

Revision ID: 20261019_000002
Revises: 20261018_000001
Create Date: 2026-10-19 10:00:00.000000

WHAT:
    Records when the current historical sync of a connection started.

WHY:
    A connection stays `stalled` while a chunk of its current backfill is
    dead-lettered; failures from an earlier backfill must not keep it there.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000002'
down_revision = '20261018_000001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('sync_progress', sa.Column('backfill_started_at', sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column('sync_progress', 'backfill_started_at')
