"""applied changes ledger

Revision ID: s2b3c4d5e6f7
Revises: r1a2b3c4d5e6
Create Date: 2026-10-18 00:00:00.000000

Adds applied_changes: one row per POS change that took effect, keyed by the
terminal's change_id, so a resent batch never applies a change twice.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 's2b3c4d5e6f7'
down_revision = 'r1a2b3c4d5e6'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'applied_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('change_id', sa.String(length=64), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('device_id', sa.String(length=64), nullable=True),
        sa.Column('applied_at', sa.DateTime(), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('change_id', name='uq_applied_changes_change_id'),
    )


def downgrade():
    op.drop_table('applied_changes')
