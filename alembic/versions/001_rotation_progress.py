"""Add rotation_progress table

Revision ID: 001_rotation_progress
Revises:
Create Date: 2026-10-17

Durable checkpoints for PII key rotation, one row per (rotation_id, table_name).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '001_rotation_progress'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(JSONB(), 'postgresql')
    op.create_table(
        'rotation_progress',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('rotation_id', sa.String(100), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('old_key_hash', sa.String(64), nullable=False),
        sa.Column('new_key_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_checkpoint_id', sa.String(100), nullable=True),
        sa.Column('error_log', json_type, nullable=False, server_default='[]'),
        sa.Column('failed_ids', json_type, nullable=False, server_default='[]'),
        sa.Column('metadata', json_type, nullable=False, server_default='{}'),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('rotation_id', 'table_name', name='uq_rotation_progress_table')
    )
    op.create_index('ix_rotation_progress_rotation_id', 'rotation_progress', ['rotation_id'])


def downgrade() -> None:
    op.drop_index('ix_rotation_progress_rotation_id', table_name='rotation_progress')
    op.drop_table('rotation_progress')
