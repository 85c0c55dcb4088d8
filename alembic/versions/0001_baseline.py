"""Baseline migration - users, connected accounts and jobs

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18

Creates the tables behind the Gmail connection lifecycle: users, their
connected mailboxes (encrypted tokens, history cursor, watch state) and
the durable job queue.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create lifecycle tables."""

    # ==========================================================================
    # Users
    # ==========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # ==========================================================================
    # Connected accounts
    # ==========================================================================
    op.create_table(
        'connected_accounts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'user_id',
            sa.Uuid(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_account_id', sa.String(255), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('access_token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_last_error', sa.Text(), nullable=True),
        sa.Column('last_history_id', sa.String(64), nullable=True),
        sa.Column('watch_state', sa.String(20), nullable=False, server_default='unwatched'),
        sa.Column('watch_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('watch_last_renewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('watch_last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('provider', 'provider_account_id', name='uq_account_provider_identity'),
        sa.UniqueConstraint('user_id', 'email', name='uq_account_user_email'),
    )
    op.create_index('idx_accounts_email', 'connected_accounts', ['email'])
    op.create_index('idx_accounts_token_expiry', 'connected_accounts', ['access_token_expires_at'])

    # ==========================================================================
    # Jobs
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'account_id',
            sa.Uuid(),
            sa.ForeignKey('connected_accounts.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column(
            'payload',
            sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'),
            nullable=False,
        ),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(512), nullable=True),
    )
    op.create_index('idx_jobs_pending', 'jobs', ['status', 'run_at'])
    op.create_index('idx_jobs_account', 'jobs', ['account_id', 'job_type'])
    op.create_index(
        'uq_job_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
        sqlite_where=sa.text('idempotency_key IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_index('uq_job_idempotency', table_name='jobs')
    op.drop_index('idx_jobs_account', table_name='jobs')
    op.drop_index('idx_jobs_pending', table_name='jobs')
    op.drop_table('jobs')
    op.drop_index('idx_accounts_token_expiry', table_name='connected_accounts')
    op.drop_index('idx_accounts_email', table_name='connected_accounts')
    op.drop_table('connected_accounts')
    op.drop_table('users')
