"""
Initial migration - create all tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('subscription_tier', sa.String(50), default='free'),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Create connections table
    op.create_table(
        'connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('provider', sa.String(50), nullable=False, index=True),
        sa.Column('tenant_id', sa.String(255), nullable=False),
        sa.Column('tenant_name', sa.String(255), nullable=True),
        sa.Column('scopes', sa.JSON(), default=list),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('user_id', 'provider', 'tenant_id', name='uq_connection_tenant'),
    )

    # Create token_records table
    op.create_table(
        'token_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), default='active'),
        sa.Column('refresh_count', sa.Integer(), default=0),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Create oauth_states table
    op.create_table(
        'oauth_states',
        sa.Column('state', sa.String(128), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, index=True),
    )

    # Create statement_files and transactions tables (written by the extraction pipeline)
    op.create_table(
        'statement_files',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('bank_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('file_id', sa.String(36), sa.ForeignKey('statement_files.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('date', sa.Date(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('merchant', sa.String(255), nullable=True),
        sa.Column('category', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('confidence', sa.Integer(), nullable=True),
    )

    # Create sync_jobs table
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('file_id', sa.String(36), sa.ForeignKey('statement_files.id', ondelete='CASCADE'), nullable=False),
        sa.Column('retry_of_job_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(20), default='pending', index=True),
        sa.Column('total_transactions', sa.Integer(), default=0),
        sa.Column('successful_imports', sa.Integer(), default=0),
        sa.Column('failed_imports', sa.Integer(), default=0),
        sa.Column('settings', sa.JSON(), default=dict),
        sa.Column('cancel_requested', sa.Boolean(), default=False),
        sa.Column('error_summary', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create sync_job_items table
    op.create_table(
        'sync_job_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('job_id', sa.String(36), sa.ForeignKey('sync_jobs.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(20), default='pending'),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('remote_id', sa.String(255), nullable=True),
        sa.Column('attempts', sa.Integer(), default=0),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create mapping tables
    op.create_table(
        'category_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('category', sa.String(255), nullable=False),
        sa.Column('remote_account_id', sa.String(255), nullable=False),
        sa.Column('remote_account_name', sa.String(255), nullable=True),
        sa.Column('remote_account_type', sa.String(100), nullable=True),
        sa.Column('remote_account_code', sa.String(50), nullable=True),
        sa.Column('confidence', sa.Integer(), default=100),
        sa.Column('source', sa.String(20), default='manual'),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('connection_id', 'category', name='uq_category_mapping'),
    )
    op.create_table(
        'merchant_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connection_id', sa.String(36), sa.ForeignKey('connections.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('merchant', sa.String(255), nullable=False),
        sa.Column('entity_type', sa.String(20), default='vendor'),
        sa.Column('remote_entity_id', sa.String(255), nullable=False),
        sa.Column('remote_entity_name', sa.String(255), nullable=True),
        sa.Column('confidence', sa.Integer(), default=100),
        sa.Column('source', sa.String(20), default='manual'),
        sa.Column('is_active', sa.Boolean(), default=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('connection_id', 'merchant', name='uq_merchant_mapping'),
    )


def downgrade() -> None:
    op.drop_table('merchant_mappings')
    op.drop_table('category_mappings')
    op.drop_table('sync_job_items')
    op.drop_table('sync_jobs')
    op.drop_table('transactions')
    op.drop_table('statement_files')
    op.drop_table('oauth_states')
    op.drop_table('token_records')
    op.drop_table('connections')
    op.drop_table('users')
