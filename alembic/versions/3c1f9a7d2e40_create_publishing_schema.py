"""create_publishing_schema

Revision ID: 3c1f9a7d2e40
Revises:
Create Date: 2026-10-12 09:14:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3c1f9a7d2e40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Helper for cross-dialect JSON
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")


def upgrade() -> None:
    """Create pipeline, connection, handshake and remediation tables."""

    # 1. cms_connections
    op.create_table('cms_connections',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_token', sa.String(255), nullable=False),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('provider_type', sa.String(32), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scopes', JSON_TYPE, nullable=True),
        sa.Column('config', JSON_TYPE, nullable=True),
        sa.Column('status', sa.String(32), server_default='active', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_cms_connections_owner', 'cms_connections', ['owner_token'], unique=False)
    op.create_index('idx_cms_connections_site_status', 'cms_connections', ['site_id', 'status', 'created_at'], unique=False)
    # One active connection per (site, provider)
    op.create_index(
        'uq_cms_connections_active_site_provider', 'cms_connections', ['site_id', 'provider_type'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    # 2. article_jobs
    op.create_table('article_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_token', sa.String(255), nullable=False),
        sa.Column('site_id', sa.Integer(), nullable=False),
        sa.Column('site_domain', sa.String(255), nullable=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('slug', sa.String(500), nullable=True),
        sa.Column('target_keywords', JSON_TYPE, nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('meta_title', sa.String(500), nullable=True),
        sa.Column('meta_description', sa.Text(), nullable=True),
        sa.Column('content_outline', JSON_TYPE, nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(32), server_default='pending', nullable=False),
        sa.Column('scheduled_publish_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cms_connection_id', sa.Integer(), nullable=True),
        sa.Column('target_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cms_article_id', sa.String(255), nullable=True),
        sa.Column('cms_article_url', sa.Text(), nullable=True),
        sa.Column('remote_status', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['cms_connection_id'], ['cms_connections.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_article_jobs_status_scheduled', 'article_jobs', ['status', 'scheduled_publish_at'], unique=False)
    op.create_index('idx_article_jobs_owner_site', 'article_jobs', ['owner_token', 'site_id'], unique=False)
    op.create_index('idx_article_jobs_claimed', 'article_jobs', ['status', 'claimed_at'], unique=False)

    # 3. publish_records
    op.create_table('publish_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('article_job_id', sa.Integer(), nullable=False),
        sa.Column('connection_id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('target_id', sa.String(255), nullable=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('slug', sa.String(500), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('remote_published_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['article_job_id'], ['article_jobs.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['connection_id'], ['cms_connections.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('connection_id', 'external_id', name='uq_publish_records_connection_external')
    )
    op.create_index('idx_publish_records_job', 'publish_records', ['article_job_id'], unique=False)

    # 4. job_events
    op.create_table('job_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('article_job_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('old_status', sa.String(32), nullable=True),
        sa.Column('new_status', sa.String(32), nullable=True),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['article_job_id'], ['article_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_job_events_job_created', 'job_events', ['article_job_id', 'created_at'], unique=False)
    op.create_index('idx_job_events_type', 'job_events', ['event_type'], unique=False)

    # 5. oauth_states
    op.create_table('oauth_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('state', sa.String(128), nullable=False),
        sa.Column('provider_type', sa.String(32), nullable=False),
        sa.Column('owner_token', sa.String(255), nullable=False),
        sa.Column('redirect_uri', sa.Text(), nullable=False),
        sa.Column('context', JSON_TYPE, nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('state')
    )
    op.create_index('idx_oauth_states_expires_at', 'oauth_states', ['expires_at'], unique=False)

    # 6. remediation_items
    op.create_table('remediation_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_token', sa.String(255), nullable=False),
        sa.Column('site_url', sa.String(500), nullable=False),
        sa.Column('issue_type', sa.String(100), nullable=True),
        sa.Column('issue_category', sa.String(50), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('severity', sa.String(20), nullable=True),
        sa.Column('status', sa.String(32), server_default='open', nullable=False),
        sa.Column('verification_status', sa.String(32), server_default='pending', nullable=False),
        sa.Column('next_check_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verification_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('analysis', JSON_TYPE, nullable=True),
        sa.Column('verification_details', JSON_TYPE, nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_remediation_due', 'remediation_items', ['status', 'verification_status', 'next_check_at'], unique=False)
    op.create_index('idx_remediation_owner_site', 'remediation_items', ['owner_token', 'site_url'], unique=False)


def downgrade() -> None:
    """Drop everything created above, children first."""
    op.drop_index('idx_remediation_owner_site', table_name='remediation_items')
    op.drop_index('idx_remediation_due', table_name='remediation_items')
    op.drop_table('remediation_items')

    op.drop_index('idx_oauth_states_expires_at', table_name='oauth_states')
    op.drop_table('oauth_states')

    op.drop_index('idx_job_events_type', table_name='job_events')
    op.drop_index('idx_job_events_job_created', table_name='job_events')
    op.drop_table('job_events')

    op.drop_index('idx_publish_records_job', table_name='publish_records')
    op.drop_table('publish_records')

    op.drop_index('idx_article_jobs_claimed', table_name='article_jobs')
    op.drop_index('idx_article_jobs_owner_site', table_name='article_jobs')
    op.drop_index('idx_article_jobs_status_scheduled', table_name='article_jobs')
    op.drop_table('article_jobs')

    op.drop_index('uq_cms_connections_active_site_provider', table_name='cms_connections')
    op.drop_index('idx_cms_connections_site_status', table_name='cms_connections')
    op.drop_index('idx_cms_connections_owner', table_name='cms_connections')
    op.drop_table('cms_connections')
