"""Baseline migration - channel connections, messages, sync coordination, jobs

Revision ID: 0001_channel_sync
Revises: 
Create Date: 2026-10-18

Creates the tables backing the sync engine: connections with their cursor
and push-subscription state, the deduplicated message store, the per-
connection sync lease, run history and the background job queue.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_channel_sync'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create sync engine tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    op.execute("CREATE TYPE channel_provider AS ENUM ('gmail', 'outlook', 'slack')")
    op.execute(
        "CREATE TYPE connection_status AS ENUM "
        "('pending', 'active', 'error', 'auth_expired', 'disconnected')"
    )

    # ==========================================================================
    # Channel connections
    # ==========================================================================
    op.execute('''
        CREATE TABLE channel_connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL,
            provider channel_provider NOT NULL,
            provider_account_id VARCHAR(320) NOT NULL,
            display_name VARCHAR(255),
            status connection_status NOT NULL DEFAULT 'pending',
            access_token_encrypted TEXT,
            refresh_token_encrypted TEXT,
            token_expires_at TIMESTAMPTZ,
            sync_cursor TEXT,
            last_sync_at TIMESTAMPTZ,
            consecutive_error_count INTEGER NOT NULL DEFAULT 0,
            last_sync_error TEXT,
            webhook_expires_at TIMESTAMPTZ,
            webhook_subscription_id VARCHAR(255),
            webhook_client_state VARCHAR(255),
            webhook_renewal_failures INTEGER NOT NULL DEFAULT 0,
            webhook_last_renewed_at TIMESTAMPTZ,
            webhook_last_error TEXT,
            provider_config JSONB NOT NULL DEFAULT '{}'::jsonb,
            disconnected_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_channel_connection_account
                UNIQUE (workspace_id, provider, provider_account_id)
        )
    ''')
    op.execute(
        'CREATE INDEX idx_channel_connections_workspace_status '
        'ON channel_connections(workspace_id, status)'
    )
    op.execute(
        'CREATE INDEX idx_channel_connections_webhook_expiry '
        'ON channel_connections(provider, webhook_expires_at)'
    )
    op.execute(
        'CREATE INDEX idx_channel_connections_subscription '
        'ON channel_connections(webhook_subscription_id)'
    )

    # ==========================================================================
    # Messages (dedup key: connection + provider message id)
    # ==========================================================================
    op.execute('''
        CREATE TABLE messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID NOT NULL,
            connection_id UUID NOT NULL REFERENCES channel_connections(id) ON DELETE CASCADE,
            provider_message_id VARCHAR(255) NOT NULL,
            thread_id VARCHAR(255),
            sender_email VARCHAR(320),
            sender_name VARCHAR(255),
            recipients JSONB NOT NULL DEFAULT '[]'::jsonb,
            subject TEXT,
            body TEXT,
            snippet TEXT,
            timestamp TIMESTAMPTZ NOT NULL,
            labels JSONB NOT NULL DEFAULT '[]'::jsonb,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            priority VARCHAR(20),
            category VARCHAR(30),
            classified_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_message_provider_id UNIQUE (connection_id, provider_message_id)
        )
    ''')
    op.execute(
        'CREATE INDEX idx_messages_workspace_timestamp ON messages(workspace_id, timestamp)'
    )
    op.execute(
        'CREATE INDEX idx_messages_connection_thread ON messages(connection_id, thread_id)'
    )

    # ==========================================================================
    # Sync coordination
    # ==========================================================================
    op.execute('''
        CREATE TABLE sync_leases (
            connection_id UUID PRIMARY KEY REFERENCES channel_connections(id) ON DELETE CASCADE,
            holder_token VARCHAR(64) NOT NULL,
            acquired_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL
        )
    ''')

    op.execute('''
        CREATE TABLE sync_runs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            connection_id UUID NOT NULL REFERENCES channel_connections(id) ON DELETE CASCADE,
            trigger VARCHAR(20) NOT NULL,
            started_at TIMESTAMPTZ NOT NULL,
            finished_at TIMESTAMPTZ,
            passes INTEGER NOT NULL DEFAULT 0,
            new_message_count INTEGER NOT NULL DEFAULT 0,
            updated_message_count INTEGER NOT NULL DEFAULT 0,
            skipped_message_count INTEGER NOT NULL DEFAULT 0,
            error_kind VARCHAR(30),
            error_message TEXT
        )
    ''')
    op.execute(
        'CREATE INDEX idx_sync_runs_connection_started ON sync_runs(connection_id, started_at)'
    )

    # ==========================================================================
    # Jobs
    # ==========================================================================
    op.execute('''
        CREATE TABLE jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workspace_id UUID,
            connection_id UUID,
            job_type VARCHAR(50) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            idempotency_key VARCHAR(255)
        )
    ''')
    op.execute(
        "CREATE INDEX idx_jobs_pending ON jobs(status, run_at) WHERE status = 'pending'"
    )
    op.execute(
        'CREATE INDEX idx_jobs_connection_status ON jobs(connection_id, job_type, status)'
    )
    op.execute(
        'CREATE UNIQUE INDEX uq_job_idempotency ON jobs(idempotency_key) '
        'WHERE idempotency_key IS NOT NULL'
    )


def downgrade() -> None:
    """Drop sync engine tables."""
    op.execute('DROP TABLE IF EXISTS jobs')
    op.execute('DROP TABLE IF EXISTS sync_runs')
    op.execute('DROP TABLE IF EXISTS sync_leases')
    op.execute('DROP TABLE IF EXISTS messages')
    op.execute('DROP TABLE IF EXISTS channel_connections')
    op.execute('DROP TYPE IF EXISTS connection_status')
    op.execute('DROP TYPE IF EXISTS channel_provider')
