"""calendar_sync_tables

Revision ID: calsync_001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calsync_001"
down_revision = None
branch_labels = ("calsync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_connections (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            organization_id TEXT NOT NULL,
            provider TEXT NOT NULL CHECK (provider IN ('google', 'outlook')),
            provider_account_id TEXT,
            email TEXT,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            time_zone TEXT NOT NULL DEFAULT 'UTC',
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            token_expires_at TIMESTAMPTZ,
            last_sync_token TEXT,
            last_full_sync_at TIMESTAMPTZ,
            last_incremental_sync_at TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            is_default BOOLEAN NOT NULL DEFAULT false,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_connections_default_per_user
        ON calendar_connections (user_id)
        WHERE is_default
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_connections_active
        ON calendar_connections (is_active)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS external_calendar_events (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            calendar_connection_id TEXT NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            provider_event_id TEXT NOT NULL,
            provider_calendar_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT 'Untitled',
            description TEXT,
            location TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            time_zone TEXT NOT NULL DEFAULT 'UTC',
            is_all_day BOOLEAN NOT NULL DEFAULT false,
            status TEXT NOT NULL DEFAULT 'confirmed'
                CHECK (status IN ('confirmed', 'tentative', 'cancelled')),
            show_as TEXT NOT NULL DEFAULT 'busy'
                CHECK (show_as IN ('busy', 'free', 'tentative', 'outOfOffice')),
            organizer_email TEXT,
            organizer_name TEXT,
            attendees JSONB NOT NULL DEFAULT '[]',
            is_recurring BOOLEAN NOT NULL DEFAULT false,
            recurrence_rule TEXT,
            provider_data JSONB,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_external_calendar_events_connection_event
                UNIQUE (calendar_connection_id, provider_event_id),
            CONSTRAINT ck_external_calendar_events_window CHECK (start_time <= end_time)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_external_calendar_events_window
        ON external_calendar_events (start_time, end_time)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_logs (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            calendar_connection_id TEXT NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            sync_type TEXT NOT NULL
                CHECK (sync_type IN ('full', 'incremental', 'webhook', 'manual')),
            direction TEXT NOT NULL DEFAULT 'inbound'
                CHECK (direction IN ('inbound', 'outbound', 'bidirectional')),
            status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('running', 'completed', 'failed', 'partial')),
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            sync_token_before TEXT,
            sync_token_after TEXT,
            events_processed INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            events_deleted INTEGER NOT NULL DEFAULT 0,
            error_code TEXT,
            error_message TEXT,
            error_details JSONB,
            retry_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_sync_logs_one_running
        ON calendar_sync_logs (calendar_connection_id)
        WHERE status = 'running'
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_sync_logs_connection_started
        ON calendar_sync_logs (calendar_connection_id, started_at DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_webhook_channels (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            calendar_connection_id TEXT NOT NULL
                REFERENCES calendar_connections (id) ON DELETE CASCADE,
            provider TEXT NOT NULL CHECK (provider IN ('google', 'outlook')),
            channel_id TEXT NOT NULL UNIQUE,
            resource_id TEXT,
            resource TEXT NOT NULL,
            notification_url TEXT NOT NULL,
            client_state TEXT,
            expiration TIMESTAMPTZ NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_webhook_channels_expiration
        ON calendar_webhook_channels (expiration)
        WHERE is_active
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_webhook_channels")
    op.execute("DROP TABLE IF EXISTS calendar_sync_logs")
    op.execute("DROP TABLE IF EXISTS external_calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_connections")
