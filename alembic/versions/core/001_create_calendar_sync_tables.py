"""create_calendar_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-12 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_integrations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL
                CHECK (provider IN ('google', 'outlook', 'apple_caldav')),
            access_token TEXT,
            refresh_token TEXT,
            token_expires_at TIMESTAMPTZ,
            calendar_id TEXT,
            server_url TEXT,
            account_username TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            last_sync_at TIMESTAMPTZ,
            last_sync_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (last_sync_status IN ('pending', 'success', 'error')),
            error_message TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            deleted_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_integrations_live_user_provider
        ON calendar_integrations (user_id, provider)
        WHERE deleted_at IS NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_integrations_due
        ON calendar_integrations (last_sync_at NULLS FIRST)
        WHERE deleted_at IS NULL AND is_active AND sync_enabled
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            calendar_type_id TEXT,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            category TEXT,
            show_as TEXT NOT NULL DEFAULT 'busy'
                CHECK (show_as IN ('busy', 'free')),
            google_event_id TEXT,
            outlook_event_id TEXT,
            caldav_event_href TEXT,
            sync_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (sync_status IN ('pending', 'synced', 'error')),
            sync_error TEXT,
            last_synced_at TIMESTAMPTZ,
            provider_metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_calendar_events_time_order CHECK (end_at >= start_at)
        )
    """)
    for column in ("google_event_id", "outlook_event_id", "caldav_event_href"):
        op.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_user_{column}
            ON calendar_events (user_id, {column})
            WHERE {column} IS NOT NULL
        """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_user_sync_status
        ON calendar_events (user_id, sync_status)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            integration_id UUID NOT NULL REFERENCES calendar_integrations (id),
            run_type TEXT NOT NULL CHECK (run_type IN ('manual', 'scheduled')),
            direction TEXT NOT NULL CHECK (direction IN ('push', 'pull', 'bidirectional')),
            status TEXT NOT NULL DEFAULT 'in_progress'
                CHECK (status IN ('in_progress', 'success', 'error')),
            events_processed INTEGER NOT NULL DEFAULT 0,
            events_created INTEGER NOT NULL DEFAULT 0,
            events_updated INTEGER NOT NULL DEFAULT 0,
            events_deleted INTEGER NOT NULL DEFAULT 0,
            events_failed INTEGER NOT NULL DEFAULT 0,
            conflicts_detected INTEGER NOT NULL DEFAULT 0,
            execution_time_ms INTEGER,
            error_message TEXT,
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_sync_logs_one_in_progress
        ON calendar_sync_logs (integration_id)
        WHERE status = 'in_progress'
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_sync_logs_integration_started
        ON calendar_sync_logs (integration_id, started_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_logs")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendar_integrations")
