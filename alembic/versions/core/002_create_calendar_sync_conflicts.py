"""create_calendar_sync_conflicts

Revision ID: core_002
Revises: core_001
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_002"
down_revision = "core_001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_conflicts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            event_id UUID NOT NULL REFERENCES calendar_events (id) ON DELETE CASCADE,
            integration_id UUID REFERENCES calendar_integrations (id),
            provider TEXT NOT NULL
                CHECK (provider IN ('google', 'outlook', 'apple_caldav')),
            external_id TEXT,
            conflict_type TEXT NOT NULL DEFAULT 'external_change'
                CHECK (conflict_type IN (
                    'time_overlap', 'data_mismatch', 'external_change', 'permission_error'
                )),
            local_data JSONB NOT NULL DEFAULT '{}',
            external_data JSONB NOT NULL DEFAULT '{}',
            resolution_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (resolution_status IN (
                    'pending', 'resolved_local', 'resolved_external',
                    'resolved_manual', 'ignored'
                )),
            resolved_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_sync_conflicts_user_created
        ON calendar_sync_conflicts (user_id, created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_conflicts")
