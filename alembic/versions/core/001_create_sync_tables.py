"""create_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

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
        CREATE TABLE IF NOT EXISTS practices (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT,
            google_refresh_token TEXT,
            google_calendar_id TEXT NOT NULL DEFAULT 'primary',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS matters (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            practice_id UUID NOT NULL REFERENCES practices (id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            client_id UUID,
            client_name TEXT,
            stage TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_matters_practice ON matters (practice_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            practice_id UUID NOT NULL REFERENCES practices (id) ON DELETE CASCADE,
            matter_id UUID,
            task_id UUID,
            title TEXT NOT NULL DEFAULT '',
            description TEXT,
            location TEXT,
            start_at TIMESTAMPTZ,
            end_at TIMESTAMPTZ,
            all_day BOOLEAN NOT NULL DEFAULT false,
            event_type TEXT NOT NULL DEFAULT 'manual'
                CHECK (event_type IN (
                    'manual', 'task_due', 'scheduled_call', 'deadline', 'court_date', 'meeting'
                )),
            provider_event_id TEXT UNIQUE,
            provider_etag TEXT,
            provider_updated_at TIMESTAMPTZ,
            sync_status TEXT NOT NULL DEFAULT 'pending'
                CHECK (sync_status IN ('pending', 'synced', 'error', 'local_only')),
            sync_error TEXT,
            last_synced_at TIMESTAMPTZ,
            deleted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_matter_status
        ON calendar_events (matter_id, sync_status, created_at)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_cursors (
            practice_id UUID NOT NULL REFERENCES practices (id) ON DELETE CASCADE,
            calendar_id TEXT NOT NULL,
            sync_token TEXT NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (practice_id, calendar_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS matter_folders (
            matter_id UUID PRIMARY KEY REFERENCES matters (id) ON DELETE CASCADE,
            client_folder_id TEXT,
            root_folder_id TEXT,
            root_folder_link TEXT,
            folder_structure JSONB NOT NULL DEFAULT '{}',
            structure_version INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'provisioning'
                CHECK (status IN ('provisioning', 'ready')),
            claim_token UUID,
            claimed_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            matter_id UUID NOT NULL REFERENCES matters (id) ON DELETE CASCADE,
            task_id UUID,
            title TEXT NOT NULL,
            provider_file_id TEXT NOT NULL,
            web_view_link TEXT,
            folder_path TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'uploaded',
            mime_type TEXT,
            size_bytes BIGINT,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (matter_id, folder_path, title, version)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS documents")
    op.execute("DROP TABLE IF EXISTS matter_folders")
    op.execute("DROP TABLE IF EXISTS calendar_sync_cursors")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS matters")
    op.execute("DROP TABLE IF EXISTS practices")
