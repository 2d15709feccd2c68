from __future__ import annotations

from sqlalchemy import text as sql_text

from calendar_sync.db import get_engine


CALENDAR_LINKS_TABLE = "calendar_links"
TASKS_TABLE = "tasks"
ROUTINES_TABLE = "routines"
ROUTINE_EVENTS_TABLE = "routine_event_records"
SYNC_OUTBOX_TABLE = "sync_outbox"


async def init_db():
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {CALENDAR_LINKS_TABLE} (
                    user_id TEXT PRIMARY KEY,
                    refresh_token_enc TEXT NOT NULL,
                    access_token TEXT,
                    token_expires_at TEXT,
                    scope TEXT,
                    google_email TEXT,
                    auth_state TEXT NOT NULL DEFAULT 'active',
                    is_enabled INTEGER DEFAULT 1,
                    sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
                    calendar_id TEXT NOT NULL DEFAULT 'primary',
                    timezone TEXT NOT NULL,
                    sync_health TEXT NOT NULL DEFAULT 'healthy',
                    last_error TEXT,
                    last_inbound_sync_at TEXT,
                    last_outbound_sync_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {TASKS_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    scheduled_date TEXT,
                    scheduled_start TEXT,
                    scheduled_end TEXT,
                    is_all_day INTEGER DEFAULT 0,
                    is_private INTEGER DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    source TEXT NOT NULL DEFAULT 'local',
                    google_calendar_id TEXT,
                    google_event_id TEXT,
                    last_synced_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {ROUTINES_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    frequency TEXT NOT NULL DEFAULT 'daily',
                    days_of_week TEXT,
                    scheduled_time TEXT,
                    duration_minutes INTEGER,
                    is_active INTEGER DEFAULT 1,
                    is_private INTEGER DEFAULT 0,
                    materialized_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {ROUTINE_EVENTS_TABLE} (
                    routine_id TEXT NOT NULL,
                    occurrence_date TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    google_calendar_id TEXT NOT NULL,
                    google_event_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (routine_id, occurrence_date)
                )
                """
            )
        )
        await conn.execute(
            sql_text(
                f"""
                CREATE TABLE IF NOT EXISTS {SYNC_OUTBOX_TABLE} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    payload_json TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER DEFAULT 0,
                    next_retry_at TEXT,
                    last_error TEXT,
                    warning TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
        )

    async def ensure_index(index_sql: str) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(sql_text(index_sql))
        except Exception:
            return

    await ensure_index(
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{TASKS_TABLE}_google_event "
        f"ON {TASKS_TABLE} (user_id, google_event_id)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{TASKS_TABLE}_user_date "
        f"ON {TASKS_TABLE} (user_id, scheduled_date)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{ROUTINE_EVENTS_TABLE}_event "
        f"ON {ROUTINE_EVENTS_TABLE} (user_id, google_event_id)"
    )
    await ensure_index(
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{SYNC_OUTBOX_TABLE}_entity "
        f"ON {SYNC_OUTBOX_TABLE} (user_id, entity_type, entity_id)"
    )
    await ensure_index(
        f"CREATE INDEX IF NOT EXISTS idx_{SYNC_OUTBOX_TABLE}_status "
        f"ON {SYNC_OUTBOX_TABLE} (status, next_retry_at)"
    )
