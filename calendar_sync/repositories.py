from __future__ import annotations

import json
from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import text as sql_text

from calendar_sync.db import get_sessionmaker

CALENDAR_LINKS_TABLE = "calendar_links"
TASKS_TABLE = "tasks"
ROUTINES_TABLE = "routines"
ROUTINE_EVENTS_TABLE = "routine_event_records"
SYNC_OUTBOX_TABLE = "sync_outbox"

LINK_COLUMNS = [
    "user_id",
    "refresh_token_enc",
    "access_token",
    "token_expires_at",
    "scope",
    "google_email",
    "auth_state",
    "is_enabled",
    "sync_direction",
    "calendar_id",
    "timezone",
    "sync_health",
    "last_error",
    "last_inbound_sync_at",
    "last_outbound_sync_at",
    "version",
    "created_at",
    "updated_at",
]

TASK_COLUMNS = [
    "id",
    "user_id",
    "title",
    "description",
    "scheduled_date",
    "scheduled_start",
    "scheduled_end",
    "is_all_day",
    "is_private",
    "status",
    "source",
    "google_calendar_id",
    "google_event_id",
    "last_synced_at",
    "created_at",
    "updated_at",
]

ROUTINE_COLUMNS = [
    "id",
    "user_id",
    "title",
    "description",
    "frequency",
    "days_of_week",
    "scheduled_time",
    "duration_minutes",
    "is_active",
    "is_private",
    "materialized_until",
    "created_at",
    "updated_at",
]

OUTBOX_COLUMNS = [
    "id",
    "user_id",
    "entity_type",
    "entity_id",
    "action",
    "payload_json",
    "status",
    "attempts",
    "next_retry_at",
    "last_error",
    "warning",
    "created_at",
    "updated_at",
]


def _new_id() -> str:
    return uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_time_value(value):
    if value is None:
        return None
    if hasattr(value, "strftime"):
        return value.strftime("%H:%M")
    value_str = str(value).strip()
    return value_str[:5] if value_str else None


def _normalize_date_value(value):
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    value_str = str(value).strip()
    return value_str[:10] if value_str else None


def _normalize_days_of_week(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value
    clean = sorted({int(day) for day in value if 0 <= int(day) <= 6})
    return ",".join(map(str, clean))


def _normalize_row(row) -> dict:
    if not row:
        return {}
    payload = dict(row)
    for key, value in list(payload.items()):
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
        elif isinstance(value, date):
            payload[key] = value.isoformat()
    return payload


def _normalize_task_row(row) -> dict:
    payload = _normalize_row(row)
    if not payload:
        return payload
    for key in ("scheduled_start", "scheduled_end"):
        payload[key] = _normalize_time_value(payload.get(key))
    for key in ("is_all_day", "is_private"):
        payload[key] = int(bool(payload.get(key)))
    return payload


def _normalize_routine_row(row) -> dict:
    payload = _normalize_row(row)
    if not payload:
        return payload
    payload["scheduled_time"] = _normalize_time_value(payload.get("scheduled_time"))
    raw_days = payload.get("days_of_week")
    payload["days_of_week"] = [int(item) for item in str(raw_days).split(",") if str(item).strip()] if raw_days else []
    for key in ("is_active", "is_private"):
        payload[key] = int(bool(payload.get(key)))
    return payload


# ---------------------------------------------------------------------------
# Calendar links
# ---------------------------------------------------------------------------


async def get_calendar_link(user_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(f"SELECT {', '.join(LINK_COLUMNS)} FROM {CALENDAR_LINKS_TABLE} WHERE user_id = :user_id"),
            {"user_id": user_id},
        )).mappings().fetchone()
    return _normalize_row(row) if row else None


async def list_calendar_links(enabled_only: bool = True) -> list[dict]:
    where = "WHERE COALESCE(is_enabled, 0) = 1 AND auth_state = 'active'" if enabled_only else ""
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(f"SELECT {', '.join(LINK_COLUMNS)} FROM {CALENDAR_LINKS_TABLE} {where} ORDER BY user_id"),
        )).mappings().all()
    return [_normalize_row(row) for row in rows]


async def store_calendar_tokens(
    user_id: str,
    refresh_token_enc: str,
    access_token: str | None = None,
    token_expires_at: str | None = None,
    scope: str | None = None,
    google_email: str | None = None,
    timezone_name: str = "UTC",
    calendar_id: str = "primary",
) -> None:
    now = _now_iso()
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {CALENDAR_LINKS_TABLE}
                    (user_id, refresh_token_enc, access_token, token_expires_at, scope, google_email,
                     auth_state, is_enabled, sync_direction, calendar_id, timezone, sync_health,
                     last_error, version, created_at, updated_at)
                VALUES
                    (:user_id, :refresh_token_enc, :access_token, :token_expires_at, :scope, :google_email,
                     'active', 1, 'bidirectional', :calendar_id, :timezone, 'healthy',
                     NULL, 1, :now, :now)
                ON CONFLICT(user_id) DO UPDATE SET
                    refresh_token_enc = EXCLUDED.refresh_token_enc,
                    access_token = COALESCE(EXCLUDED.access_token, {CALENDAR_LINKS_TABLE}.access_token),
                    token_expires_at = COALESCE(EXCLUDED.token_expires_at, {CALENDAR_LINKS_TABLE}.token_expires_at),
                    scope = COALESCE(EXCLUDED.scope, {CALENDAR_LINKS_TABLE}.scope),
                    google_email = COALESCE(EXCLUDED.google_email, {CALENDAR_LINKS_TABLE}.google_email),
                    auth_state = 'active',
                    sync_health = 'healthy',
                    last_error = NULL,
                    version = {CALENDAR_LINKS_TABLE}.version + 1,
                    updated_at = EXCLUDED.updated_at
                """
            ),
            {
                "user_id": user_id,
                "refresh_token_enc": refresh_token_enc,
                "access_token": access_token,
                "token_expires_at": token_expires_at,
                "scope": scope,
                "google_email": google_email,
                "calendar_id": calendar_id,
                "timezone": timezone_name,
                "now": now,
            },
        )
        await session.commit()


async def update_link_tokens(
    user_id: str,
    access_token: str,
    token_expires_at: str,
    scope: str | None = None,
    refresh_token_enc: str | None = None,
) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                UPDATE {CALENDAR_LINKS_TABLE}
                SET access_token = :access_token,
                    token_expires_at = :token_expires_at,
                    scope = COALESCE(:scope, scope),
                    refresh_token_enc = COALESCE(:refresh_token_enc, refresh_token_enc),
                    version = version + 1,
                    updated_at = :updated_at
                WHERE user_id = :user_id
                """
            ),
            {
                "user_id": user_id,
                "access_token": access_token,
                "token_expires_at": token_expires_at,
                "scope": scope,
                "refresh_token_enc": refresh_token_enc,
                "updated_at": _now_iso(),
            },
        )
        await session.commit()


async def update_calendar_link(user_id: str, patch: dict, expected_version: int | None = None) -> bool:
    """Apply ``patch`` to the link, bumping its version.

    Returns False when ``expected_version`` is given and no longer matches.
    """
    allowed = {
        "auth_state",
        "is_enabled",
        "sync_direction",
        "calendar_id",
        "timezone",
        "sync_health",
        "last_error",
        "last_inbound_sync_at",
        "last_outbound_sync_at",
        "access_token",
        "token_expires_at",
    }
    updates = []
    params: dict = {"user_id": user_id}
    for key, value in patch.items():
        if key not in allowed:
            continue
        updates.append(f"{key} = :{key}")
        if key == "is_enabled":
            params[key] = int(bool(value))
        elif key == "last_error" and value is not None:
            params[key] = str(value)[:500]
        else:
            params[key] = value
    if not updates:
        return True
    updates.append("version = version + 1")
    updates.append("updated_at = :updated_at")
    params["updated_at"] = _now_iso()
    where = "user_id = :user_id"
    if expected_version is not None:
        where += " AND version = :expected_version"
        params["expected_version"] = expected_version
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        result = await session.execute(
            sql_text(f"UPDATE {CALENDAR_LINKS_TABLE} SET {', '.join(updates)} WHERE {where}"),
            params,
        )
        await session.commit()
    return bool(result.rowcount)


async def delete_calendar_link(user_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {CALENDAR_LINKS_TABLE} WHERE user_id = :user_id"),
            {"user_id": user_id},
        )
        await session.commit()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


async def list_tasks(user_id: str, start_iso: str, end_iso: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_id = :user_id
                  AND scheduled_date BETWEEN :start_date AND :end_date
                ORDER BY scheduled_date, scheduled_start IS NULL, scheduled_start, created_at
                """
            ),
            {"user_id": user_id, "start_date": start_iso, "end_date": end_iso},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def list_tasks_pending_outbound(user_id: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_id = :user_id
                  AND google_event_id IS NULL
                  AND scheduled_date IS NOT NULL
                  AND COALESCE(is_private, 0) = 0
                ORDER BY created_at ASC
                """
            ),
            {"user_id": user_id},
        )).mappings().all()
    return [_normalize_task_row(row) for row in rows]


async def get_task(user_id: str, task_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": task_id, "user_id": user_id},
        )).mappings().fetchone()
    return _normalize_task_row(row) if row else None


async def get_task_by_event_id(user_id: str, event_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(TASK_COLUMNS)}
                FROM {TASKS_TABLE}
                WHERE user_id = :user_id
                  AND google_event_id = :event_id
                LIMIT 1
                """
            ),
            {"user_id": user_id, "event_id": event_id},
        )).mappings().fetchone()
    return _normalize_task_row(row) if row else None


async def create_task(user_id: str, payload: dict) -> dict:
    now = _now_iso()
    record = {
        "id": payload.get("id") or _new_id(),
        "user_id": user_id,
        "title": payload.get("title") or "",
        "description": payload.get("description"),
        "scheduled_date": _normalize_date_value(payload.get("scheduled_date")),
        "scheduled_start": _normalize_time_value(payload.get("scheduled_start")),
        "scheduled_end": _normalize_time_value(payload.get("scheduled_end")),
        "is_all_day": int(bool(payload.get("is_all_day", 0))),
        "is_private": int(bool(payload.get("is_private", 0))),
        "status": payload.get("status") or "pending",
        "source": payload.get("source") or "local",
        "google_calendar_id": payload.get("google_calendar_id"),
        "google_event_id": payload.get("google_event_id"),
        "last_synced_at": payload.get("last_synced_at"),
        "created_at": now,
        "updated_at": now,
    }
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {TASKS_TABLE} ({', '.join(TASK_COLUMNS)})
                VALUES ({', '.join(f':{col}' for col in TASK_COLUMNS)})
                """
            ),
            record,
        )
        await session.commit()
    return record


async def update_task(user_id: str, task_id: str, patch: dict) -> dict | None:
    allowed = {
        "title",
        "description",
        "scheduled_date",
        "scheduled_start",
        "scheduled_end",
        "is_all_day",
        "is_private",
        "status",
        "google_calendar_id",
        "google_event_id",
        "last_synced_at",
    }
    updates = []
    params = {"id": task_id, "user_id": user_id}
    for key, value in patch.items():
        if key not in allowed:
            continue
        updates.append(f"{key} = :{key}")
        if key in {"scheduled_start", "scheduled_end"}:
            params[key] = _normalize_time_value(value)
        elif key == "scheduled_date":
            params[key] = _normalize_date_value(value)
        elif key in {"is_all_day", "is_private"}:
            params[key] = int(bool(value))
        else:
            params[key] = value
    if not updates:
        return await get_task(user_id, task_id)
    updates.append("updated_at = :updated_at")
    params["updated_at"] = _now_iso()
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"UPDATE {TASKS_TABLE} SET {', '.join(updates)} WHERE id = :id AND user_id = :user_id"),
            params,
        )
        await session.commit()
    return await get_task(user_id, task_id)


async def attach_event_to_task(user_id: str, task_id: str, calendar_id: str, event_id: str, synced_at: str) -> bool:
    """Link an event to a task that does not hold one yet."""
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        result = await session.execute(
            sql_text(
                f"""
                UPDATE {TASKS_TABLE}
                SET google_calendar_id = :calendar_id,
                    google_event_id = :event_id,
                    last_synced_at = :synced_at
                WHERE id = :id AND user_id = :user_id AND google_event_id IS NULL
                """
            ),
            {"id": task_id, "user_id": user_id, "calendar_id": calendar_id, "event_id": event_id, "synced_at": synced_at},
        )
        await session.commit()
    return bool(result.rowcount)


async def upsert_task_from_event(user_id: str, calendar_id: str, event_id: str, fields: dict, synced_at: str) -> dict:
    now = _now_iso()
    record = {
        "id": _new_id(),
        "user_id": user_id,
        "title": fields.get("title") or "",
        "description": fields.get("description"),
        "scheduled_date": _normalize_date_value(fields.get("scheduled_date")),
        "scheduled_start": _normalize_time_value(fields.get("scheduled_start")),
        "scheduled_end": _normalize_time_value(fields.get("scheduled_end")),
        "is_all_day": int(bool(fields.get("is_all_day"))),
        "is_private": 0,
        "status": "pending",
        "source": "google",
        "google_calendar_id": calendar_id,
        "google_event_id": event_id,
        "last_synced_at": synced_at,
        "created_at": now,
        "updated_at": now,
    }
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {TASKS_TABLE} ({', '.join(TASK_COLUMNS)})
                VALUES ({', '.join(f':{col}' for col in TASK_COLUMNS)})
                ON CONFLICT(user_id, google_event_id) DO UPDATE SET
                    title = EXCLUDED.title,
                    description = EXCLUDED.description,
                    scheduled_date = EXCLUDED.scheduled_date,
                    scheduled_start = EXCLUDED.scheduled_start,
                    scheduled_end = EXCLUDED.scheduled_end,
                    is_all_day = EXCLUDED.is_all_day,
                    google_calendar_id = EXCLUDED.google_calendar_id,
                    last_synced_at = EXCLUDED.last_synced_at,
                    updated_at = EXCLUDED.updated_at
                """
            ),
            record,
        )
        await session.commit()
    return await get_task_by_event_id(user_id, event_id) or record


async def delete_task(user_id: str, task_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {TASKS_TABLE} WHERE user_id = :user_id AND id = :task_id"),
            {"user_id": user_id, "task_id": task_id},
        )
        await session.commit()


# ---------------------------------------------------------------------------
# Routines
# ---------------------------------------------------------------------------


async def get_routine(user_id: str, routine_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(f"SELECT {', '.join(ROUTINE_COLUMNS)} FROM {ROUTINES_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": routine_id, "user_id": user_id},
        )).mappings().fetchone()
    return _normalize_routine_row(row) if row else None


async def list_routines(user_id: str) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"SELECT {', '.join(ROUTINE_COLUMNS)} FROM {ROUTINES_TABLE} WHERE user_id = :user_id ORDER BY created_at"
            ),
            {"user_id": user_id},
        )).mappings().all()
    return [_normalize_routine_row(row) for row in rows]


async def list_routines_needing_refresh(today_iso: str, user_id: str | None = None) -> list[dict]:
    """Routines whose materialized window ends today or earlier (or was never built)."""
    columns = ", ".join(f"r.{col}" for col in ROUTINE_COLUMNS)
    params = {"today": today_iso}
    user_filter = ""
    if user_id:
        user_filter = "AND r.user_id = :user_id"
        params["user_id"] = user_id
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {columns}
                FROM {ROUTINES_TABLE} r
                JOIN {CALENDAR_LINKS_TABLE} l ON l.user_id = r.user_id
                WHERE COALESCE(r.is_active, 0) = 1
                  AND COALESCE(r.is_private, 0) = 0
                  AND COALESCE(l.is_enabled, 0) = 1
                  AND l.auth_state = 'active'
                  AND l.sync_direction <> 'inbound_only'
                  AND (r.materialized_until IS NULL OR r.materialized_until <= :today)
                  {user_filter}
                ORDER BY r.user_id, r.created_at
                """
            ),
            params,
        )).mappings().all()
    return [_normalize_routine_row(row) for row in rows]


async def create_routine(user_id: str, payload: dict) -> dict:
    now = _now_iso()
    record = {
        "id": payload.get("id") or _new_id(),
        "user_id": user_id,
        "title": payload.get("title") or "",
        "description": payload.get("description"),
        "frequency": payload.get("frequency") or "daily",
        "days_of_week": _normalize_days_of_week(payload.get("days_of_week")),
        "scheduled_time": _normalize_time_value(payload.get("scheduled_time")),
        "duration_minutes": payload.get("duration_minutes"),
        "is_active": int(bool(payload.get("is_active", 1))),
        "is_private": int(bool(payload.get("is_private", 0))),
        "materialized_until": None,
        "created_at": now,
        "updated_at": now,
    }
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {ROUTINES_TABLE} ({', '.join(ROUTINE_COLUMNS)})
                VALUES ({', '.join(f':{col}' for col in ROUTINE_COLUMNS)})
                """
            ),
            record,
        )
        await session.commit()
    return await get_routine(user_id, record["id"]) or record


async def update_routine(user_id: str, routine_id: str, patch: dict) -> dict | None:
    allowed = {
        "title",
        "description",
        "frequency",
        "days_of_week",
        "scheduled_time",
        "duration_minutes",
        "is_active",
        "is_private",
        "materialized_until",
    }
    updates = []
    params = {"id": routine_id, "user_id": user_id}
    for key, value in patch.items():
        if key not in allowed:
            continue
        updates.append(f"{key} = :{key}")
        if key == "scheduled_time":
            params[key] = _normalize_time_value(value)
        elif key == "days_of_week":
            params[key] = _normalize_days_of_week(value)
        elif key in {"is_active", "is_private"}:
            params[key] = int(bool(value))
        elif key == "materialized_until":
            params[key] = _normalize_date_value(value)
        else:
            params[key] = value
    if not updates:
        return await get_routine(user_id, routine_id)
    updates.append("updated_at = :updated_at")
    params["updated_at"] = _now_iso()
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"UPDATE {ROUTINES_TABLE} SET {', '.join(updates)} WHERE id = :id AND user_id = :user_id"),
            params,
        )
        await session.commit()
    return await get_routine(user_id, routine_id)


async def update_routine_display(user_id: str, routine_id: str, title: str, description: str | None) -> bool:
    """Inbound edits may only touch what the user sees, never the schedule."""
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        result = await session.execute(
            sql_text(
                f"""
                UPDATE {ROUTINES_TABLE}
                SET title = :title, description = :description, updated_at = :updated_at
                WHERE id = :id AND user_id = :user_id
                  AND (title <> :title OR COALESCE(description, '') <> COALESCE(:description, ''))
                """
            ),
            {
                "id": routine_id,
                "user_id": user_id,
                "title": title,
                "description": description,
                "updated_at": _now_iso(),
            },
        )
        await session.commit()
    return bool(result.rowcount)


async def delete_routine(user_id: str, routine_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {ROUTINES_TABLE} WHERE user_id = :user_id AND id = :routine_id"),
            {"user_id": user_id, "routine_id": routine_id},
        )
        await session.commit()


# ---------------------------------------------------------------------------
# Routine event records (ledger)
# ---------------------------------------------------------------------------


async def list_routine_events(routine_id: str, from_date: str | None = None) -> list[dict]:
    params = {"routine_id": routine_id}
    date_filter = ""
    if from_date:
        date_filter = "AND occurrence_date >= :from_date"
        params["from_date"] = from_date
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT routine_id, occurrence_date, user_id, google_calendar_id, google_event_id,
                       created_at, updated_at
                FROM {ROUTINE_EVENTS_TABLE}
                WHERE routine_id = :routine_id
                  {date_filter}
                ORDER BY occurrence_date
                """
            ),
            params,
        )).mappings().all()
    return [_normalize_row(row) for row in rows]


async def get_routine_event_by_event_id(user_id: str, event_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"""
                SELECT routine_id, occurrence_date, user_id, google_calendar_id, google_event_id
                FROM {ROUTINE_EVENTS_TABLE}
                WHERE user_id = :user_id AND google_event_id = :event_id
                LIMIT 1
                """
            ),
            {"user_id": user_id, "event_id": event_id},
        )).mappings().fetchone()
    return _normalize_row(row) if row else None


async def upsert_routine_event(
    user_id: str,
    routine_id: str,
    occurrence_date: str,
    calendar_id: str,
    event_id: str,
) -> None:
    now = _now_iso()
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {ROUTINE_EVENTS_TABLE}
                    (routine_id, occurrence_date, user_id, google_calendar_id, google_event_id, created_at, updated_at)
                VALUES
                    (:routine_id, :occurrence_date, :user_id, :calendar_id, :event_id, :now, :now)
                ON CONFLICT(routine_id, occurrence_date) DO UPDATE SET
                    google_calendar_id = EXCLUDED.google_calendar_id,
                    google_event_id = EXCLUDED.google_event_id,
                    updated_at = EXCLUDED.updated_at
                """
            ),
            {
                "routine_id": routine_id,
                "occurrence_date": occurrence_date,
                "user_id": user_id,
                "calendar_id": calendar_id,
                "event_id": event_id,
                "now": now,
            },
        )
        await session.commit()


async def delete_routine_event(routine_id: str, occurrence_date: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"DELETE FROM {ROUTINE_EVENTS_TABLE} WHERE routine_id = :routine_id AND occurrence_date = :occurrence_date"
            ),
            {"routine_id": routine_id, "occurrence_date": occurrence_date},
        )
        await session.commit()


async def delete_routine_events_by_event_id(user_id: str, event_id: str) -> int:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        result = await session.execute(
            sql_text(f"DELETE FROM {ROUTINE_EVENTS_TABLE} WHERE user_id = :user_id AND google_event_id = :event_id"),
            {"user_id": user_id, "event_id": event_id},
        )
        await session.commit()
    return int(result.rowcount or 0)


async def delete_routine_events(routine_id: str) -> None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(f"DELETE FROM {ROUTINE_EVENTS_TABLE} WHERE routine_id = :routine_id"),
            {"routine_id": routine_id},
        )
        await session.commit()


async def finalize_routine_window(user_id: str, routine_id: str, prune_before: str, window_end: str | None) -> None:
    """Drop ledger rows for past occurrences and advance the window in one transaction."""
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                sql_text(
                    f"DELETE FROM {ROUTINE_EVENTS_TABLE} WHERE routine_id = :routine_id AND occurrence_date < :prune_before"
                ),
                {"routine_id": routine_id, "prune_before": prune_before},
            )
            await session.execute(
                sql_text(
                    f"""
                    UPDATE {ROUTINES_TABLE}
                    SET materialized_until = :window_end
                    WHERE id = :id AND user_id = :user_id
                    """
                ),
                {"id": routine_id, "user_id": user_id, "window_end": window_end},
            )


# ---------------------------------------------------------------------------
# Outbox (durable per-entity sync status)
# ---------------------------------------------------------------------------


async def enqueue_outbox(user_id: str, entity_type: str, entity_id: str, action: str, payload: dict | None = None) -> None:
    session_factory = get_sessionmaker()
    now = _now_iso()
    row = {
        "id": _new_id(),
        "user_id": user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "payload_json": json.dumps(payload or {}, ensure_ascii=False, default=str),
        "now": now,
    }
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {SYNC_OUTBOX_TABLE}
                (id, user_id, entity_type, entity_id, action, payload_json, status, attempts,
                 next_retry_at, last_error, warning, created_at, updated_at)
                VALUES (:id, :user_id, :entity_type, :entity_id, :action, :payload_json, 'pending', 0,
                        NULL, NULL, NULL, :now, :now)
                ON CONFLICT(user_id, entity_type, entity_id) DO UPDATE SET
                    action = EXCLUDED.action,
                    payload_json = EXCLUDED.payload_json,
                    status = 'pending',
                    attempts = 0,
                    next_retry_at = NULL,
                    last_error = NULL,
                    warning = NULL,
                    updated_at = EXCLUDED.updated_at
                """
            ),
            row,
        )
        await session.commit()


async def get_outbox_entry(user_id: str, entity_type: str, entity_id: str) -> dict | None:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        row = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(OUTBOX_COLUMNS)} FROM {SYNC_OUTBOX_TABLE}
                WHERE user_id = :user_id AND entity_type = :entity_type AND entity_id = :entity_id
                """
            ),
            {"user_id": user_id, "entity_type": entity_type, "entity_id": entity_id},
        )).mappings().fetchone()
    return dict(row) if row else None


async def claim_pending_outbox(limit: int = 25) -> list[dict]:
    session_factory = get_sessionmaker()
    now = _now_iso()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT {', '.join(OUTBOX_COLUMNS)}
                FROM {SYNC_OUTBOX_TABLE}
                WHERE status IN ('pending', 'retrying')
                  AND (next_retry_at IS NULL OR next_retry_at <= :now)
                ORDER BY created_at ASC
                LIMIT :limit
                """
            ),
            {"now": now, "limit": limit},
        )).mappings().all()
        claimed = []
        for row in rows:
            result = await session.execute(
                sql_text(
                    f"""
                    UPDATE {SYNC_OUTBOX_TABLE}
                    SET status = 'in_flight', updated_at = :updated_at
                    WHERE id = :id AND status IN ('pending', 'retrying')
                    """
                ),
                {"id": row["id"], "updated_at": now},
            )
            if result.rowcount:
                claimed.append(dict(row))
        await session.commit()
    return claimed


async def mark_outbox_status(
    outbox_id: str,
    status: str,
    error: str | None = None,
    warning: str | None = None,
    attempts: int | None = None,
    next_retry_at: str | None = None,
) -> None:
    """Settle an in-flight row; rows re-enqueued meanwhile stay pending."""
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        await session.execute(
            sql_text(
                f"""
                UPDATE {SYNC_OUTBOX_TABLE}
                SET status = :status,
                    attempts = COALESCE(:attempts, attempts),
                    next_retry_at = :next_retry_at,
                    last_error = :last_error,
                    warning = :warning,
                    updated_at = :updated_at
                WHERE id = :id AND status = 'in_flight'
                """
            ),
            {
                "id": outbox_id,
                "status": status,
                "attempts": attempts,
                "next_retry_at": next_retry_at,
                "last_error": error[:500] if error else None,
                "warning": warning[:500] if warning else None,
                "updated_at": _now_iso(),
            },
        )
        await session.commit()


async def requeue_outbox(user_id: str | None, statuses: tuple[str, ...]) -> int:
    params: dict = {"updated_at": _now_iso()}
    placeholders = []
    for idx, status in enumerate(statuses):
        params[f"s{idx}"] = status
        placeholders.append(f":s{idx}")
    user_filter = ""
    if user_id is not None:
        user_filter = "AND user_id = :user_id"
        params["user_id"] = user_id
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        result = await session.execute(
            sql_text(
                f"""
                UPDATE {SYNC_OUTBOX_TABLE}
                SET status = 'pending', attempts = 0, next_retry_at = NULL, updated_at = :updated_at
                WHERE status IN ({', '.join(placeholders)}) {user_filter}
                """
            ),
            params,
        )
        await session.commit()
    return int(result.rowcount or 0)


async def count_outbox_by_status(user_id: str) -> dict[str, int]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"SELECT status, COUNT(*) AS total FROM {SYNC_OUTBOX_TABLE} WHERE user_id = :user_id GROUP BY status"
            ),
            {"user_id": user_id},
        )).mappings().all()
    return {str(row["status"]): int(row["total"] or 0) for row in rows}


async def list_outbox_warnings(user_id: str, limit: int = 50) -> list[dict]:
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT entity_type, entity_id, status, warning, last_error, updated_at
                FROM {SYNC_OUTBOX_TABLE}
                WHERE user_id = :user_id AND (status IN ('skipped', 'paused', 'failed'))
                ORDER BY updated_at DESC
                LIMIT :limit
                """
            ),
            {"user_id": user_id, "limit": limit},
        )).mappings().all()
    return [dict(row) for row in rows]
