"""Push local task and routine changes to Google Calendar.

Callers only enqueue: ``sync_task_outbound`` / ``sync_routine_outbound`` write a
coalesced row to the outbox (one row per entity) and wake the worker. The
worker drains the outbox with ``process_outbox_once``, which maps each entity,
talks to the provider and settles the row as ``synced``, ``retrying``,
``failed``, ``blocked``, ``paused`` or ``skipped``. Rows paused while
sync is off are picked up again by ``resume_after_reconnect``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, datetime, timedelta, timezone

from calendar_sync import repositories
from calendar_sync.errors import (
    AuthExpired,
    EventNotFound,
    MappingError,
    ProviderError,
    RateLimited,
    TransientProviderError,
)
from calendar_sync.services import event_mapper, google_calendar_service, sync_health
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

ENTITY_TASK = "task"
ENTITY_ROUTINE = "routine"

ACTION_UPSERT = "upsert"
ACTION_DELETE = "delete"

CHANGE_KINDS = {"create": ACTION_UPSERT, "update": ACTION_UPSERT, "delete": ACTION_DELETE}

_wakeup: asyncio.Event | None = None


def wakeup_event() -> asyncio.Event:
    global _wakeup
    if _wakeup is None:
        _wakeup = asyncio.Event()
    return _wakeup


def notify_worker() -> None:
    wakeup_event().set()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _action_for(change_kind: str) -> str:
    try:
        return CHANGE_KINDS[change_kind]
    except KeyError:
        raise ValueError(f"Unknown change kind: {change_kind!r}") from None


def _link_timezone(link: dict) -> str:
    return link.get("timezone") or get_settings().calendar_timezone


def _link_calendar(link: dict) -> str:
    return link.get("calendar_id") or get_settings().default_calendar_id


def _link_today(link: dict) -> date:
    return datetime.now(event_mapper.resolve_timezone(_link_timezone(link))).date()


def _synced_at(event: dict) -> str:
    updated = event.get("updated") if event else None
    if updated:
        try:
            return datetime.fromisoformat(str(updated).replace("Z", "+00:00")).astimezone(timezone.utc).isoformat()
        except ValueError:
            logger.debug("Unparseable provider timestamp %r", updated)
    return _now().isoformat()


def _skip_reason(link: dict | None) -> str | None:
    if not link:
        return "Google Calendar is not connected"
    if not link.get("is_enabled"):
        return "Calendar sync is disabled"
    if link.get("sync_direction") == "inbound_only":
        return "Calendar sync is inbound only"
    return None


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def sync_task_outbound(user_id: str, task_id: str, change_kind: str, snapshot: dict | None = None) -> None:
    """Queue a task change; ``snapshot`` carries the event ids of a deleted task."""
    action = _action_for(change_kind)
    payload = {}
    if action == ACTION_DELETE and snapshot:
        payload = {
            "google_calendar_id": snapshot.get("google_calendar_id"),
            "google_event_id": snapshot.get("google_event_id"),
        }
    await repositories.enqueue_outbox(user_id, ENTITY_TASK, task_id, action, payload)
    notify_worker()


async def sync_routine_outbound(user_id: str, routine_id: str, change_kind: str, snapshot: dict | None = None) -> None:
    action = _action_for(change_kind)
    payload = {"refresh_existing": change_kind == "update"} if action == ACTION_UPSERT else {}
    if snapshot and snapshot.get("as_of"):
        payload["as_of"] = snapshot["as_of"]
    await repositories.enqueue_outbox(user_id, ENTITY_ROUTINE, routine_id, action, payload)
    notify_worker()


async def retry_failed(user_id: str) -> int:
    requeued = await repositories.requeue_outbox(user_id, ("failed",))
    if requeued:
        notify_worker()
    return requeued


async def resume_after_reconnect(user_id: str) -> int:
    """Release blocked and paused rows and queue everything that never reached the calendar."""
    link = await repositories.get_calendar_link(user_id)
    if _skip_reason(link) is not None:
        return await repositories.requeue_outbox(user_id, ("blocked",))
    queued = await repositories.requeue_outbox(user_id, ("blocked", "paused"))
    for task in await repositories.list_tasks_pending_outbound(user_id):
        await repositories.enqueue_outbox(user_id, ENTITY_TASK, task["id"], ACTION_UPSERT, {})
        queued += 1
    today = _link_today(link).isoformat()
    for routine in await repositories.list_routines_needing_refresh(today, user_id=user_id):
        await repositories.enqueue_outbox(user_id, ENTITY_ROUTINE, routine["id"], ACTION_UPSERT, {})
        queued += 1
    if queued:
        notify_worker()
    return queued


async def recover_in_flight() -> int:
    """Rows left in flight by a crashed worker go back to pending."""
    recovered = await repositories.requeue_outbox(None, ("in_flight",))
    if recovered:
        logger.warning("Recovered %d in-flight outbox rows", recovered)
    return recovered


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------


async def _handle_task_upsert(row: dict, link: dict) -> None:
    user_id = row["user_id"]
    task_id = row["entity_id"]
    task = await repositories.get_task(user_id, task_id)
    if not task:
        logger.debug("Task %s is gone; nothing to push", task_id)
        return

    calendar_id = task.get("google_calendar_id") or _link_calendar(link)
    event_id = task.get("google_event_id")

    if task.get("is_private"):
        if event_id:
            await google_calendar_service.delete_event(user_id, calendar_id, event_id)
            await repositories.update_task(
                user_id,
                task_id,
                {"google_event_id": None, "google_calendar_id": None, "last_synced_at": None},
            )
        return

    body = event_mapper.task_to_event(task, _link_timezone(link))
    if event_id:
        try:
            event = await google_calendar_service.update_event(user_id, calendar_id, event_id, body)
            await repositories.update_task(user_id, task_id, {"last_synced_at": _synced_at(event)})
            return
        except EventNotFound:
            logger.info("Event %s for task %s vanished; recreating", event_id, task_id)
            await repositories.update_task(user_id, task_id, {"google_event_id": None, "google_calendar_id": None})
            calendar_id = _link_calendar(link)

    event = await google_calendar_service.create_event(user_id, calendar_id, body)
    attached = await repositories.attach_event_to_task(user_id, task_id, calendar_id, event["id"], _synced_at(event))
    if attached:
        return
    current = await repositories.get_task(user_id, task_id)
    if current is None or current.get("google_event_id") != event["id"]:
        # Task was deleted or linked elsewhere while the create was in flight.
        await google_calendar_service.delete_event(user_id, calendar_id, event["id"])


async def _handle_task_delete(row: dict, link: dict) -> None:
    payload = json.loads(row.get("payload_json") or "{}")
    event_id = payload.get("google_event_id")
    if not event_id:
        return
    calendar_id = payload.get("google_calendar_id") or _link_calendar(link)
    await google_calendar_service.delete_event(row["user_id"], calendar_id, event_id)


# ---------------------------------------------------------------------------
# Routine handlers
# ---------------------------------------------------------------------------


async def _delete_routine_records(user_id: str, routine_id: str, records: list[dict]) -> None:
    for record in records:
        await google_calendar_service.delete_event(user_id, record["google_calendar_id"], record["google_event_id"])
        await repositories.delete_routine_event(routine_id, record["occurrence_date"])


async def materialize_routine(
    user_id: str,
    routine_id: str,
    link: dict,
    today: date | None = None,
    refresh_existing: bool = False,
) -> int:
    """Bring the routine's events for ``[today, today + W)`` in line with its schedule.

    Returns the number of events created.
    """
    routine = await repositories.get_routine(user_id, routine_id)
    if not routine:
        return 0
    today = today or _link_today(link)
    today_iso = today.isoformat()
    window_days = max(1, get_settings().routine_window_days)
    records = {record["occurrence_date"]: record for record in await repositories.list_routine_events(routine_id)}
    upcoming = [record for key, record in records.items() if key >= today_iso]

    if not routine.get("is_active") or routine.get("is_private"):
        await _delete_routine_records(user_id, routine_id, upcoming)
        await repositories.finalize_routine_window(user_id, routine_id, today_iso, None)
        return 0

    timezone_name = _link_timezone(link)
    calendar_id = _link_calendar(link)
    wanted = {day.isoformat(): day for day in event_mapper.routine_occurrence_dates(routine, today, window_days)}

    stale = [record for record in upcoming if record["occurrence_date"] not in wanted]
    await _delete_routine_records(user_id, routine_id, stale)

    created = 0
    for key, day in wanted.items():
        body = event_mapper.routine_to_event(routine, day, timezone_name)
        record = records.get(key)
        if record:
            if not refresh_existing:
                continue
            try:
                await google_calendar_service.update_event(
                    user_id, record["google_calendar_id"], record["google_event_id"], body
                )
                continue
            except EventNotFound:
                logger.info("Routine %s event for %s vanished; recreating", routine_id, key)
        event = await google_calendar_service.create_event(user_id, calendar_id, body)
        await repositories.upsert_routine_event(user_id, routine_id, key, calendar_id, event["id"])
        created += 1

    window_end = (today + timedelta(days=window_days - 1)).isoformat()
    await repositories.finalize_routine_window(user_id, routine_id, today_iso, window_end)
    logger.debug("Routine %s materialized through %s (%d created)", routine_id, window_end, created)
    return created


async def _handle_routine_upsert(row: dict, link: dict) -> None:
    payload = json.loads(row.get("payload_json") or "{}")
    as_of = date.fromisoformat(payload["as_of"]) if payload.get("as_of") else None
    await materialize_routine(
        row["user_id"],
        row["entity_id"],
        link,
        today=as_of,
        refresh_existing=bool(payload.get("refresh_existing")),
    )


async def _handle_routine_delete(row: dict, link: dict) -> None:
    routine_id = row["entity_id"]
    records = await repositories.list_routine_events(routine_id)
    await _delete_routine_records(row["user_id"], routine_id, records)
    await repositories.delete_routine_events(routine_id)


HANDLERS = {
    (ENTITY_TASK, ACTION_UPSERT): _handle_task_upsert,
    (ENTITY_TASK, ACTION_DELETE): _handle_task_delete,
    (ENTITY_ROUTINE, ACTION_UPSERT): _handle_routine_upsert,
    (ENTITY_ROUTINE, ACTION_DELETE): _handle_routine_delete,
}


# ---------------------------------------------------------------------------
# Worker loop body
# ---------------------------------------------------------------------------


async def _settle_retry(row: dict, exc: Exception, delay: float) -> None:
    user_id = row["user_id"]
    attempts = int(row.get("attempts") or 0) + 1
    if attempts >= get_settings().outbox_max_attempts and not isinstance(exc, RateLimited):
        logger.error("Giving up on %s %s after %d attempts: %s", row["entity_type"], row["entity_id"], attempts, exc)
        await repositories.mark_outbox_status(row["id"], "failed", error=str(exc), attempts=attempts)
        await sync_health.record_failure(user_id, exc)
        return
    next_retry_at = (_now() + timedelta(seconds=delay)).isoformat()
    await repositories.mark_outbox_status(
        row["id"], "retrying", error=str(exc), attempts=attempts, next_retry_at=next_retry_at
    )
    if isinstance(exc, RateLimited):
        await sync_health.record_failure(user_id, exc)


async def _dispatch_row(row: dict) -> None:
    user_id = row["user_id"]
    link = await repositories.get_calendar_link(user_id)
    if link and link.get("auth_state") != "active":
        await repositories.mark_outbox_status(row["id"], "blocked", error="Google Calendar access was revoked")
        return
    reason = _skip_reason(link)
    if reason:
        await repositories.mark_outbox_status(row["id"], "paused", warning=reason)
        return

    handler = HANDLERS.get((row["entity_type"], row["action"]))
    if handler is None:
        await repositories.mark_outbox_status(
            row["id"], "skipped", warning=f"Unsupported outbox entry {row['entity_type']}/{row['action']}"
        )
        return

    try:
        await handler(row, link)
    except MappingError as exc:
        logger.info("Skipping %s %s: %s", row["entity_type"], row["entity_id"], exc)
        await repositories.mark_outbox_status(row["id"], "skipped", warning=str(exc))
        return
    except AuthExpired as exc:
        logger.warning("Outbound sync blocked for user %s: %s", user_id, exc)
        await repositories.mark_outbox_status(row["id"], "blocked", error=str(exc))
        await sync_health.record_failure(user_id, exc)
        return
    except RateLimited as exc:
        await _settle_retry(row, exc, exc.retry_after)
        return
    except TransientProviderError as exc:
        attempts = int(row.get("attempts") or 0) + 1
        await _settle_retry(row, exc, min(300, 2 ** min(attempts, 8)))
        return
    except ProviderError as exc:
        logger.error("Google rejected %s %s: %s", row["entity_type"], row["entity_id"], exc)
        await repositories.mark_outbox_status(row["id"], "failed", error=str(exc))
        await sync_health.record_failure(user_id, exc)
        return
    except Exception as exc:
        logger.exception("Outbound sync of %s %s crashed: %s", row["entity_type"], row["entity_id"], exc)
        attempts = int(row.get("attempts") or 0) + 1
        await _settle_retry(row, exc, min(300, 2 ** min(attempts, 8)))
        return

    await repositories.mark_outbox_status(row["id"], "synced")
    await sync_health.mark_healthy_if_clear(user_id, {"last_outbound_sync_at": _now().isoformat()})


async def process_outbox_once(limit: int | None = None) -> int:
    rows = await repositories.claim_pending_outbox(limit=limit or get_settings().outbox_batch_size)
    if not rows:
        return 0
    for row in rows:
        await _dispatch_row(row)
    return len(rows)
