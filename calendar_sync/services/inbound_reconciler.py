"""Pull provider events into local tasks.

A run lists ``[start of today, +INBOUND_HORIZON_DAYS)`` in the link timezone,
page by page, and applies each event on its own so an interrupted run keeps
what it already committed. Runs for the same user never overlap: a second
caller awaits the run already in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone

from calendar_sync import repositories
from calendar_sync.errors import (
    AuthExpired,
    ConflictResolved,
    MappingError,
    ProviderError,
    RateLimited,
    SyncCancelled,
    TransientProviderError,
)
from calendar_sync.schemas import ExternalEvent, SyncResult
from calendar_sync.services import event_mapper, google_calendar_service, sync_health
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

_inflight: dict[str, asyncio.Task] = {}


def _parse_ts(value) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


async def reconcile_inbound(
    user_id: str,
    cancel_event: asyncio.Event | None = None,
    now: datetime | None = None,
) -> SyncResult:
    running = _inflight.get(user_id)
    if running is not None and not running.done():
        logger.debug("Inbound sync for user %s already running; joining it", user_id)
        return await asyncio.shield(running)

    task = asyncio.ensure_future(_reconcile(user_id, cancel_event, now))
    _inflight[user_id] = task

    def _release(done: asyncio.Task) -> None:
        if _inflight.get(user_id) is done:
            _inflight.pop(user_id, None)

    task.add_done_callback(_release)
    return await asyncio.shield(task)


async def _fetch_page(user_id: str, calendar_id: str, time_min: str, time_max: str, page_token: str | None):
    settings = get_settings()
    max_attempts = max(1, settings.provider_max_retries)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await google_calendar_service.list_events(user_id, calendar_id, time_min, time_max, page_token)
        except (TransientProviderError, RateLimited) as exc:
            if attempt >= max_attempts:
                raise
            if isinstance(exc, RateLimited):
                delay = exc.retry_after
            else:
                delay = settings.provider_backoff_seconds * (2 ** (attempt - 1))
            logger.info("Listing events for user %s failed (%s); retrying in %.1fs", user_id, exc, delay)
            await asyncio.sleep(delay)


async def _reconcile(user_id: str, cancel_event: asyncio.Event | None, now: datetime | None) -> SyncResult:
    settings = get_settings()
    result = SyncResult()
    link = await repositories.get_calendar_link(user_id)
    if not link:
        raise AuthExpired(f"Google Calendar is not connected for user {user_id}")
    if not link.get("is_enabled") or link.get("sync_direction") == "outbound_only":
        logger.debug("Inbound sync disabled for user %s", user_id)
        return result

    now = now or datetime.now(timezone.utc)
    timezone_name = link.get("timezone") or settings.calendar_timezone
    tzinfo = event_mapper.resolve_timezone(timezone_name)
    window_start = datetime.combine(now.astimezone(tzinfo).date(), time.min, tzinfo=tzinfo)
    window_end = window_start + timedelta(days=settings.inbound_horizon_days)
    calendar_id = link.get("calendar_id") or settings.default_calendar_id

    def check_cancelled() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled(f"Inbound sync for user {user_id} was cancelled")

    page_token = None
    seen_tokens: set[str] = set()
    try:
        while True:
            check_cancelled()
            items, next_token = await _fetch_page(
                user_id, calendar_id, _rfc3339(window_start), _rfc3339(window_end), page_token
            )
            result.fetched += len(items)
            for raw in items:
                check_cancelled()
                await _apply_event(user_id, calendar_id, timezone_name, raw, now, result)
            if not next_token:
                break
            if next_token in seen_tokens:
                raise TransientProviderError(status_code=0, message="Event pagination did not advance")
            seen_tokens.add(next_token)
            page_token = next_token
    except SyncCancelled:
        result.cancelled = True
        logger.info("Inbound sync for user %s cancelled after %d events", user_id, result.fetched)
        return result
    except (AuthExpired, ProviderError) as exc:
        logger.warning("Inbound sync for user %s failed: %s", user_id, exc)
        await sync_health.record_failure(user_id, exc)
        raise

    result.last_sync_at = now.isoformat()
    await sync_health.mark_healthy_if_clear(user_id, {"last_inbound_sync_at": result.last_sync_at})
    logger.info(
        "Inbound sync for user %s: fetched=%d created=%d updated=%d deleted=%d skipped=%d",
        user_id,
        result.fetched,
        result.created,
        result.updated,
        result.deleted,
        result.skipped,
    )
    return result


async def _apply_event(
    user_id: str,
    calendar_id: str,
    timezone_name: str,
    raw: dict,
    now: datetime,
    result: SyncResult,
) -> None:
    event = ExternalEvent.from_google(raw)
    if not event.id:
        result.skipped += 1
        return

    # The ledger is authoritative for routine-generated events.
    record = await repositories.get_routine_event_by_event_id(user_id, event.id)
    if record:
        if event.is_cancelled:
            await repositories.delete_routine_event(record["routine_id"], record["occurrence_date"])
            result.routine_updates += 1
            return
        title = event_mapper.strip_routine_marker(event.title)
        if title and await repositories.update_routine_display(user_id, record["routine_id"], title, event.description):
            result.routine_updates += 1
        else:
            result.skipped += 1
        return

    # Cancelled events arrive stripped down to id and status.
    if event.is_cancelled:
        task = await repositories.get_task_by_event_id(user_id, event.id)
        await repositories.delete_routine_events_by_event_id(user_id, event.id)
        if task:
            await repositories.delete_task(user_id, task["id"])
            result.deleted += 1
        else:
            result.skipped += 1
        return

    if not event.title.strip() or event_mapper.is_self_authored_routine(event):
        result.skipped += 1
        return

    provider_updated = event_mapper.event_updated_at(event)
    task = await repositories.get_task_by_event_id(user_id, event.id)
    if task:
        await _apply_to_task(user_id, task, event, timezone_name, provider_updated, result)
        return

    linked_id = event_mapper.linked_task_id(event)
    if linked_id:
        # Outbound create still settling; the outbound side owns this pairing.
        attached = await repositories.attach_event_to_task(
            user_id, linked_id, calendar_id, event.id, (provider_updated or now).isoformat()
        )
        if attached:
            result.updated += 1
        else:
            result.skipped += 1
        return

    try:
        fields = event_mapper.event_to_task_fields(event, timezone_name)
    except MappingError as exc:
        logger.debug("Skipping event %s: %s", event.id, exc)
        result.skipped += 1
        return
    await repositories.upsert_task_from_event(
        user_id, calendar_id, event.id, fields, (provider_updated or now).isoformat()
    )
    result.created += 1


async def _apply_to_task(
    user_id: str,
    task: dict,
    event: ExternalEvent,
    timezone_name: str,
    provider_updated: datetime | None,
    result: SyncResult,
) -> None:
    if task.get("is_private"):
        result.skipped += 1
        return
    local_synced = _parse_ts(task.get("last_synced_at"))
    if provider_updated is None or (local_synced is not None and provider_updated <= local_synced):
        result.skipped += 1
        return
    try:
        fields = event_mapper.event_to_task_fields(event, timezone_name)
    except MappingError as exc:
        logger.debug("Skipping event %s: %s", event.id, exc)
        result.skipped += 1
        return

    if local_synced is not None:
        outcome = ConflictResolved(
            task_id=task["id"],
            event_id=event.id,
            local_synced_at=task.get("last_synced_at"),
            provider_updated_at=provider_updated.isoformat(),
        )
        logger.info("Provider copy wins for task %s: %s", task["id"], outcome)
        result.conflicts += 1

    await repositories.update_task(user_id, task["id"], {**fields, "last_synced_at": provider_updated.isoformat()})
    result.updated += 1
