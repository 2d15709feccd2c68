from __future__ import annotations

import logging
from datetime import date, datetime

from calendar_sync import repositories
from calendar_sync.services import event_mapper, outbound_dispatcher
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

QUEUED_STATUSES = {"pending", "retrying", "in_flight"}


def _today_for(timezone_name: str | None) -> date:
    return datetime.now(event_mapper.resolve_timezone(timezone_name or get_settings().calendar_timezone)).date()


async def _queue_refresh(routines: list[dict], today: date | None) -> int:
    queued = 0
    for routine in routines:
        user_id = routine["user_id"]
        entry = await repositories.get_outbox_entry(user_id, outbound_dispatcher.ENTITY_ROUTINE, routine["id"])
        if entry and entry.get("status") in QUEUED_STATUSES:
            # A queued edit will rebuild the window anyway.
            continue
        snapshot = {"as_of": today.isoformat()} if today else None
        await outbound_dispatcher.sync_routine_outbound(user_id, routine["id"], "create", snapshot)
        queued += 1
    return queued


async def refresh_due_routines(today: date | None = None) -> int:
    """Queue every routine whose rolling window is about to run out.

    Without ``today`` each user's windows are measured against the date in
    their calendar's timezone.
    """
    if today is not None:
        routines = await repositories.list_routines_needing_refresh(today.isoformat())
    else:
        routines = []
        for link in await repositories.list_calendar_links(enabled_only=True):
            local_today = _today_for(link.get("timezone"))
            routines.extend(
                await repositories.list_routines_needing_refresh(local_today.isoformat(), user_id=link["user_id"])
            )
    queued = await _queue_refresh(routines, today)
    if queued:
        logger.info("Queued %d routines for window refresh", queued)
    return queued


async def refresh_user_routines(user_id: str, today: date | None = None) -> int:
    link = await repositories.get_calendar_link(user_id)
    if not link:
        return 0
    as_of = today or _today_for(link.get("timezone"))
    routines = await repositories.list_routines_needing_refresh(as_of.isoformat(), user_id=user_id)
    return await _queue_refresh(routines, today)
