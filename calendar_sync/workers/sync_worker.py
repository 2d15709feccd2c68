from __future__ import annotations

import asyncio
import logging
import time

from calendar_sync import repositories
from calendar_sync.errors import CalendarSyncError
from calendar_sync.logging_config import configure_logging
from calendar_sync.services import inbound_reconciler, outbound_dispatcher, routine_materializer
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

_last_materialized: float | None = None
_last_inbound: float | None = None


def _due(last_run: float | None, interval: float, now: float) -> bool:
    return last_run is None or now - last_run >= interval


async def run_inbound_pass() -> int:
    synced = 0
    for link in await repositories.list_calendar_links(enabled_only=True):
        try:
            await inbound_reconciler.reconcile_inbound(link["user_id"])
            synced += 1
        except CalendarSyncError as exc:
            logger.warning("Periodic inbound sync failed for user %s: %s", link["user_id"], exc)
    return synced


async def run_periodic_pass() -> int:
    global _last_materialized, _last_inbound
    settings = get_settings()
    now = time.monotonic()
    if _due(_last_materialized, settings.materializer_interval_seconds, now):
        await routine_materializer.refresh_due_routines()
        _last_materialized = now
    drained = await outbound_dispatcher.process_outbox_once()
    if _due(_last_inbound, settings.inbound_sync_interval_seconds, now):
        await run_inbound_pass()
        _last_inbound = now
    return drained


async def run_forever() -> None:
    settings = get_settings()
    wakeup = outbound_dispatcher.wakeup_event()
    logger.info("Sync worker started")
    while True:
        wakeup.clear()
        try:
            drained = await run_periodic_pass()
        except Exception as exc:
            logger.exception("Sync worker pass failed: %s", exc)
            drained = 0
        if drained:
            continue
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=settings.outbox_poll_seconds)
        except asyncio.TimeoutError:
            pass


if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_forever())
