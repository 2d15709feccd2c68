from __future__ import annotations

import logging

from calendar_sync import repositories
from calendar_sync.errors import AuthExpired, RateLimited
from calendar_sync.schemas import SyncStatusResponse

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
NEEDS_ATTENTION = "needs_attention"

LAST_SYNC_FAILED = "Last sync failed"

UNSETTLED_STATUSES = ("retrying", "failed", "blocked")


async def set_health(user_id: str, health: str, error: str | None = None) -> None:
    await repositories.update_calendar_link(user_id, {"sync_health": health, "last_error": error})


async def record_failure(user_id: str, exc: Exception) -> str:
    """Store the health status that ``exc`` implies and return it."""
    if isinstance(exc, RateLimited):
        health, message = DEGRADED, f"Rate limited by Google Calendar; retrying in {exc.retry_after:.0f}s"
    elif isinstance(exc, AuthExpired):
        health, message = NEEDS_ATTENTION, str(exc)
    else:
        health, message = NEEDS_ATTENTION, f"{LAST_SYNC_FAILED}: {exc}"
    logger.info("Sync health for user %s is now %s (%s)", user_id, health, message)
    await set_health(user_id, health, message)
    return health


async def mark_healthy_if_clear(user_id: str, patch: dict | None = None) -> None:
    """Record a successful pass; the link only turns healthy when nothing is still unsettled."""
    link = await repositories.get_calendar_link(user_id)
    if not link:
        return
    update = dict(patch or {})
    counts = await repositories.count_outbox_by_status(user_id)
    if link.get("auth_state") == "active" and not any(counts.get(status) for status in UNSETTLED_STATUSES):
        update["sync_health"] = HEALTHY
        update["last_error"] = None
    if update:
        await repositories.update_calendar_link(user_id, update)


async def get_status(user_id: str) -> SyncStatusResponse:
    link = await repositories.get_calendar_link(user_id)
    if not link:
        return SyncStatusResponse(connected=False)
    counts = await repositories.count_outbox_by_status(user_id)
    return SyncStatusResponse(
        connected=link.get("auth_state") == "active",
        sync_health=link.get("sync_health") or HEALTHY,
        last_error=link.get("last_error"),
        last_inbound_sync_at=link.get("last_inbound_sync_at"),
        last_outbound_sync_at=link.get("last_outbound_sync_at"),
        pending=sum(counts.get(status, 0) for status in ("pending", "in_flight", "retrying")),
        failed=counts.get("failed", 0) + counts.get("blocked", 0),
        warnings=await repositories.list_outbox_warnings(user_id),
    )
