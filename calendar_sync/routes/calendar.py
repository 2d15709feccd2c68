from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from calendar_sync import repositories
from calendar_sync.auth import require_user_id
from calendar_sync.errors import CalendarSyncError, StaleCalendarLink
from calendar_sync.schemas import CalendarConfigPatch, CalendarConfigResponse, SaveTokensRequest
from calendar_sync.services import (
    google_calendar_service,
    outbound_dispatcher,
    routine_materializer,
    token_manager,
)
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _config_response(link: dict | None) -> CalendarConfigResponse:
    if not link:
        return CalendarConfigResponse(is_connected=False)
    sync_times = [value for value in (link.get("last_inbound_sync_at"), link.get("last_outbound_sync_at")) if value]
    return CalendarConfigResponse(
        is_connected=link.get("auth_state") == token_manager.AUTH_STATE_ACTIVE,
        is_enabled=bool(link.get("is_enabled")),
        sync_direction=link.get("sync_direction") or "bidirectional",
        calendar_id=link.get("calendar_id") or get_settings().default_calendar_id,
        timezone=link.get("timezone"),
        google_email=link.get("google_email"),
        sync_health=link.get("sync_health") or "healthy",
        last_error=link.get("last_error"),
        last_sync_at=max(sync_times) if sync_times else None,
        version=link.get("version"),
    )


async def adopt_calendar_timezone(user_id: str) -> None:
    """Use the calendar's own timezone once connected; keep the current one on failure."""
    link = await repositories.get_calendar_link(user_id)
    if not link:
        return
    try:
        tz_name = await google_calendar_service.get_calendar_timezone(
            user_id, link.get("calendar_id") or get_settings().default_calendar_id
        )
    except CalendarSyncError as exc:
        logger.warning("Could not read calendar timezone for user %s: %s", user_id, exc)
        return
    if tz_name and tz_name != link.get("timezone"):
        await repositories.update_calendar_link(user_id, {"timezone": tz_name})


@router.get("/v1/calendar/config")
async def get_config(user_id: str = Depends(require_user_id)):
    return _config_response(await repositories.get_calendar_link(user_id))


@router.patch("/v1/calendar/config")
async def patch_config(payload: CalendarConfigPatch, user_id: str = Depends(require_user_id)):
    link = await repositories.get_calendar_link(user_id)
    if not link:
        raise HTTPException(status_code=404, detail="Google Calendar is not connected")
    patch = payload.model_dump(exclude_unset=True)
    expected_version = patch.pop("version", None)
    applied = await repositories.update_calendar_link(user_id, patch, expected_version=expected_version)
    if not applied:
        raise StaleCalendarLink(f"Calendar settings changed since version {expected_version}")
    updated = await repositories.get_calendar_link(user_id)
    if updated and updated.get("is_enabled") and (
        not link.get("is_enabled") or link.get("sync_direction") != updated.get("sync_direction")
    ):
        await outbound_dispatcher.resume_after_reconnect(user_id)
    return _config_response(updated)


@router.post("/v1/calendar/tokens")
async def save_tokens(payload: SaveTokensRequest, user_id: str = Depends(require_user_id)):
    await token_manager.save_tokens(
        user_id,
        payload.access_token,
        payload.refresh_token,
        payload.expires_in,
        google_email=payload.google_email,
    )
    await adopt_calendar_timezone(user_id)
    await outbound_dispatcher.resume_after_reconnect(user_id)
    return _config_response(await repositories.get_calendar_link(user_id))


@router.delete("/v1/calendar/disconnect")
async def disconnect(user_id: str = Depends(require_user_id)):
    await token_manager.disconnect(user_id)
    return {"ok": True}


@router.post("/v1/calendar/routines/refresh")
async def refresh_routines(user_id: str = Depends(require_user_id)):
    queued = await routine_materializer.refresh_user_routines(user_id)
    drained = await outbound_dispatcher.process_outbox_once()
    return {"ok": True, "queued": queued, "outbox_drained": drained}
