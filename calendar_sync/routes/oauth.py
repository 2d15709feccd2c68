from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from calendar_sync.auth import require_user_id
from calendar_sync.routes.calendar import adopt_calendar_timezone
from calendar_sync.services import google_oauth, outbound_dispatcher, token_manager
from calendar_sync.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/v1/oauth/google/connect")
async def google_connect(user_id: str = Depends(require_user_id)):
    settings = get_settings()
    if not settings.calendar_client_id:
        raise HTTPException(status_code=400, detail="Calendar OAuth not configured")
    return {"url": google_oauth.build_connect_url(user_id)}


@router.get("/v1/oauth/google/callback")
async def google_callback(code: str, state: str):
    user_id = google_oauth.decode_state(state) if state else None
    if not user_id:
        logger.warning("Rejected OAuth callback with an invalid or expired state")
        raise HTTPException(status_code=400, detail="Invalid OAuth state")
    await token_manager.exchange_code_for_tokens(user_id, code)
    await adopt_calendar_timezone(user_id)
    queued = await outbound_dispatcher.resume_after_reconnect(user_id)
    logger.info("Google Calendar connected for user %s (%d changes queued)", user_id, queued)
    return {"ok": True}
