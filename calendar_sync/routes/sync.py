from __future__ import annotations

from fastapi import APIRouter, Depends

from calendar_sync.auth import require_user_id
from calendar_sync.services import inbound_reconciler, outbound_dispatcher, sync_health

router = APIRouter()


@router.get("/v1/sync/status")
async def sync_status(user_id: str = Depends(require_user_id)):
    return await sync_health.get_status(user_id)


@router.post("/v1/sync/run")
async def run_sync_once(user_id: str = Depends(require_user_id)):
    requeued = await outbound_dispatcher.retry_failed(user_id)
    drained = await outbound_dispatcher.process_outbox_once()
    result = await inbound_reconciler.reconcile_inbound(user_id)
    return {"ok": True, "requeued": requeued, "outbox_drained": drained, "inbound": result}
