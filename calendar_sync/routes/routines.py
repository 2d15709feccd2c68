from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder

from calendar_sync import repositories
from calendar_sync.auth import require_user_id
from calendar_sync.schemas import RoutineCreate, RoutinePatch
from calendar_sync.services import outbound_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/v1/routines")
async def list_routines(user_id: str = Depends(require_user_id)):
    return {"items": jsonable_encoder(await repositories.list_routines(user_id))}


@router.post("/v1/routines")
async def create_routine(payload: RoutineCreate, user_id: str = Depends(require_user_id)):
    record = await repositories.create_routine(user_id, payload.model_dump())
    await outbound_dispatcher.sync_routine_outbound(user_id, record["id"], "create")
    return jsonable_encoder(record)


@router.patch("/v1/routines/{routine_id}")
async def patch_routine(routine_id: str, payload: RoutinePatch, user_id: str = Depends(require_user_id)):
    if not await repositories.get_routine(user_id, routine_id):
        raise HTTPException(status_code=404, detail="Routine not found")
    record = await repositories.update_routine(user_id, routine_id, payload.model_dump(exclude_unset=True))
    await outbound_dispatcher.sync_routine_outbound(user_id, routine_id, "update")
    return jsonable_encoder(record)


@router.delete("/v1/routines/{routine_id}")
async def delete_routine(routine_id: str, user_id: str = Depends(require_user_id)):
    if not await repositories.get_routine(user_id, routine_id):
        raise HTTPException(status_code=404, detail="Routine not found")
    await repositories.delete_routine(user_id, routine_id)
    await outbound_dispatcher.sync_routine_outbound(user_id, routine_id, "delete")
    logger.info("Routine %s deleted for user %s", routine_id, user_id)
    return {"ok": True}
