from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from calendar_sync import repositories
from calendar_sync.auth import require_user_id
from calendar_sync.schemas import TaskCreate, TaskPatch
from calendar_sync.services import outbound_dispatcher

router = APIRouter()


def _normalize_task_patch(patch: dict) -> dict:
    clean = dict(patch or {})
    value = clean.get("scheduled_date")
    if value is not None and hasattr(value, "isoformat"):
        clean["scheduled_date"] = value.isoformat()
    for key in ("scheduled_start", "scheduled_end"):
        value = clean.get(key)
        if value is not None and hasattr(value, "strftime"):
            clean[key] = value.strftime("%H:%M")
    return clean


@router.get("/v1/tasks")
async def list_tasks(
    start: date = Query(...),
    end: date = Query(...),
    user_id: str = Depends(require_user_id),
):
    items = await repositories.list_tasks(user_id, start.isoformat(), end.isoformat())
    return {"items": jsonable_encoder(items)}


@router.get("/v1/tasks/{task_id}")
async def get_task(task_id: str, user_id: str = Depends(require_user_id)):
    record = await repositories.get_task(user_id, task_id)
    if not record:
        raise HTTPException(status_code=404, detail="Task not found")
    return jsonable_encoder(record)


@router.post("/v1/tasks")
async def create_task(payload: TaskCreate, user_id: str = Depends(require_user_id)):
    clean = _normalize_task_patch(payload.model_dump())
    record = await repositories.create_task(user_id, {**clean, "source": "local"})
    await outbound_dispatcher.sync_task_outbound(user_id, record["id"], "create")
    return jsonable_encoder(record)


@router.patch("/v1/tasks/{task_id}")
async def patch_task(task_id: str, payload: TaskPatch, user_id: str = Depends(require_user_id)):
    if not await repositories.get_task(user_id, task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    patch = _normalize_task_patch(payload.model_dump(exclude_unset=True))
    record = await repositories.update_task(user_id, task_id, patch)
    await outbound_dispatcher.sync_task_outbound(user_id, task_id, "update")
    return jsonable_encoder(record)


@router.delete("/v1/tasks/{task_id}")
async def delete_task(task_id: str, user_id: str = Depends(require_user_id)):
    record = await repositories.get_task(user_id, task_id)
    if not record:
        raise HTTPException(status_code=404, detail="Task not found")
    await repositories.delete_task(user_id, task_id)
    await outbound_dispatcher.sync_task_outbound(user_id, task_id, "delete", snapshot=record)
    return {"ok": True}
