from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from profile_audit.application import get_audit_service

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(subject_id: str | None = Query(None)) -> dict:
    registry = get_audit_service().registry
    return {"items": [task.as_dict() for task in registry.list_tasks(subject_id)]}


@router.get("/{task_id}")
async def get_task(task_id: str) -> dict:
    task = get_audit_service().registry.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="task not found")
    return task.as_dict()


@router.delete("/completed")
async def clear_completed_tasks() -> dict:
    registry = get_audit_service().registry
    registry.clear_completed()
    return {"items": [task.as_dict() for task in registry.list_tasks()]}
