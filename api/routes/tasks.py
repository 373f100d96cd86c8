"""Task snapshot routes used by the runtime's A2A task handling."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError as ModelValidationError

from shared.errors import NotFound, ValidationError
from shared.tasks import NegotiationTask

from ..services import BridgeServices, get_services, require_admin_token

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.put("/{scope}/{task_id}")
async def save_task(
    scope: str,
    task_id: str,
    document: Dict[str, Any] = Body(...),
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    if document.get("id", task_id) != task_id:
        raise ValidationError(f"Task id in body ({document.get('id')}) does not match path ({task_id})")
    try:
        task = NegotiationTask.model_validate({**document, "id": task_id})
    except ModelValidationError as exc:
        raise ValidationError(f"Invalid task document: {exc.errors()[0].get('msg')}") from exc
    await services.task_store.save(scope, task)
    return task.to_document()


@router.get("/{scope}/{task_id}")
async def load_task(
    scope: str,
    task_id: str,
    services: BridgeServices = Depends(get_services),
) -> Dict[str, Any]:
    task = await services.task_store.load(scope, task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found in scope {scope}")
    return task.to_document()
