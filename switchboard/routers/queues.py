"""Queue inspection and claim routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..container import EngineContainer, get_container
from ..lifecycle import schemas
from .common import service_errors

router = APIRouter(prefix="/api/queues", tags=["queues"])


@router.get("/{queue_id}/items", response_model=schemas.QueueItemList)
def list_queue_items(
    queue_id: int,
    state: str | None = None,
    limit: int = 50,
    container: EngineContainer = Depends(get_container),
) -> schemas.QueueItemList:
    with service_errors():
        items = container.conversations.list_queue_items(queue_id, state=state, limit=limit)
    payload = [schemas.QueueItemRead.model_validate(item) for item in items]
    return schemas.QueueItemList(items=payload, total=len(payload))


@router.post("/{queue_id}/items/{item_id}/claim", response_model=schemas.AssignmentRead)
def claim_queue_item(
    queue_id: int,
    item_id: int,
    payload: schemas.ClaimRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.AssignmentRead:
    with service_errors():
        assignment = container.lifecycle.claim(
            queue_id,
            item_id,
            payload.actor_id,
            payload.assignee_id,
            metadata=payload.metadata,
            channel="api",
        )
    return schemas.AssignmentRead.model_validate(assignment)
