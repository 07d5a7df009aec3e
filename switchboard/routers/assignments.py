"""Assignment accept/release/resolve routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..container import EngineContainer, get_container
from ..lifecycle import schemas
from .common import service_errors

router = APIRouter(prefix="/api/assignments", tags=["assignments"])


@router.post("/{assignment_id}/accept", response_model=schemas.AssignmentRead)
def accept_assignment(
    assignment_id: int,
    payload: schemas.AcceptRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.AssignmentRead:
    with service_errors():
        assignment = container.lifecycle.accept(assignment_id, payload.actor_id, channel="api")
    return schemas.AssignmentRead.model_validate(assignment)


@router.post("/{assignment_id}/release", response_model=schemas.AssignmentRead)
def release_assignment(
    assignment_id: int,
    payload: schemas.ReleaseRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.AssignmentRead:
    with service_errors():
        assignment = container.lifecycle.release(
            assignment_id, payload.actor_id, payload.reason, channel="api"
        )
    return schemas.AssignmentRead.model_validate(assignment)


@router.post("/{assignment_id}/resolve", response_model=schemas.AssignmentRead)
def resolve_assignment(
    assignment_id: int,
    payload: schemas.ResolveRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.AssignmentRead:
    with service_errors():
        assignment = container.lifecycle.resolve(
            assignment_id, payload.actor_id, payload.summary, channel="api"
        )
    return schemas.AssignmentRead.model_validate(assignment)
