"""Conversation intake, transcript and manual routing routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..container import EngineContainer, get_container
from ..lifecycle import schemas
from .common import service_errors

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _detail(container: EngineContainer, conversation_id: int) -> schemas.ConversationDetail:
    conversation, allowed = container.conversations.get_conversation(conversation_id)
    messages = container.conversations.list_messages(conversation_id)
    read = schemas.ConversationRead.model_validate(conversation)
    return schemas.ConversationDetail.model_validate(
        {
            **read.model_dump(),
            "allowed_transitions": allowed,
            "messages": [schemas.MessageRead.model_validate(m) for m in messages],
        }
    )


@router.post("", response_model=schemas.ConversationDetail, status_code=status.HTTP_201_CREATED)
def create_conversation(
    payload: schemas.ConversationCreate,
    container: EngineContainer = Depends(get_container),
) -> schemas.ConversationDetail:
    with service_errors():
        conversation = container.conversations.create_conversation(
            subject=payload.subject,
            priority=payload.priority,
            requester_type=payload.requester_type,
            requester_identifier=payload.requester_identifier,
            metadata=payload.metadata,
            initial_message=payload.message,
            channel=payload.channel,
        )
        return _detail(container, conversation.id)


@router.get("/{conversation_id}", response_model=schemas.ConversationDetail)
def get_conversation(
    conversation_id: int,
    container: EngineContainer = Depends(get_container),
) -> schemas.ConversationDetail:
    with service_errors():
        return _detail(container, conversation_id)


@router.get("/{conversation_id}/audit-events", response_model=schemas.AuditEventList)
def list_audit_events(
    conversation_id: int,
    limit: int = 200,
    container: EngineContainer = Depends(get_container),
) -> schemas.AuditEventList:
    with service_errors():
        events = container.conversations.list_audit_events(conversation_id, limit=limit)
    items = [schemas.AuditEventRead.model_validate(e) for e in events]
    return schemas.AuditEventList(items=items, total=len(items))


@router.post(
    "/{conversation_id}/messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
)
def append_requester_message(
    conversation_id: int,
    payload: schemas.MessageCreate,
    container: EngineContainer = Depends(get_container),
) -> schemas.MessageRead:
    with service_errors():
        message = container.conversations.append_requester_message(
            conversation_id,
            payload.content,
            metadata=payload.metadata,
            channel=payload.channel,
        )
    return schemas.MessageRead.model_validate(message)


@router.post(
    "/{conversation_id}/human-messages",
    response_model=schemas.MessageRead,
    status_code=status.HTTP_201_CREATED,
)
def append_human_message(
    conversation_id: int,
    payload: schemas.HumanMessageCreate,
    container: EngineContainer = Depends(get_container),
) -> schemas.MessageRead:
    with service_errors():
        message = container.conversations.append_human_message(
            conversation_id,
            payload.user_id,
            payload.content,
            metadata=payload.metadata,
            channel=payload.channel,
        )
    return schemas.MessageRead.model_validate(message)


@router.post("/{conversation_id}/handoff", response_model=schemas.ConversationDetail)
def trigger_handoff(
    conversation_id: int,
    payload: schemas.HandoffRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.ConversationDetail:
    with service_errors():
        container.lifecycle.trigger_handoff(
            conversation_id,
            payload.reason_code,
            queue_id=payload.queue_id,
            actor_id=payload.actor_id,
            confidence=payload.confidence,
            required_skills=payload.required_skills,
            metadata=payload.metadata,
            channel="api",
        )
        return _detail(container, conversation_id)


@router.post("/{conversation_id}/resolve", response_model=schemas.ConversationDetail)
def resolve_conversation(
    conversation_id: int,
    payload: schemas.ConversationResolveRequest,
    container: EngineContainer = Depends(get_container),
) -> schemas.ConversationDetail:
    with service_errors():
        container.lifecycle.resolve_conversation(
            conversation_id, payload.actor_id, payload.summary, channel="api"
        )
        return _detail(container, conversation_id)
