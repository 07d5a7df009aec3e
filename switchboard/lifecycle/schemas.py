"""Pydantic schemas for the routing API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ORM models map the ``metadata`` column to ``meta``.
_META = AliasChoices("meta", "metadata")


class _OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ConversationRead(_OrmModel):
    id: int
    subject: str | None = None
    status: str
    priority: str
    requester_type: str | None = None
    requester_identifier: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=_META)
    last_activity_at: datetime | None = None
    first_response_due_at: datetime | None = None
    resolution_due_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ConversationDetail(ConversationRead):
    allowed_transitions: list[str] = Field(default_factory=list)
    messages: list["MessageRead"] = Field(default_factory=list)


class MessageRead(_OrmModel):
    id: int
    conversation_id: int
    sender_type: str
    user_id: int | None = None
    content: str
    confidence: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias=_META)
    created_at: datetime


class QueueItemRead(_OrmModel):
    id: int
    queue_id: int
    conversation_id: int
    state: str
    enqueued_at: datetime
    dequeued_at: datetime | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=_META)


class QueueItemList(BaseModel):
    items: list[QueueItemRead]
    total: int


class AssignmentRead(_OrmModel):
    id: int
    conversation_id: int
    queue_id: int | None = None
    user_id: int
    status: str
    assigned_at: datetime
    accepted_at: datetime | None = None
    released_at: datetime | None = None
    resolved_at: datetime | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias=_META)


class AuditEventRead(_OrmModel):
    id: int
    event_type: str
    conversation_id: int | None = None
    user_id: int | None = None
    subject_type: str | None = None
    subject_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    channel: str | None = None
    occurred_at: datetime


class AuditEventList(BaseModel):
    items: list[AuditEventRead]
    total: int


class ConversationCreate(BaseModel):
    subject: str | None = None
    priority: str = "standard"
    requester_type: str | None = None
    requester_identifier: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    channel: str | None = None


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    channel: str | None = None


class HumanMessageCreate(MessageCreate):
    user_id: int


class HandoffRequest(BaseModel):
    reason_code: str = Field(min_length=1)
    queue_id: int | None = None
    actor_id: int | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    required_skills: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConversationResolveRequest(BaseModel):
    actor_id: int | None = None
    summary: str | None = None


class ClaimRequest(BaseModel):
    actor_id: int
    assignee_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AcceptRequest(BaseModel):
    actor_id: int


class ReleaseRequest(BaseModel):
    actor_id: int
    reason: str | None = None


class ResolveRequest(BaseModel):
    actor_id: int
    summary: str | None = None


ConversationDetail.model_rebuild()
