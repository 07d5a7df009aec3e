"""SQLAlchemy declarative base and routing models.

This package hosts the SQLAlchemy models that make up the lifecycle store:
conversations and their transcript, queues, queue items, assignments,
handoffs, audit events and the handoff policies evaluated against agent
responses.  It exposes a single declarative ``Base`` class; individual
models live in dedicated modules within this package.
"""

from __future__ import annotations

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export models so callers can import them via ``from switchboard.models
# import Conversation`` instead of touching private modules.
from .conversation import (  # noqa: E402
    AuditEvent,
    Conversation,
    ConversationStatus,
    Handoff,
    Message,
    SenderType,
)
from .policy import HandoffPolicy, HandoffPolicyRule, TriggerType  # noqa: E402
from .routing import (  # noqa: E402
    Assignment,
    AssignmentStatus,
    Queue,
    QueueItem,
    QueueItemState,
)

__all__ = [
    "Assignment",
    "AssignmentStatus",
    "AuditEvent",
    "Base",
    "Conversation",
    "ConversationStatus",
    "Handoff",
    "HandoffPolicy",
    "HandoffPolicyRule",
    "JsonType",
    "Message",
    "Queue",
    "QueueItem",
    "QueueItemState",
    "SenderType",
    "TriggerType",
]
