"""Conversation, transcript, handoff and audit models.

``Conversation.status`` only changes through the lifecycle state machine;
messages, handoffs and audit events hang off a conversation and are never
deleted.  The ``metadata`` column is mapped to the ``meta`` attribute
because ``metadata`` is reserved on declarative classes.
"""

from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING, Any, List

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..clock import utcnow
from . import Base, JsonType

if TYPE_CHECKING:  # pragma: no cover
    from .routing import Assignment, QueueItem


class ConversationStatus:
    NEW = "new"
    AGENT_WORKING = "agent_working"
    NEEDS_HUMAN = "needs_human"
    QUEUED = "queued"
    ASSIGNED = "assigned"
    HUMAN_WORKING = "human_working"
    BACK_TO_AGENT = "back_to_agent"
    RESOLVED = "resolved"
    ARCHIVED = "archived"

    ALL = (
        NEW,
        AGENT_WORKING,
        NEEDS_HUMAN,
        QUEUED,
        ASSIGNED,
        HUMAN_WORKING,
        BACK_TO_AGENT,
        RESOLVED,
        ARCHIVED,
    )


class SenderType:
    REQUESTER = "requester"
    AGENT = "agent"
    HUMAN = "human"

    ALL = (REQUESTER, AGENT, HUMAN)


class Conversation(Base):
    """A single customer interaction and its routing state.

    Attributes:
        status: Current lifecycle state (see :class:`ConversationStatus`).
        priority: ``standard``, ``high`` or ``critical``; consulted by the
            queue resolver when a queue declares a priority policy.
        requester_type: Kind of requester (``customer``, ``api`` ...).
        requester_identifier: External identity of the requester.
        last_activity_at: Monotonically non-decreasing activity marker.
        first_response_due_at: SLA deadline, maintained by an external
            collaborator.
        resolution_due_at: SLA deadline, maintained by an external
            collaborator.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_status", "status"),
        Index("ix_conversations_priority", "priority"),
        Index("ix_conversations_last_activity_at", "last_activity_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=ConversationStatus.NEW,
        server_default=text("'new'"),
    )
    priority: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="standard",
        server_default=text("'standard'"),
    )
    requester_type: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    requester_identifier: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, nullable=False, default=dict
    )
    last_activity_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    first_response_due_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolution_due_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    messages: Mapped[List["Message"]] = relationship(
        back_populates="conversation",
        order_by="Message.id",
    )
    handoffs: Mapped[List["Handoff"]] = relationship(
        back_populates="conversation",
        order_by="Handoff.id",
    )
    queue_items: Mapped[List["QueueItem"]] = relationship(
        back_populates="conversation",
        order_by="QueueItem.id",
    )
    assignments: Mapped[List["Assignment"]] = relationship(
        back_populates="conversation",
        order_by="Assignment.id",
    )
    audit_events: Mapped[List["AuditEvent"]] = relationship(
        back_populates="conversation",
        order_by="AuditEvent.id",
    )

    def current_assignment(self) -> "Assignment | None":
        """Return the latest assignment that has not been released."""

        candidates = [a for a in self.assignments if a.released_at is None]
        if not candidates:
            return None
        return max(candidates, key=lambda a: (a.assigned_at, a.id))


class Message(Base):
    """Append-only transcript entry."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_sender_type", "sender_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    # Only agent-authored messages carry a confidence.
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JsonType, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")


class Handoff(Base):
    """Historical record of one escalation, unique per conversation and reason."""

    __tablename__ = "handoffs"
    __table_args__ = (
        UniqueConstraint("conversation_id", "reason_code", name="uq_handoffs_conversation_reason"),
        Index("ix_handoffs_reason_code", "reason_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    reason_code: Mapped[str] = mapped_column(String(length=100), nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    policy_hits: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    required_skills: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonType, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    conversation: Mapped[Conversation] = relationship(back_populates="handoffs")


class AuditEvent(Base):
    """Append-only log entry; ``user_id`` is null for system actions."""

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_type_occurred", "event_type", "occurred_at"),
        Index("ix_audit_events_conversation_occurred", "conversation_id", "occurred_at"),
        Index("ix_audit_events_channel_occurred", "channel", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(length=100), nullable=False)
    conversation_id: Mapped[int | None] = mapped_column(
        ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    subject_type: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    subject_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    channel: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    occurred_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    conversation: Mapped[Conversation | None] = relationship(back_populates="audit_events")
