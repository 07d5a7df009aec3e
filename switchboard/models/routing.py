"""Queue, queue item and assignment models."""

from __future__ import annotations

import datetime as dt
from typing import Any, List

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..clock import utcnow
from . import Base, JsonType
from .conversation import Conversation


class QueueItemState:
    QUEUED = "queued"
    HOT = "hot"
    COMPLETED = "completed"

    ACTIVE = (QUEUED, HOT)
    ALL = (QUEUED, HOT, COMPLETED)


class AssignmentStatus:
    ASSIGNED = "assigned"
    HUMAN_WORKING = "human_working"
    RELEASED = "released"
    RESOLVED = "resolved"

    ALL = (ASSIGNED, HUMAN_WORKING, RELEASED, RESOLVED)


class Queue(Base):
    """Named routing target for escalated conversations.

    Attributes:
        is_default: At most one queue is the default; enforced by a partial
            unique index.
        skills_required: Skill names an operator needs to serve the queue.
        priority_policy: Free-form policy; when non-empty the resolver
            scores the queue by conversation priority.
    """

    __tablename__ = "queues"
    __table_args__ = (
        Index("ix_queues_name_unique", "name", unique=True),
        Index("ix_queues_slug_unique", "slug", unique=True),
        Index(
            "ix_queues_default_unique",
            "is_default",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    slug: Mapped[str] = mapped_column(String(length=255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    is_default: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    skills_required: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    priority_policy: Mapped[dict[str, Any]] = mapped_column(
        JsonType, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    items: Mapped[List["QueueItem"]] = relationship(back_populates="queue")


class QueueItem(Base):
    """A conversation's placement in a queue.

    Only one row per (queue, conversation, state) may be active
    (``queued`` or ``hot``); completed rows accumulate as history.
    """

    __tablename__ = "queue_items"
    __table_args__ = (
        Index(
            "uq_queue_items_active",
            "queue_id",
            "conversation_id",
            "state",
            unique=True,
            sqlite_where=text("state IN ('queued', 'hot')"),
            postgresql_where=text("state IN ('queued', 'hot')"),
        ),
        Index("ix_queue_items_state_enqueued", "state", "enqueued_at"),
        Index("ix_queue_items_conversation", "conversation_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[int] = mapped_column(
        ForeignKey("queues.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    state: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default=QueueItemState.QUEUED,
        server_default=text("'queued'"),
    )
    enqueued_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dequeued_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonType, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    queue: Mapped[Queue] = relationship(back_populates="items")
    conversation: Mapped[Conversation] = relationship(back_populates="queue_items")


class Assignment(Base):
    """A human operator's custody of a conversation."""

    __tablename__ = "assignments"
    __table_args__ = (
        Index("ix_assignments_conversation_status", "conversation_id", "status"),
        Index("ix_assignments_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    queue_id: Mapped[int | None] = mapped_column(
        ForeignKey("queues.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=AssignmentStatus.ASSIGNED,
        server_default=text("'assigned'"),
    )
    assigned_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    released_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonType, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    conversation: Mapped[Conversation] = relationship(back_populates="assignments")
    queue: Mapped[Queue | None] = relationship()
