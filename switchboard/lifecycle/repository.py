"""Database access for the lifecycle store.

All reads that gate a write go through the ``lock=True`` variants, which
issue ``SELECT ... FOR UPDATE`` and overwrite any stale state already held
in the session's identity map.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy import Select, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..clock import as_utc
from ..errors import ConflictError
from ..models import (
    Assignment,
    AssignmentStatus,
    AuditEvent,
    Conversation,
    Handoff,
    Message,
    Queue,
    QueueItem,
    QueueItemState,
)

T = TypeVar("T")


class LifecycleRepository:
    """SQLAlchemy implementation of the lifecycle store queries."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # Utility -----------------------------------------------------------------
    def _fetch_one(self, stmt: Select[tuple[T]], *, lock: bool) -> Optional[T]:
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        try:
            return self._session.execute(stmt).scalars().first()
        except OperationalError as exc:
            if lock:
                raise ConflictError("Timed out waiting for a row lock; retry the request.") from exc
            raise

    # Conversations ------------------------------------------------------------
    def get_conversation(self, conversation_id: int, *, lock: bool = False) -> Optional[Conversation]:
        return self._fetch_one(
            select(Conversation).where(Conversation.id == conversation_id), lock=lock
        )

    def create_conversation(
        self,
        *,
        subject: str | None,
        priority: str,
        requester_type: str | None,
        requester_identifier: str | None,
        metadata: dict[str, Any] | None,
        created_at: dt.datetime,
    ) -> Conversation:
        conversation = Conversation(
            subject=subject,
            priority=priority,
            requester_type=requester_type,
            requester_identifier=requester_identifier,
            meta=dict(metadata or {}),
            last_activity_at=created_at,
            created_at=created_at,
            updated_at=created_at,
        )
        self._session.add(conversation)
        self._session.flush()
        return conversation

    def touch_activity(self, conversation: Conversation, at: dt.datetime) -> None:
        """Advance ``last_activity_at``; it never moves backwards."""

        current = conversation.last_activity_at
        conversation.last_activity_at = at if current is None else max(as_utc(current), as_utc(at))

    def add_message(
        self,
        conversation_id: int,
        *,
        sender_type: str,
        content: str,
        user_id: int | None = None,
        confidence: float | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: dt.datetime,
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            sender_type=sender_type,
            user_id=user_id,
            content=content,
            confidence=confidence,
            meta=dict(metadata or {}),
            created_at=created_at,
        )
        self._session.add(message)
        self._session.flush()
        return message

    def list_messages(self, conversation_id: int) -> Sequence[Message]:
        return (
            self._session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at, Message.id)
            )
            .scalars()
            .all()
        )

    # Queues -------------------------------------------------------------------
    def get_queue(self, queue_id: int) -> Optional[Queue]:
        return self._session.get(Queue, queue_id)

    def get_queue_item(self, queue_item_id: int, *, lock: bool = False) -> Optional[QueueItem]:
        return self._fetch_one(select(QueueItem).where(QueueItem.id == queue_item_id), lock=lock)

    def list_queue_items(
        self, queue_id: int, state: str | None = None, limit: int = 50
    ) -> Sequence[QueueItem]:
        stmt = select(QueueItem).where(QueueItem.queue_id == queue_id)
        if state:
            stmt = stmt.where(QueueItem.state == state)
        stmt = stmt.order_by(QueueItem.enqueued_at.desc(), QueueItem.id.desc()).limit(limit)
        return self._session.execute(stmt).scalars().all()

    def upsert_queued_item(
        self,
        *,
        queue_id: int,
        conversation_id: int,
        enqueued_at: dt.datetime,
        metadata: dict[str, Any] | None,
    ) -> QueueItem:
        item = self._fetch_one(
            select(QueueItem).where(
                QueueItem.queue_id == queue_id,
                QueueItem.conversation_id == conversation_id,
                QueueItem.state == QueueItemState.QUEUED,
            ),
            lock=False,
        )
        if item is None:
            item = QueueItem(
                queue_id=queue_id,
                conversation_id=conversation_id,
                state=QueueItemState.QUEUED,
                created_at=enqueued_at,
            )
            self._session.add(item)
        item.enqueued_at = enqueued_at
        item.dequeued_at = None
        item.meta = metadata
        item.updated_at = enqueued_at
        self._session.flush()
        return item

    def mark_queued_item_hot(
        self, *, queue_id: int, conversation_id: int, dequeued_at: dt.datetime
    ) -> int:
        """Compare-and-set the queued item to ``hot``; return the affected row count."""

        result = self._session.execute(
            update(QueueItem)
            .where(
                QueueItem.queue_id == queue_id,
                QueueItem.conversation_id == conversation_id,
                QueueItem.state == QueueItemState.QUEUED,
            )
            .values(state=QueueItemState.HOT, dequeued_at=dequeued_at, updated_at=dequeued_at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def complete_queue_items(
        self,
        conversation_id: int,
        *,
        completed_at: dt.datetime,
        states: Sequence[str] = QueueItemState.ACTIVE,
    ) -> int:
        result = self._session.execute(
            update(QueueItem)
            .where(
                QueueItem.conversation_id == conversation_id,
                QueueItem.state.in_(tuple(states)),
            )
            .values(
                state=QueueItemState.COMPLETED,
                dequeued_at=completed_at,
                updated_at=completed_at,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    # Assignments --------------------------------------------------------------
    def get_assignment(self, assignment_id: int, *, lock: bool = False) -> Optional[Assignment]:
        return self._fetch_one(
            select(Assignment).where(Assignment.id == assignment_id), lock=lock
        )

    def latest_assignment(
        self, conversation_id: int, user_id: int | None = None
    ) -> Optional[Assignment]:
        stmt = select(Assignment).where(Assignment.conversation_id == conversation_id)
        if user_id is not None:
            stmt = stmt.where(Assignment.user_id == user_id)
        stmt = stmt.order_by(Assignment.assigned_at.desc(), Assignment.id.desc()).limit(1)
        return self._session.execute(stmt).scalars().first()

    def insert_assignment(
        self,
        *,
        conversation_id: int,
        queue_id: int,
        user_id: int,
        assigned_at: dt.datetime,
        metadata: dict[str, Any] | None,
    ) -> Assignment:
        assignment = Assignment(
            conversation_id=conversation_id,
            queue_id=queue_id,
            user_id=user_id,
            status=AssignmentStatus.ASSIGNED,
            assigned_at=assigned_at,
            meta=metadata,
            created_at=assigned_at,
            updated_at=assigned_at,
        )
        self._session.add(assignment)
        self._session.flush()
        return assignment

    # Handoffs -----------------------------------------------------------------
    def upsert_handoff(
        self,
        *,
        conversation_id: int,
        reason_code: str,
        confidence: float | None,
        policy_hits: list[str] | None,
        required_skills: list[str] | None,
        metadata: dict[str, Any] | None,
        created_at: dt.datetime,
    ) -> Handoff:
        handoff = self._fetch_one(
            select(Handoff).where(
                Handoff.conversation_id == conversation_id,
                Handoff.reason_code == reason_code,
            ),
            lock=False,
        )
        if handoff is None:
            handoff = Handoff(conversation_id=conversation_id, reason_code=reason_code)
            self._session.add(handoff)
        handoff.confidence = confidence
        handoff.policy_hits = policy_hits
        handoff.required_skills = required_skills
        handoff.meta = metadata
        handoff.created_at = created_at
        self._session.flush()
        return handoff

    # Audit --------------------------------------------------------------------
    def list_audit_events(self, conversation_id: int, limit: int = 200) -> Sequence[AuditEvent]:
        return (
            self._session.execute(
                select(AuditEvent)
                .where(AuditEvent.conversation_id == conversation_id)
                .order_by(AuditEvent.occurred_at, AuditEvent.id)
                .limit(limit)
            )
            .scalars()
            .all()
        )
