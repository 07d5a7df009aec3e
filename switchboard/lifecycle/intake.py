"""Conversation intake, transcript writes and read-side queries."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from sqlalchemy.orm import Session, sessionmaker

from ..errors import ConflictError, NotFoundError
from ..models import (
    AuditEvent,
    Conversation,
    ConversationStatus,
    Message,
    QueueItem,
    SenderType,
)
from .audit import AuditRecorder
from .repository import LifecycleRepository
from .state_machine import StateMachineFactory

if TYPE_CHECKING:  # pragma: no cover
    from ..agents.dispatcher import AgentDispatcher

logger = logging.getLogger(__name__)


class ConversationService:
    """Create conversations and append messages; the agent job runs after commit."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        machines: StateMachineFactory,
        dispatcher: AgentDispatcher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._machines = machines
        self._dispatcher = dispatcher

    def _dispatch(self, conversation_id: int) -> None:
        if self._dispatcher is not None:
            self._dispatcher.dispatch(conversation_id)

    def create_conversation(
        self,
        *,
        subject: str | None = None,
        priority: str = "standard",
        requester_type: str | None = None,
        requester_identifier: str | None = None,
        metadata: dict[str, Any] | None = None,
        initial_message: str | None = None,
        channel: str | None = None,
    ) -> Conversation:
        now = self._machines.clock()
        with self._session_factory.begin() as session:
            repository = LifecycleRepository(session)
            conversation = repository.create_conversation(
                subject=subject,
                priority=priority,
                requester_type=requester_type,
                requester_identifier=requester_identifier,
                metadata=metadata,
                created_at=now,
            )
            audit = AuditRecorder(session, default_channel=self._machines.default_channel)
            audit.record(
                "conversation.created",
                conversation_id=conversation.id,
                payload={"status": conversation.status, "priority": priority},
                subject_type="conversation",
                subject_id=conversation.id,
                channel=channel,
                occurred_at=now,
            )
            if initial_message:
                message = repository.add_message(
                    conversation.id,
                    sender_type=SenderType.REQUESTER,
                    content=initial_message,
                    created_at=now,
                )
                audit.record_message(message, channel=channel)

        logger.info("Conversation created", extra={"conversation_id": conversation.id})
        self._dispatch(conversation.id)
        return conversation

    def append_requester_message(
        self,
        conversation_id: int,
        content: str,
        *,
        metadata: dict[str, Any] | None = None,
        channel: str | None = None,
    ) -> Message:
        message = self._append(
            conversation_id,
            sender_type=SenderType.REQUESTER,
            content=content,
            metadata=metadata,
            channel=channel,
        )
        self._dispatch(conversation_id)
        return message

    def append_human_message(
        self,
        conversation_id: int,
        user_id: int,
        content: str,
        *,
        metadata: dict[str, Any] | None = None,
        channel: str | None = None,
    ) -> Message:
        return self._append(
            conversation_id,
            sender_type=SenderType.HUMAN,
            content=content,
            user_id=user_id,
            metadata=metadata,
            channel=channel,
        )

    def _append(
        self,
        conversation_id: int,
        *,
        sender_type: str,
        content: str,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        channel: str | None = None,
    ) -> Message:
        now = self._machines.clock()
        with self._session_factory.begin() as session:
            repository = LifecycleRepository(session)
            conversation = repository.get_conversation(conversation_id, lock=True)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if conversation.status == ConversationStatus.ARCHIVED:
                raise ConflictError(f"Conversation {conversation_id} is archived.")
            message = repository.add_message(
                conversation_id,
                sender_type=sender_type,
                content=content,
                user_id=user_id,
                metadata=metadata,
                created_at=now,
            )
            repository.touch_activity(conversation, now)
            AuditRecorder(session, default_channel=self._machines.default_channel).record_message(
                message, channel=channel
            )
            return message

    # ------------------------------------------------------------------
    # Queries

    def get_conversation(self, conversation_id: int) -> tuple[Conversation, list[str]]:
        """Return the conversation and the transitions its status allows."""

        with self._session_factory() as session:
            conversation = LifecycleRepository(session).get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            allowed = self._machines.get(session, conversation).allowed_transitions()
            return conversation, allowed

    def list_messages(self, conversation_id: int) -> Sequence[Message]:
        with self._session_factory() as session:
            return LifecycleRepository(session).list_messages(conversation_id)

    def list_audit_events(self, conversation_id: int, limit: int = 200) -> Sequence[AuditEvent]:
        with self._session_factory() as session:
            repository = LifecycleRepository(session)
            if repository.get_conversation(conversation_id) is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            return repository.list_audit_events(conversation_id, limit=limit)

    def list_queue_items(
        self, queue_id: int, state: str | None = None, limit: int = 50
    ) -> Sequence[QueueItem]:
        with self._session_factory() as session:
            repository = LifecycleRepository(session)
            if repository.get_queue(queue_id) is None:
                raise NotFoundError(f"Queue {queue_id} not found")
            return repository.list_queue_items(queue_id, state=state, limit=limit)


__all__ = ["ConversationService"]
