"""Append-only audit trail writer."""

from __future__ import annotations

import datetime as dt
from typing import Any, Mapping

from sqlalchemy.orm import Session

from ..models import AuditEvent, Conversation, Message, Queue

# Transition context keys copied into the audit payload, in payload order.
_CONTEXT_KEYS = (
    "reason_code",
    "confidence",
    "policy_hits",
    "required_skills",
    "queue_id",
    "assignment_user_id",
    "release_reason",
    "resolution_summary",
)


class AuditRecorder:
    """Write :class:`AuditEvent` rows inside the caller's transaction."""

    def __init__(self, session: Session, *, default_channel: str = "system") -> None:
        self._session = session
        self._default_channel = default_channel

    def record(
        self,
        event_type: str,
        *,
        conversation_id: int | None,
        payload: Mapping[str, Any] | None = None,
        user_id: int | None = None,
        subject_type: str | None = None,
        subject_id: int | None = None,
        channel: str | None = None,
        occurred_at: dt.datetime,
    ) -> AuditEvent:
        audit_event = AuditEvent(
            event_type=event_type,
            conversation_id=conversation_id,
            user_id=user_id,
            subject_type=subject_type,
            subject_id=subject_id,
            payload=dict(payload or {}),
            channel=channel or self._default_channel,
            occurred_at=occurred_at,
            created_at=occurred_at,
        )
        self._session.add(audit_event)
        self._session.flush()
        return audit_event

    def record_transition(
        self,
        conversation: Conversation,
        transition: str,
        *,
        from_status: str,
        to_status: str,
        context: Mapping[str, Any],
        occurred_at: dt.datetime,
        extra: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        payload: dict[str, Any] = {"from": from_status, "to": to_status}
        for key in _CONTEXT_KEYS:
            value = context.get(key)
            if value is not None:
                payload[key] = value
        for key, value in (extra or {}).items():
            if value is not None:
                payload[key] = value

        queue_id = payload.get("queue_id")
        if queue_id is not None:
            queue = self._session.get(Queue, queue_id)
            if queue is not None:
                payload["queue"] = {
                    "id": queue.id,
                    "name": queue.name,
                    "slug": queue.slug,
                    "skills_required": list(queue.skills_required or []),
                    "priority_policy": dict(queue.priority_policy or {}),
                }

        return self.record(
            f"conversation.{transition}",
            conversation_id=conversation.id,
            payload=payload,
            user_id=context.get("actor_id"),
            subject_type="conversation",
            subject_id=conversation.id,
            channel=context.get("channel"),
            occurred_at=occurred_at,
        )

    def record_message(
        self,
        message: Message,
        *,
        channel: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        payload: dict[str, Any] = {"message_id": message.id, "sender_type": message.sender_type}
        if message.confidence is not None:
            payload["confidence"] = message.confidence
        payload.update(extra or {})
        return self.record(
            f"message.{message.sender_type}_sent",
            conversation_id=message.conversation_id,
            payload=payload,
            user_id=message.user_id,
            subject_type="message",
            subject_id=message.id,
            channel=channel,
            occurred_at=message.created_at,
        )


__all__ = ["AuditRecorder"]
