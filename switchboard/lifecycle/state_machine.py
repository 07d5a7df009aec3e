"""Conversation status graph and the single writer path for status changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from ..clock import Clock, utcnow
from ..errors import MissingTransitionContext, TransitionNotAllowed
from ..models import Conversation, ConversationStatus
from .audit import AuditRecorder
from .events import TransitionEvent, TransitionPublisher
from .handlers import HANDLERS, Handler, TransitionRun, context_timestamp
from .repository import LifecycleRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset[str]
    target: str
    required: tuple[str, ...] = ()


def _transition(name: str, sources: tuple[str, ...], target: str, *required: str) -> Transition:
    return Transition(name=name, sources=frozenset(sources), target=target, required=required)


TRANSITIONS: dict[str, Transition] = {
    t.name: t
    for t in (
        _transition(
            "agent_begins",
            (ConversationStatus.NEW, ConversationStatus.BACK_TO_AGENT),
            ConversationStatus.AGENT_WORKING,
        ),
        _transition(
            "handoff_required",
            (ConversationStatus.AGENT_WORKING,),
            ConversationStatus.NEEDS_HUMAN,
            "reason_code",
        ),
        _transition(
            "enqueue_for_human",
            (ConversationStatus.NEEDS_HUMAN,),
            ConversationStatus.QUEUED,
            "queue_id",
        ),
        _transition(
            "assign_human",
            (ConversationStatus.QUEUED,),
            ConversationStatus.ASSIGNED,
            "queue_id",
            "assignment_user_id",
        ),
        _transition(
            "human_accepts",
            (ConversationStatus.ASSIGNED,),
            ConversationStatus.HUMAN_WORKING,
            "assignment_user_id",
        ),
        _transition(
            "return_to_agent",
            (ConversationStatus.HUMAN_WORKING,),
            ConversationStatus.BACK_TO_AGENT,
            "assignment_user_id",
        ),
        _transition(
            "resolve",
            (ConversationStatus.HUMAN_WORKING,),
            ConversationStatus.RESOLVED,
        ),
        _transition(
            "archive",
            (ConversationStatus.RESOLVED,),
            ConversationStatus.ARCHIVED,
        ),
    )
}


class ConversationStateMachine:
    """Guard and apply lifecycle transitions for one conversation.

    ``apply`` is the only code path that changes ``Conversation.status``.
    It runs inside the caller's transaction and never commits; when it
    raises, the caller is expected to roll back.
    """

    def __init__(
        self,
        session: Session,
        conversation: Conversation,
        *,
        handlers: Mapping[str, Handler] | None = None,
        publisher: TransitionPublisher | None = None,
        clock: Clock = utcnow,
        default_channel: str = "system",
    ) -> None:
        self._session = session
        self._conversation = conversation
        self._handlers = dict(handlers if handlers is not None else HANDLERS)
        self._publisher = publisher
        self._clock = clock
        self._default_channel = default_channel
        self._repository = LifecycleRepository(session)
        self._audit = AuditRecorder(session, default_channel=default_channel)

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    def can(self, name: str) -> bool:
        transition = TRANSITIONS.get(name)
        return transition is not None and self._conversation.status in transition.sources

    def allowed_transitions(self) -> list[str]:
        return [name for name in TRANSITIONS if self.can(name)]

    def apply(self, name: str, context: Mapping[str, Any] | None = None) -> Conversation:
        conversation = self._conversation
        from_status = conversation.status
        if not self.can(name):
            raise TransitionNotAllowed(name, from_status)

        transition = TRANSITIONS[name]
        ctx = dict(context or {})
        missing = [key for key in transition.required if ctx.get(key) in (None, "")]
        if missing:
            raise MissingTransitionContext(name, missing)

        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"No side-effect handler registered for '{name}'")

        now = self._clock()
        previous_activity = conversation.last_activity_at
        run = TransitionRun(
            repository=self._repository,
            conversation=conversation,
            transition=name,
            context=ctx,
            now=now,
        )
        try:
            activity_at = handler(run) or now
            conversation.status = transition.target
            self._repository.touch_activity(conversation, activity_at)
            conversation.updated_at = now
            self._session.flush()
            # Defaults to processing time, never to a transition timestamp.
            occurred_at = context_timestamp(name, ctx, "occurred_at") or now
            self._audit.record_transition(
                conversation,
                name,
                from_status=from_status,
                to_status=transition.target,
                context=ctx,
                occurred_at=occurred_at,
                extra=run.audit_extra,
            )
        except Exception:
            conversation.status = from_status
            conversation.last_activity_at = previous_activity
            raise

        logger.debug(
            "Applied %s (%s -> %s)",
            name,
            from_status,
            transition.target,
            extra={"conversation_id": conversation.id, "transition": name},
        )
        if self._publisher is not None:
            self._publisher.queue(
                self._session,
                TransitionEvent(
                    conversation_id=conversation.id,
                    transition=name,
                    from_status=from_status,
                    to_status=transition.target,
                    occurred_at=occurred_at,
                    channel=ctx.get("channel") or self._default_channel,
                    actor_id=ctx.get("actor_id"),
                    context={k: v for k, v in ctx.items() if k not in ("channel", "actor_id")},
                ),
            )
        return conversation


class StateMachineFactory:
    """Build state machines sharing handlers, publisher and clock."""

    def __init__(
        self,
        *,
        handlers: Mapping[str, Handler] | None = None,
        publisher: TransitionPublisher | None = None,
        clock: Clock = utcnow,
        default_channel: str = "system",
    ) -> None:
        self.handlers = dict(handlers if handlers is not None else HANDLERS)
        self.publisher = publisher
        self.clock = clock
        self.default_channel = default_channel

    def get(self, session: Session, conversation: Conversation) -> ConversationStateMachine:
        return ConversationStateMachine(
            session,
            conversation,
            handlers=self.handlers,
            publisher=self.publisher,
            clock=self.clock,
            default_channel=self.default_channel,
        )


__all__ = [
    "ConversationStateMachine",
    "StateMachineFactory",
    "TRANSITIONS",
    "Transition",
]
