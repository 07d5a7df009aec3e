"""Per-transition side effects.

Each handler receives a :class:`TransitionRun` describing the transition in
flight and mutates queue items, assignments and handoffs through the
lifecycle repository.  Handlers may return the timestamp that should count
as the conversation's latest activity; the state machine then applies the
status change and writes the audit event.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..clock import parse_timestamp
from ..errors import ConflictError, InvalidTransitionContext, NotFoundError
from ..models import Assignment, AssignmentStatus, Conversation, QueueItemState
from .repository import LifecycleRepository

logger = logging.getLogger(__name__)


@dataclass
class TransitionRun:
    """Mutable state shared between the state machine and one handler."""

    repository: LifecycleRepository
    conversation: Conversation
    transition: str
    context: dict[str, Any]
    now: dt.datetime
    # Extra audit payload fields discovered while applying side effects.
    audit_extra: dict[str, Any] = field(default_factory=dict)

    def timestamp(self, key: str) -> dt.datetime:
        """Return the context timestamp stored under ``key`` or the current time."""

        return context_timestamp(self.transition, self.context, key) or self.now

    def optional_int(self, key: str) -> int | None:
        value = self.context.get(key)
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidTransitionContext(self.transition, key, value) from exc


def context_timestamp(transition: str, context: Mapping[str, Any], key: str) -> dt.datetime | None:
    value = context.get(key)
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise InvalidTransitionContext(transition, key, value) from exc


Handler = Callable[[TransitionRun], Optional[dt.datetime]]

HANDLERS: dict[str, Handler] = {}


def handler(name: str) -> Callable[[Handler], Handler]:
    """Register ``func`` as the side-effect handler for transition ``name``."""

    def decorator(func: Handler) -> Handler:
        HANDLERS[name] = func
        return func

    return decorator


def _merge_meta(assignment: Assignment, **values: Any) -> None:
    # Reassign so the JSON column is flagged dirty.
    merged = dict(assignment.meta or {})
    merged.update({k: v for k, v in values.items() if v is not None})
    assignment.meta = merged or None


@handler("agent_begins")
def agent_begins(run: TransitionRun) -> dt.datetime | None:
    return run.now


@handler("handoff_required")
def handoff_required(run: TransitionRun) -> dt.datetime | None:
    handoff_at = run.timestamp("handoff_at")
    handoff = run.repository.upsert_handoff(
        conversation_id=run.conversation.id,
        reason_code=str(run.context["reason_code"]),
        confidence=run.context.get("confidence"),
        policy_hits=list(run.context.get("policy_hits") or []) or None,
        required_skills=list(run.context.get("required_skills") or []) or None,
        metadata=run.context.get("handoff_metadata") or None,
        created_at=handoff_at,
    )
    run.audit_extra["handoff_id"] = handoff.id
    return handoff_at


@handler("enqueue_for_human")
def enqueue_for_human(run: TransitionRun) -> dt.datetime | None:
    queue_id = run.optional_int("queue_id")
    if queue_id is None or run.repository.get_queue(queue_id) is None:
        raise NotFoundError(f"Queue {run.context.get('queue_id')} not found")
    enqueued_at = run.timestamp("enqueued_at")
    item = run.repository.upsert_queued_item(
        queue_id=queue_id,
        conversation_id=run.conversation.id,
        enqueued_at=enqueued_at,
        metadata=run.context.get("queue_item_metadata") or None,
    )
    run.audit_extra["queue_item_id"] = item.id
    return enqueued_at


@handler("assign_human")
def assign_human(run: TransitionRun) -> dt.datetime | None:
    queue_id = run.optional_int("queue_id")
    user_id = run.optional_int("assignment_user_id")
    assigned_at = run.timestamp("assigned_at")
    updated = run.repository.mark_queued_item_hot(
        queue_id=queue_id,
        conversation_id=run.conversation.id,
        dequeued_at=assigned_at,
    )
    if updated == 0:
        raise ConflictError(
            f"Conversation {run.conversation.id} is no longer queued in queue {queue_id}."
        )
    assignment = run.repository.insert_assignment(
        conversation_id=run.conversation.id,
        queue_id=queue_id,
        user_id=user_id,
        assigned_at=assigned_at,
        metadata=run.context.get("assignment_metadata") or None,
    )
    run.audit_extra["assignment_id"] = assignment.id
    return assigned_at


def _assignment_for(run: TransitionRun, user_id: int | None) -> Assignment | None:
    assignment = run.repository.latest_assignment(run.conversation.id, user_id)
    if assignment is not None:
        run.audit_extra["assignment_id"] = assignment.id
        run.audit_extra.setdefault("queue_id", assignment.queue_id)
    return assignment


@handler("human_accepts")
def human_accepts(run: TransitionRun) -> dt.datetime | None:
    user_id = run.optional_int("assignment_user_id")
    assignment = _assignment_for(run, user_id)
    if assignment is None:
        raise NotFoundError(
            f"No assignment for user {user_id} on conversation {run.conversation.id}"
        )
    accepted_at = run.timestamp("accepted_at")
    assignment.status = AssignmentStatus.HUMAN_WORKING
    assignment.accepted_at = accepted_at
    assignment.updated_at = run.now
    return accepted_at


@handler("return_to_agent")
def return_to_agent(run: TransitionRun) -> dt.datetime | None:
    user_id = run.optional_int("assignment_user_id")
    assignment = _assignment_for(run, user_id)
    if assignment is None:
        raise NotFoundError(
            f"No assignment for user {user_id} on conversation {run.conversation.id}"
        )
    released_at = run.timestamp("released_at")
    assignment.status = AssignmentStatus.RELEASED
    assignment.released_at = released_at
    assignment.updated_at = run.now
    _merge_meta(assignment, release_reason=run.context.get("release_reason"))
    # The hot item belongs to the released custody; a later handoff
    # enqueues a fresh one.
    run.repository.complete_queue_items(
        run.conversation.id, completed_at=released_at, states=(QueueItemState.HOT,)
    )
    return released_at


@handler("resolve")
def resolve(run: TransitionRun) -> dt.datetime | None:
    resolved_at = run.timestamp("resolved_at")
    assignment = _assignment_for(run, run.optional_int("assignment_user_id"))
    if assignment is not None and assignment.released_at is None:
        assignment.status = AssignmentStatus.RESOLVED
        assignment.resolved_at = resolved_at
        assignment.updated_at = run.now
        _merge_meta(assignment, resolution_summary=run.context.get("resolution_summary"))
    completed = run.repository.complete_queue_items(run.conversation.id, completed_at=resolved_at)
    if completed:
        logger.debug(
            "Completed %d queue item(s) on resolve",
            completed,
            extra={"conversation_id": run.conversation.id, "transition": run.transition},
        )
    return resolved_at


@handler("archive")
def archive(run: TransitionRun) -> dt.datetime | None:
    return run.now


__all__ = ["HANDLERS", "Handler", "TransitionRun", "handler"]
