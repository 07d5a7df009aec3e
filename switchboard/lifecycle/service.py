"""Human-facing lifecycle operations.

Every operation follows the same discipline: an unlocked read to fail fast
on obviously invalid requests, then ``SELECT ... FOR UPDATE`` on the
conversation (and the queue item or assignment), a re-check of the state
that was just locked, and finally the state machine transition.  Only the
post-lock re-check gates the write; the first read is advisory.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.orm import Session, sessionmaker

from ..errors import ConflictError, MissingTransitionContext, NotFoundError
from ..models import Assignment, AssignmentStatus, Conversation, QueueItemState
from ..policies.evaluator import PolicyDecision
from ..policies.queue_resolver import QueueResolver
from .repository import LifecycleRepository
from .state_machine import ConversationStateMachine, StateMachineFactory

logger = logging.getLogger(__name__)


class LifecycleService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        machines: StateMachineFactory,
        *,
        resolver: QueueResolver | None = None,
        archive_on_resolve: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._machines = machines
        self._resolver = resolver
        self._archive_on_resolve = archive_on_resolve

    @contextmanager
    def _transaction(self) -> Iterator[tuple[Session, LifecycleRepository]]:
        with self._session_factory.begin() as session:
            yield session, LifecycleRepository(session)

    def _context(self, actor_id: int | None, channel: str | None, **values: Any) -> dict[str, Any]:
        context = {"actor_id": actor_id, "channel": channel or self._machines.default_channel}
        context.update(values)
        return context

    def _locked_machine(
        self, session: Session, repository: LifecycleRepository, conversation_id: int
    ) -> ConversationStateMachine:
        conversation = repository.get_conversation(conversation_id, lock=True)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return self._machines.get(session, conversation)

    @staticmethod
    def _guard(machine: ConversationStateMachine, transition: str) -> None:
        if not machine.can(transition):
            raise ConflictError(
                f"Conversation {machine.conversation.id} is {machine.conversation.status}; "
                f"cannot {transition}."
            )

    # ------------------------------------------------------------------
    # Queue claims and assignments

    def claim(
        self,
        queue_id: int,
        queue_item_id: int,
        actor_id: int | None,
        assignee_id: int | None = None,
        *,
        metadata: dict[str, Any] | None = None,
        channel: str | None = None,
    ) -> Assignment:
        """Assign a queued conversation to ``assignee_id`` (defaults to the actor)."""

        assignee = assignee_id if assignee_id is not None else actor_id
        if assignee is None:
            raise MissingTransitionContext("assign_human", ["assignment_user_id"])

        with self._transaction() as (session, repository):
            item = repository.get_queue_item(queue_item_id)
            if item is None or item.queue_id != queue_id:
                raise NotFoundError(f"Queue item {queue_item_id} not found in queue {queue_id}")
            if item.state != QueueItemState.QUEUED:
                raise ConflictError(f"Queue item {queue_item_id} has already been claimed.")

            machine = self._locked_machine(session, repository, item.conversation_id)
            item = repository.get_queue_item(queue_item_id, lock=True)
            if item is None or item.state != QueueItemState.QUEUED:
                raise ConflictError(f"Queue item {queue_item_id} has already been claimed.")
            self._guard(machine, "assign_human")

            machine.apply(
                "assign_human",
                self._context(
                    actor_id,
                    channel,
                    queue_id=queue_id,
                    assignment_user_id=assignee,
                    assignment_metadata={"claimed_by": actor_id, **(metadata or {})},
                ),
            )
            assignment = repository.latest_assignment(machine.conversation.id, assignee)
            if assignment is None:  # pragma: no cover - written by the handler above
                raise ConflictError("Assignment was not created.")
            logger.info(
                "Queue item claimed",
                extra={
                    "conversation_id": machine.conversation.id,
                    "queue_id": queue_id,
                    "assignment_id": assignment.id,
                },
            )
            return assignment

    def _locked_assignment(
        self,
        session: Session,
        repository: LifecycleRepository,
        assignment_id: int,
        expected: str,
    ) -> tuple[ConversationStateMachine, Assignment]:
        assignment = repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        if assignment.status != expected:
            raise ConflictError(f"Assignment {assignment_id} is {assignment.status}, expected {expected}.")

        # Conversation first, then assignment; claims lock in the same order.
        machine = self._locked_machine(session, repository, assignment.conversation_id)
        assignment = repository.get_assignment(assignment_id, lock=True)
        if assignment is None or assignment.status != expected:
            raise ConflictError(f"Assignment {assignment_id} changed while waiting for the lock.")
        return machine, assignment

    def accept(
        self, assignment_id: int, actor_id: int | None, *, channel: str | None = None
    ) -> Assignment:
        with self._transaction() as (session, repository):
            machine, assignment = self._locked_assignment(
                session, repository, assignment_id, AssignmentStatus.ASSIGNED
            )
            self._guard(machine, "human_accepts")
            machine.apply(
                "human_accepts",
                self._context(actor_id, channel, assignment_user_id=assignment.user_id),
            )
            return assignment

    def release(
        self,
        assignment_id: int,
        actor_id: int | None,
        reason: str | None = None,
        *,
        channel: str | None = None,
    ) -> Assignment:
        """Hand the conversation back to the agent.

        The agent job is dispatched by the ``return_to_agent`` subscriber once
        the transaction commits.
        """

        with self._transaction() as (session, repository):
            machine, assignment = self._locked_assignment(
                session, repository, assignment_id, AssignmentStatus.HUMAN_WORKING
            )
            self._guard(machine, "return_to_agent")
            machine.apply(
                "return_to_agent",
                self._context(
                    actor_id,
                    channel,
                    assignment_user_id=assignment.user_id,
                    release_reason=reason,
                ),
            )
            return assignment

    def resolve(
        self,
        assignment_id: int,
        actor_id: int | None,
        summary: str | None = None,
        *,
        channel: str | None = None,
    ) -> Assignment:
        with self._transaction() as (session, repository):
            machine, assignment = self._locked_assignment(
                session, repository, assignment_id, AssignmentStatus.HUMAN_WORKING
            )
            self._guard(machine, "resolve")
            self._resolve(machine, actor_id, channel, assignment.user_id, summary)
            return assignment

    # ------------------------------------------------------------------
    # Conversation-level operations

    def resolve_conversation(
        self,
        conversation_id: int,
        actor_id: int | None,
        summary: str | None = None,
        *,
        channel: str | None = None,
    ) -> Conversation:
        with self._transaction() as (session, repository):
            conversation = repository.get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            machine = self._locked_machine(session, repository, conversation_id)
            self._guard(machine, "resolve")
            self._resolve(machine, actor_id, channel, None, summary)
            return machine.conversation

    def _resolve(
        self,
        machine: ConversationStateMachine,
        actor_id: int | None,
        channel: str | None,
        user_id: int | None,
        summary: str | None,
    ) -> None:
        machine.apply(
            "resolve",
            self._context(
                actor_id,
                channel,
                assignment_user_id=user_id,
                resolution_summary=summary,
            ),
        )
        if self._archive_on_resolve and machine.can("archive"):
            machine.apply("archive", self._context(actor_id, channel))

    def trigger_handoff(
        self,
        conversation_id: int,
        reason_code: str,
        *,
        queue_id: int | None = None,
        actor_id: int | None = None,
        confidence: float | None = None,
        policy_hits: list[str] | None = None,
        required_skills: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        channel: str | None = None,
    ) -> Conversation:
        """Escalate an agent-handled conversation by hand."""

        decision = PolicyDecision(
            should_handoff=True,
            reason=reason_code,
            confidence=confidence,
            policy_hits=list(policy_hits or []),
            required_skills=list(required_skills or []),
            handoff_metadata={"source": "manual", **(metadata or {})},
            queue_metadata={"reason": reason_code},
        )

        with self._transaction() as (session, repository):
            conversation = repository.get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if queue_id is None:
                if self._resolver is None:
                    raise ConflictError("A queue_id is required when no queue resolver is configured.")
                queue_id = self._resolver.require(
                    decision, conversation_priority=conversation.priority
                ).id

            machine = self._locked_machine(session, repository, conversation_id)
            self._guard(machine, "handoff_required")
            handoff_context = decision.transition_context()
            machine.apply("handoff_required", self._context(actor_id, channel, **handoff_context))
            machine.apply(
                "enqueue_for_human",
                self._context(
                    actor_id,
                    channel,
                    queue_id=queue_id,
                    queue_item_metadata={
                        **decision.queue_metadata,
                        "required_skills": decision.required_skills,
                    },
                ),
            )
            return machine.conversation


__all__ = ["LifecycleService"]
