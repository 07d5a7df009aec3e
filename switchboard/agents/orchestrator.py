"""Run the automated agent for one conversation and escalate when required.

The generator call is the only slow step, so it happens between two short
transactions: the first moves the conversation into ``agent_working`` and
snapshots the transcript, the second re-locks the conversation, re-checks
that it is still with the agent and persists the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ..errors import AgentRunFailed
from ..lifecycle.audit import AuditRecorder
from ..lifecycle.repository import LifecycleRepository
from ..lifecycle.state_machine import StateMachineFactory
from ..models import Conversation, ConversationStatus, SenderType
from ..policies.evaluator import UNCERTAIN_INTENT, PolicyDecision, PolicyEvaluationService
from ..policies.queue_resolver import QueueResolver, QueueSnapshot
from .results import AgentRunResult, ConversationView, ResponseGenerator

logger = logging.getLogger(__name__)


class OutcomeStatus:
    MISSING = "missing"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"
    ANSWERED = "answered"
    ESCALATED = "escalated"
    UNROUTABLE = "unroutable"


@dataclass(frozen=True)
class AgentOutcome:
    conversation_id: int
    status: str
    message_id: int | None = None
    decision: PolicyDecision | None = None
    queue_id: int | None = None


class AgentOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        machines: StateMachineFactory,
        generator: ResponseGenerator,
        evaluator: PolicyEvaluationService,
        resolver: QueueResolver,
        *,
        channel: str = "system",
    ) -> None:
        self._session_factory = session_factory
        self._machines = machines
        self._generator = generator
        self._evaluator = evaluator
        self._resolver = resolver
        self._channel = channel

    def run(self, conversation_id: int) -> AgentOutcome:
        """Process ``conversation_id``; raises :class:`AgentRunFailed` on generator failure."""

        view = self._begin(conversation_id)
        if isinstance(view, AgentOutcome):
            return view

        result = self._generator.generate(view)
        logger.debug(
            "Agent run completed with status %s",
            result.status,
            extra={"conversation_id": conversation_id},
        )

        if result.is_failure:
            raise AgentRunFailed(result.error or "Agent run failed.")

        if result.is_success:
            decision = self._evaluator.evaluate(result.payload)
        else:
            decision = self._evaluate_fallback(result)

        queue = None
        if decision.should_handoff:
            queue = self._resolver.resolve(decision, conversation_priority=view.priority)

        with self._session_factory.begin() as session:
            conversation = LifecycleRepository(session).get_conversation(conversation_id, lock=True)
            if conversation is None:
                return AgentOutcome(conversation_id, OutcomeStatus.MISSING)
            if conversation.status != ConversationStatus.AGENT_WORKING:
                logger.warning(
                    "Discarding agent result; conversation moved to %s while the agent ran",
                    conversation.status,
                    extra={"conversation_id": conversation_id},
                )
                return AgentOutcome(conversation_id, OutcomeStatus.SUPERSEDED, decision=decision)

            message_id = None
            if result.is_success:
                message_id = self._persist_message(session, conversation, result.payload, decision)
            if not decision.should_handoff:
                return AgentOutcome(
                    conversation_id, OutcomeStatus.ANSWERED, message_id=message_id, decision=decision
                )
            return self._handoff(session, conversation, decision, queue, message_id)

    # ------------------------------------------------------------------
    # Steps

    def _begin(self, conversation_id: int) -> ConversationView | AgentOutcome:
        with self._session_factory.begin() as session:
            repository = LifecycleRepository(session)
            conversation = repository.get_conversation(conversation_id, lock=True)
            if conversation is None:
                return AgentOutcome(conversation_id, OutcomeStatus.MISSING)

            machine = self._machines.get(session, conversation)
            if conversation.status != ConversationStatus.AGENT_WORKING and machine.can("agent_begins"):
                machine.apply(
                    "agent_begins",
                    {"channel": self._channel, "occurred_at": self._machines.clock()},
                )

            if conversation.status != ConversationStatus.AGENT_WORKING:
                logger.warning(
                    "Agent job cannot proceed; conversation is %s",
                    conversation.status,
                    extra={"conversation_id": conversation_id},
                )
                return AgentOutcome(conversation_id, OutcomeStatus.SKIPPED)

            return ConversationView.from_model(
                conversation, repository.list_messages(conversation_id)
            )

    def _evaluate_fallback(self, result: AgentRunResult) -> PolicyDecision:
        decision = self._evaluator.evaluate(
            {
                "handoff": True,
                "reason": UNCERTAIN_INTENT,
                "confidence": None,
                "policy_flags": [],
                "handoff_metadata": {"error": result.error, "source": "agent_runner"},
            }
        )
        if not decision.should_handoff:
            # A fallback conversation is never left with the agent.
            decision = decision.forced(UNCERTAIN_INTENT)
        return decision

    def _persist_message(
        self,
        session: Session,
        conversation: Conversation,
        payload: dict[str, Any],
        decision: PolicyDecision,
    ) -> int:
        now = self._machines.clock()
        repository = LifecycleRepository(session)
        message = repository.add_message(
            conversation.id,
            sender_type=SenderType.AGENT,
            content=str(payload.get("response") or ""),
            confidence=decision.confidence,
            metadata={
                "reason": payload.get("reason"),
                "policy_flags": payload.get("policy_flags") or [],
                "source": "agent_runner",
                "policy_evaluation": decision.transition_context(),
            },
            created_at=now,
        )
        repository.touch_activity(conversation, now)
        AuditRecorder(session, default_channel=self._channel).record_message(
            message, extra={"should_handoff": decision.should_handoff}
        )
        return message.id

    def _handoff(
        self,
        session: Session,
        conversation: Conversation,
        decision: PolicyDecision,
        queue: QueueSnapshot | None,
        message_id: int | None,
    ) -> AgentOutcome:
        machine = self._machines.get(session, conversation)
        if machine.can("handoff_required"):
            handoff_at = self._machines.clock()
            context = decision.transition_context()
            context.update(
                reason_code=decision.reason or UNCERTAIN_INTENT,
                channel=self._channel,
                occurred_at=handoff_at,
                handoff_at=handoff_at,
            )
            machine.apply("handoff_required", context)

        if queue is None:
            logger.warning(
                "Unable to resolve queue for agent handoff",
                extra={"conversation_id": conversation.id, "transition": "enqueue_for_human"},
            )
            AuditRecorder(session, default_channel=self._channel).record(
                "conversation.handoff_unroutable",
                conversation_id=conversation.id,
                payload={
                    "reason_code": decision.reason,
                    "required_skills": list(decision.required_skills),
                    "policy_hits": list(decision.policy_hits),
                },
                subject_type="conversation",
                subject_id=conversation.id,
                occurred_at=self._machines.clock(),
            )
            return AgentOutcome(
                conversation.id, OutcomeStatus.UNROUTABLE, message_id=message_id, decision=decision
            )

        if machine.can("enqueue_for_human"):
            enqueued_at = self._machines.clock()
            machine.apply(
                "enqueue_for_human",
                {
                    "queue_id": queue.id,
                    "queue_item_metadata": {
                        **decision.queue_metadata,
                        "policy_hits": list(decision.policy_hits),
                        "required_skills": list(decision.required_skills),
                    },
                    "channel": self._channel,
                    "occurred_at": enqueued_at,
                    "enqueued_at": enqueued_at,
                },
            )
        return AgentOutcome(
            conversation.id,
            OutcomeStatus.ESCALATED,
            message_id=message_id,
            decision=decision,
            queue_id=queue.id,
        )


__all__ = ["AgentOrchestrator", "AgentOutcome", "OutcomeStatus"]
