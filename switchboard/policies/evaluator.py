"""Decide whether an automated response must be escalated to a human."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .repository import PolicyRepository
from .rules import AgentPayload, first_match, normalize_payload

logger = logging.getLogger(__name__)

UNCERTAIN_INTENT = "uncertain_intent"


@dataclass(frozen=True)
class PolicyDecision:
    should_handoff: bool
    reason: str | None = None
    confidence: float | None = None
    policy_hits: list[str] = field(default_factory=list)
    required_skills: list[str] = field(default_factory=list)
    handoff_metadata: dict[str, Any] = field(default_factory=dict)
    queue_metadata: dict[str, Any] = field(default_factory=dict)

    def forced(self, reason: str = UNCERTAIN_INTENT) -> "PolicyDecision":
        """Return a copy that escalates with ``reason``, keeping the evaluation details."""

        return PolicyDecision(
            should_handoff=True,
            reason=reason,
            confidence=self.confidence,
            policy_hits=list(self.policy_hits),
            required_skills=list(self.required_skills),
            handoff_metadata=dict(self.handoff_metadata),
            queue_metadata={**self.queue_metadata, "reason": reason},
        )

    def transition_context(self) -> dict[str, Any]:
        """Context for the ``handoff_required`` transition."""

        return {
            "reason_code": self.reason,
            "confidence": self.confidence,
            "policy_hits": list(self.policy_hits),
            "required_skills": list(self.required_skills),
            "handoff_metadata": dict(self.handoff_metadata),
        }


def _queue_metadata(reason: str | None, payload: AgentPayload) -> dict[str, Any]:
    values = {
        "reason": reason,
        "policy_flags": list(payload.policy_flags),
        "tool_error": payload.tool_error.label if payload.tool_error else None,
    }
    return {key: value for key, value in values.items() if value is not None and value != []}


class PolicyEvaluationService:
    """Evaluate an agent payload against the active handoff rules.

    Rules are visited by descending priority (rule id breaks ties) and the
    first match decides: the decision takes the owning policy's reason code
    and required skills.  Without a match the conversation stays with the
    agent.
    """

    def __init__(self, repository: PolicyRepository) -> None:
        self._repository = repository

    def evaluate(self, payload: Mapping[str, Any]) -> PolicyDecision:
        normalized = normalize_payload(payload)
        rule = first_match(self._repository.active_rules(), normalized)

        if rule is None:
            return PolicyDecision(
                should_handoff=False,
                reason=normalized.reason,
                confidence=normalized.confidence,
                handoff_metadata=dict(normalized.handoff_metadata),
                queue_metadata=_queue_metadata(normalized.reason, normalized),
            )

        logger.debug("Handoff rule %s matched (%s)", rule.id, rule.hit)
        metadata = dict(normalized.handoff_metadata)
        metadata["policy"] = {
            "id": rule.policy_id,
            "name": rule.policy_name,
            "reason_code": rule.reason_code,
            "rule_id": rule.id,
            "rule_trigger": rule.trigger_type,
        }
        return PolicyDecision(
            should_handoff=True,
            reason=rule.reason_code,
            confidence=normalized.confidence,
            policy_hits=[rule.hit],
            required_skills=list(rule.required_skills),
            handoff_metadata=metadata,
            queue_metadata=_queue_metadata(rule.reason_code, normalized),
        )


__all__ = ["PolicyDecision", "PolicyEvaluationService", "UNCERTAIN_INTENT"]
