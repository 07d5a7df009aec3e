"""Handoff policy evaluation and queue resolution."""

from .evaluator import UNCERTAIN_INTENT, PolicyDecision, PolicyEvaluationService
from .queue_resolver import QueueResolver, QueueSnapshot, sqlalchemy_queue_loader
from .repository import InMemoryPolicyRepository, PolicyRepository, SqlAlchemyPolicyRepository
from .rules import AgentPayload, RuleSnapshot, normalize_payload

__all__ = [
    "AgentPayload",
    "InMemoryPolicyRepository",
    "PolicyDecision",
    "PolicyEvaluationService",
    "PolicyRepository",
    "QueueResolver",
    "QueueSnapshot",
    "RuleSnapshot",
    "SqlAlchemyPolicyRepository",
    "UNCERTAIN_INTENT",
    "normalize_payload",
    "sqlalchemy_queue_loader",
]
