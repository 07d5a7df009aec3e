"""Sources of active handoff rules."""

from __future__ import annotations

from typing import Iterable, List, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..models import HandoffPolicy, HandoffPolicyRule
from .rules import RuleSnapshot


class PolicyRepository(Protocol):
    """Persistence contract used by the policy evaluator."""

    def active_rules(self) -> List[RuleSnapshot]: ...


def snapshot_rule(policy: HandoffPolicy, rule: HandoffPolicyRule) -> RuleSnapshot:
    return RuleSnapshot(
        id=rule.id,
        policy_id=policy.id,
        policy_name=policy.name,
        reason_code=policy.reason_code,
        trigger_type=rule.trigger_type,
        criteria=dict(rule.criteria or {}),
        priority=int(rule.priority or 0),
        required_skills=tuple(dict.fromkeys(policy.required_skills or [])),
        confidence_threshold=policy.confidence_threshold,
    )


class SqlAlchemyPolicyRepository:
    """Load active rules of active policies from the database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def active_rules(self) -> List[RuleSnapshot]:
        stmt = (
            select(HandoffPolicy, HandoffPolicyRule)
            .join(HandoffPolicyRule, HandoffPolicyRule.handoff_policy_id == HandoffPolicy.id)
            .where(HandoffPolicy.active.is_(True), HandoffPolicyRule.active.is_(True))
            .order_by(HandoffPolicyRule.priority.desc(), HandoffPolicyRule.id)
        )
        with self._session_factory() as session:
            return [snapshot_rule(policy, rule) for policy, rule in session.execute(stmt).all()]


class InMemoryPolicyRepository:
    """Simple repository for tests and embedded use."""

    def __init__(self, rules: Iterable[RuleSnapshot] = ()) -> None:
        self._rules: List[RuleSnapshot] = list(rules)

    def add(self, rule: RuleSnapshot) -> RuleSnapshot:
        self._rules.append(rule)
        return rule

    def active_rules(self) -> List[RuleSnapshot]:
        return list(self._rules)


__all__ = [
    "InMemoryPolicyRepository",
    "PolicyRepository",
    "SqlAlchemyPolicyRepository",
    "snapshot_rule",
]
