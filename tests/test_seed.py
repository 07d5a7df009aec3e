"""Integration-style tests for the seeding helpers."""

from __future__ import annotations

from sqlalchemy import select

from switchboard.models import HandoffPolicy, HandoffPolicyRule, Queue
from switchboard.policies import (
    PolicyEvaluationService,
    QueueResolver,
    SqlAlchemyPolicyRepository,
    sqlalchemy_queue_loader,
)
from switchboard.seed import DEFAULT_POLICIES, DEFAULT_QUEUES, _safe_url, seed


def test_seed_is_idempotent(session_factory, store):
    seed(session_factory)
    seed(session_factory)

    queues = store.all(Queue)
    assert len(queues) == len(DEFAULT_QUEUES) == 4
    assert [q.slug for q in queues if q.is_default] == ["general-support"]

    policies = store.all(HandoffPolicy)
    assert len(policies) == len(DEFAULT_POLICIES) == 6
    assert all(p.meta == {"seeded": True} for p in policies)
    assert len(store.all(HandoffPolicyRule)) == 6


def test_seed_refreshes_edited_rows(session_factory):
    seed(session_factory)
    with session_factory.begin() as session:
        queue = session.execute(select(Queue).where(Queue.slug == "billing")).scalar_one()
        queue.skills_required = ["billing"]
        rule = session.execute(
            select(HandoffPolicyRule).where(HandoffPolicyRule.priority == 100)
        ).scalar_one()
        rule.active = False

    seed(session_factory)

    with session_factory() as session:
        queue = session.execute(select(Queue).where(Queue.slug == "billing")).scalar_one()
        assert queue.skills_required == ["billing", "refund"]
        rule = session.execute(
            select(HandoffPolicyRule).where(HandoffPolicyRule.priority == 100)
        ).scalar_one()
        assert rule.active is True


def test_seeded_rules_route_to_specialist_queues(session_factory):
    seed(session_factory)
    evaluator = PolicyEvaluationService(SqlAlchemyPolicyRepository(session_factory))
    resolver = QueueResolver(sqlalchemy_queue_loader(session_factory), ttl_seconds=0)

    cases = [
        ({"confidence": 0.9, "policy_flags": ["legal"]}, "policy_flag", "escalations"),
        ({"confidence": 0.9, "policy_flags": ["refund_request"]}, "billing_specialist", "billing"),
        ({"confidence": 0.9, "policy_flags": ["system_error"]}, "technical_support", "technical-support"),
        ({"confidence": 0.4}, "low_confidence", "general-support"),
        ({"confidence": 0.9, "handoff": True}, "agent_requested_handoff", "general-support"),
    ]
    for payload, reason, slug in cases:
        decision = evaluator.evaluate({"response": "ok", **payload})
        assert decision.should_handoff is True
        assert decision.reason == reason
        assert resolver.require(decision).slug == slug


def test_confident_answer_is_not_escalated(session_factory):
    seed(session_factory)
    evaluator = PolicyEvaluationService(SqlAlchemyPolicyRepository(session_factory))

    decision = evaluator.evaluate({"response": "Done", "confidence": 0.95, "policy_flags": []})

    assert decision.should_handoff is False


def test_safe_url_masks_password():
    masked = _safe_url("postgresql+psycopg://router:s3cret@db:5432/switchboard")

    assert "s3cret" not in masked
    assert masked.startswith("postgresql+psycopg://router:")
    assert masked.endswith("@db:5432/switchboard")
    assert _safe_url("sqlite:///switchboard.db") == "sqlite:///switchboard.db"
