import pytest

from switchboard.models import TriggerType
from switchboard.policies import (
    InMemoryPolicyRepository,
    PolicyEvaluationService,
    RuleSnapshot,
    SqlAlchemyPolicyRepository,
    normalize_payload,
)


def _rule(rule_id, reason_code, trigger_type, criteria=None, priority=0, **kwargs):
    return RuleSnapshot(
        id=rule_id,
        policy_id=rule_id * 10,
        policy_name=reason_code.replace("_", " ").title(),
        reason_code=reason_code,
        trigger_type=trigger_type,
        criteria=criteria or {},
        priority=priority,
        **kwargs,
    )


def _evaluator(*rules):
    return PolicyEvaluationService(InMemoryPolicyRepository(rules))


LOW_CONFIDENCE = _rule(
    1,
    "low_confidence",
    TriggerType.CONFIDENCE_BELOW_THRESHOLD,
    {"threshold": 0.6},
    priority=100,
    required_skills=("general_support",),
)
FLAGGED = _rule(
    2,
    "policy_flag",
    TriggerType.POLICY_FLAG_DETECTED,
    {"flags": ["legal", "pii"]},
    priority=90,
    required_skills=("escalation",),
)


def test_no_rules_means_no_handoff():
    decision = _evaluator().evaluate(
        {"response": "Hi", "confidence": 0.2, "reason": " Needs Review ", "handoff": True}
    )

    assert decision.should_handoff is False
    assert decision.reason == "needs_review"
    assert decision.confidence == 0.2
    assert decision.policy_hits == []
    assert decision.required_skills == []


def test_low_confidence_rule_matches():
    decision = _evaluator(LOW_CONFIDENCE, FLAGGED).evaluate(
        {"response": "Maybe?", "confidence": 0.4, "reason": "unsure", "policy_flags": []}
    )

    assert decision.should_handoff is True
    assert decision.reason == "low_confidence"
    assert decision.confidence == 0.4
    assert decision.policy_hits == ["low_confidence.confidence_below_threshold"]
    assert decision.required_skills == ["general_support"]
    assert decision.handoff_metadata["policy"] == {
        "id": 10,
        "name": "Low Confidence",
        "reason_code": "low_confidence",
        "rule_id": 1,
        "rule_trigger": TriggerType.CONFIDENCE_BELOW_THRESHOLD,
    }
    assert decision.queue_metadata == {"reason": "low_confidence"}


@pytest.mark.parametrize("confidence", [0.6, 0.95, None, "high", 1.5, -0.1, True])
def test_confidence_rule_needs_a_value_strictly_below_threshold(confidence):
    decision = _evaluator(LOW_CONFIDENCE).evaluate({"confidence": confidence})
    assert decision.should_handoff is False


def test_confidence_rule_falls_back_to_policy_threshold():
    rule = _rule(3, "low_confidence", TriggerType.CONFIDENCE_BELOW_THRESHOLD, confidence_threshold=0.5)

    assert _evaluator(rule).evaluate({"confidence": 0.45}).should_handoff is True
    assert _evaluator(rule).evaluate({"confidence": 0.55}).should_handoff is False


def test_flags_are_normalised_before_matching():
    decision = _evaluator(FLAGGED).evaluate(
        {"confidence": 0.9, "policy_flags": [" Legal ", "legal", "other", 7]}
    )

    assert decision.should_handoff is True
    assert decision.reason == "policy_flag"
    assert decision.queue_metadata == {"reason": "policy_flag", "policy_flags": ["legal", "other"]}


def test_highest_priority_rule_wins():
    decision = _evaluator(FLAGGED, LOW_CONFIDENCE).evaluate(
        {"confidence": 0.1, "policy_flags": ["pii"]}
    )

    assert decision.reason == "low_confidence"


def test_rule_id_breaks_priority_ties():
    first = _rule(5, "first", TriggerType.AGENT_REQUESTED_HANDOFF, priority=10)
    second = _rule(4, "second", TriggerType.AGENT_REQUESTED_HANDOFF, priority=10)

    decision = _evaluator(first, second).evaluate({"handoff": True})

    assert decision.reason == "second"


@pytest.mark.parametrize(
    "criteria, tool_error, expected",
    [
        ({"retryable": False}, {"retryable": False}, True),
        ({"retryable": False}, {"retryable": True}, False),
        ({"retryable": False}, True, True),
        ({"retryable": True}, {"retryable": True}, True),
        ({}, {"retryable": True}, True),
        ({}, None, False),
        ({}, False, False),
    ],
)
def test_tool_error_rule(criteria, tool_error, expected):
    rule = _rule(6, "tool_error", TriggerType.TOOL_ERROR, criteria, required_skills=("technical",))

    decision = _evaluator(rule).evaluate({"confidence": 0.9, "tool_error": tool_error})

    assert decision.should_handoff is expected


def test_tool_error_class_is_recorded_for_the_queue():
    rule = _rule(6, "tool_error", TriggerType.TOOL_ERROR)

    decision = _evaluator(rule).evaluate({"tool_error": {"retryable": True}})

    assert decision.queue_metadata == {"reason": "tool_error", "tool_error": "retryable"}


def test_agent_requested_handoff_only_matches_explicit_request():
    rule = _rule(7, "agent_requested_handoff", TriggerType.AGENT_REQUESTED_HANDOFF)

    assert _evaluator(rule).evaluate({"handoff": False}).should_handoff is False
    assert _evaluator(rule).evaluate({"handoff": True}).reason == "agent_requested_handoff"


def test_unknown_trigger_types_never_match():
    rule = _rule(8, "mystery", "sentiment_dropped", priority=1000)

    assert _evaluator(rule).evaluate({"handoff": True, "confidence": 0.0}).should_handoff is False


def test_handoff_metadata_is_carried_forward():
    decision = _evaluator(FLAGGED).evaluate(
        {"policy_flags": ["pii"], "handoff_metadata": {"ticket": "T-1"}}
    )

    assert decision.handoff_metadata["ticket"] == "T-1"
    assert decision.transition_context() == {
        "reason_code": "policy_flag",
        "confidence": None,
        "policy_hits": ["policy_flag.policy_flag_detected"],
        "required_skills": ["escalation"],
        "handoff_metadata": decision.handoff_metadata,
    }


def test_forced_decision_keeps_details():
    decision = _evaluator().evaluate({"confidence": 0.7, "reason": "answered"})

    forced = decision.forced()

    assert forced.should_handoff is True
    assert forced.reason == "uncertain_intent"
    assert forced.confidence == 0.7
    assert forced.queue_metadata["reason"] == "uncertain_intent"


def test_normalize_payload_defaults():
    payload = normalize_payload({})

    assert payload.confidence is None
    assert payload.policy_flags == ()
    assert payload.handoff_requested is False
    assert payload.tool_error is None


def test_sqlalchemy_repository_skips_inactive_rows(store, session_factory):
    store.policy("low_confidence", TriggerType.CONFIDENCE_BELOW_THRESHOLD, criteria={"threshold": 0.6})
    store.policy("retired", TriggerType.AGENT_REQUESTED_HANDOFF, active=False)
    store.policy("paused", TriggerType.AGENT_REQUESTED_HANDOFF, rule_active=False)
    store.policy(
        "billing_specialist",
        TriggerType.POLICY_FLAG_DETECTED,
        criteria={"flags": ["billing_issue"]},
        priority=70,
        required_skills=("billing", "refund", "billing"),
    )

    rules = SqlAlchemyPolicyRepository(session_factory).active_rules()

    assert [r.reason_code for r in rules] == ["billing_specialist", "low_confidence"]
    assert rules[0].required_skills == ("billing", "refund")

    decision = PolicyEvaluationService(SqlAlchemyPolicyRepository(session_factory)).evaluate(
        {"handoff": True, "policy_flags": ["billing_issue"], "confidence": 0.9}
    )
    assert decision.reason == "billing_specialist"
    assert decision.required_skills == ["billing", "refund"]


def test_rules_added_to_repository_are_evaluated():
    repository = InMemoryPolicyRepository([FLAGGED])
    evaluator = PolicyEvaluationService(repository)
    payload = {"response": "Hmm", "confidence": 0.3, "policy_flags": ["legal"]}

    assert evaluator.evaluate(payload).reason == "policy_flag"

    repository.add(LOW_CONFIDENCE)
    decision = evaluator.evaluate(payload)

    assert decision.reason == "low_confidence"
    assert decision.required_skills == ["general_support"]
