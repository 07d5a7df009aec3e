"""Handoff rules as data and the pure matcher that evaluates them.

A rule is a trigger type plus a JSON criteria payload.  :func:`rule_matches`
dispatches on the trigger type; unknown trigger types never match so a
misconfigured rule cannot force escalations.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..models import TriggerType


@dataclass(frozen=True)
class RuleSnapshot:
    """Read-only view of an active rule joined with its owning policy."""

    id: int
    policy_id: int
    policy_name: str
    reason_code: str
    trigger_type: str
    criteria: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 0
    required_skills: tuple[str, ...] = ()
    confidence_threshold: float | None = None

    @property
    def hit(self) -> str:
        return f"{self.reason_code}.{self.trigger_type}"


@dataclass(frozen=True)
class ToolError:
    retryable: bool

    @property
    def label(self) -> str:
        return "retryable" if self.retryable else "unrecoverable"


@dataclass(frozen=True)
class AgentPayload:
    """Normalised automated-response payload."""

    response: str | None = None
    confidence: float | None = None
    reason: str | None = None
    policy_flags: tuple[str, ...] = ()
    handoff_requested: bool = False
    tool_error: ToolError | None = None
    handoff_metadata: Mapping[str, Any] = field(default_factory=dict)


def normalize_confidence(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    if confidence != confidence or confidence < 0 or confidence > 1:
        return None
    return confidence


def normalize_flags(flags: Any) -> tuple[str, ...]:
    if flags is None:
        return ()
    if isinstance(flags, str):
        flags = [flags]
    seen: list[str] = []
    for flag in flags:
        if not isinstance(flag, str):
            continue
        cleaned = flag.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return tuple(seen)


def normalize_reason(reason: Any) -> str | None:
    if not isinstance(reason, str):
        return None
    trimmed = reason.strip()
    if not trimmed:
        return None
    return trimmed.lower().replace(" ", "_")


def normalize_tool_error(value: Any) -> ToolError | None:
    if isinstance(value, Mapping):
        return ToolError(retryable=bool(value.get("retryable", False)))
    if value:
        return ToolError(retryable=False)
    return None


def normalize_payload(payload: Mapping[str, Any]) -> AgentPayload:
    metadata = payload.get("handoff_metadata")
    response = payload.get("response")
    return AgentPayload(
        response=response if isinstance(response, str) else None,
        confidence=normalize_confidence(payload.get("confidence")),
        reason=normalize_reason(payload.get("reason")),
        policy_flags=normalize_flags(payload.get("policy_flags")),
        handoff_requested=bool(payload.get("handoff", False)),
        tool_error=normalize_tool_error(payload.get("tool_error")),
        handoff_metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
    )


def _confidence_below_threshold(rule: RuleSnapshot, payload: AgentPayload) -> bool:
    threshold = rule.criteria.get("threshold")
    if threshold is None:
        threshold = rule.confidence_threshold
    if threshold is None or payload.confidence is None:
        return False
    return payload.confidence < float(threshold)


def _policy_flag_detected(rule: RuleSnapshot, payload: AgentPayload) -> bool:
    expected = set(normalize_flags(rule.criteria.get("flags")))
    return bool(expected.intersection(payload.policy_flags))


def _tool_error(rule: RuleSnapshot, payload: AgentPayload) -> bool:
    if payload.tool_error is None:
        return False
    expected = rule.criteria.get("retryable")
    if expected is None:
        return True
    return payload.tool_error.retryable == bool(expected)


def _agent_requested_handoff(rule: RuleSnapshot, payload: AgentPayload) -> bool:
    return payload.handoff_requested


Matcher = Callable[[RuleSnapshot, AgentPayload], bool]

MATCHERS: dict[str, Matcher] = {
    TriggerType.CONFIDENCE_BELOW_THRESHOLD: _confidence_below_threshold,
    TriggerType.POLICY_FLAG_DETECTED: _policy_flag_detected,
    TriggerType.TOOL_ERROR: _tool_error,
    TriggerType.AGENT_REQUESTED_HANDOFF: _agent_requested_handoff,
}


def rule_matches(rule: RuleSnapshot, payload: AgentPayload) -> bool:
    matcher = MATCHERS.get(rule.trigger_type)
    return matcher is not None and matcher(rule, payload)


def order_rules(rules: Iterable[RuleSnapshot]) -> list[RuleSnapshot]:
    """Highest priority first; ties broken by rule id."""

    return sorted(rules, key=lambda rule: (-rule.priority, rule.id))


def first_match(rules: Iterable[RuleSnapshot], payload: AgentPayload) -> RuleSnapshot | None:
    for rule in order_rules(rules):
        if rule_matches(rule, payload):
            return rule
    return None


__all__ = [
    "AgentPayload",
    "MATCHERS",
    "RuleSnapshot",
    "ToolError",
    "first_match",
    "normalize_payload",
    "order_rules",
    "rule_matches",
]
