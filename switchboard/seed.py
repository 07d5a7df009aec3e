"""Bootstrap the database with the routing schema, stock queues and policies."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv
from sqlalchemy import Engine, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .models import HandoffPolicy, HandoffPolicyRule, Queue, TriggerType
from .models.session import create_schema, get_engine, get_sessionmaker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueSeed:
    name: str
    slug: str
    skills_required: list[str] = field(default_factory=list)
    is_default: bool = False
    priority_policy: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


@dataclass(frozen=True)
class RuleSeed:
    trigger_type: str
    criteria: dict[str, Any] = field(default_factory=dict)
    priority: int = 0


@dataclass(frozen=True)
class PolicySeed:
    reason_code: str
    name: str
    rules: list[RuleSeed]
    required_skills: list[str] = field(default_factory=list)
    confidence_threshold: float | None = None


DEFAULT_QUEUES: tuple[QueueSeed, ...] = (
    QueueSeed(
        name="General Support",
        slug="general-support",
        skills_required=["general_support"],
        is_default=True,
        description="Catch-all queue for escalations without a specialist match.",
    ),
    QueueSeed(
        name="Escalations",
        slug="escalations",
        skills_required=["escalation", "compliance"],
        priority_policy={"critical": "page_on_call", "high": "front_of_queue"},
    ),
    QueueSeed(name="Billing", slug="billing", skills_required=["billing", "refund"]),
    QueueSeed(
        name="Technical Support",
        slug="technical-support",
        skills_required=["technical", "troubleshooting"],
    ),
)

DEFAULT_POLICIES: tuple[PolicySeed, ...] = (
    PolicySeed(
        reason_code="low_confidence",
        name="Low Confidence Escalation",
        confidence_threshold=0.6,
        required_skills=["general_support"],
        rules=[RuleSeed(TriggerType.CONFIDENCE_BELOW_THRESHOLD, {"threshold": 0.6}, 100)],
    ),
    PolicySeed(
        reason_code="policy_flag",
        name="Policy Flag Review",
        required_skills=["escalation"],
        rules=[
            RuleSeed(
                TriggerType.POLICY_FLAG_DETECTED,
                {
                    "flags": [
                        "pii",
                        "legal",
                        "compliance",
                        "urgent_request",
                        "legal_issue",
                        "compliance_required",
                    ]
                },
                90,
            )
        ],
    ),
    PolicySeed(
        reason_code="tool_error",
        name="Tool Error Intervention",
        required_skills=["technical"],
        rules=[RuleSeed(TriggerType.TOOL_ERROR, {"retryable": False}, 80)],
    ),
    PolicySeed(
        reason_code="billing_specialist",
        name="Billing Specialist",
        required_skills=["billing", "refund"],
        rules=[
            RuleSeed(
                TriggerType.POLICY_FLAG_DETECTED,
                {"flags": ["billing_issue", "payment_problem", "refund_request"]},
                70,
            )
        ],
    ),
    PolicySeed(
        reason_code="technical_support",
        name="Technical Support",
        required_skills=["technical", "troubleshooting"],
        rules=[
            RuleSeed(
                TriggerType.POLICY_FLAG_DETECTED,
                {"flags": ["technical_issue", "system_error", "account_access"]},
                60,
            )
        ],
    ),
    PolicySeed(
        reason_code="agent_requested_handoff",
        name="Agent Requested Handoff",
        rules=[RuleSeed(TriggerType.AGENT_REQUESTED_HANDOFF, {}, 10)],
    ),
)


def _safe_url(db_url: str) -> str:
    """Return a version of ``db_url`` with any password redacted."""

    parsed = make_url(db_url)
    if parsed.password is None:
        return db_url
    return parsed.set(password="***").render_as_string(hide_password=False)


def wait_for_database(engine: Engine, max_attempts: int = 10, delay: float = 3.0) -> None:
    """Attempt to establish a database connection, retrying if necessary."""

    for attempt in range(1, max_attempts + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except Exception as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue

        logger.info("Database connection established after %d attempt(s)", attempt)
        return


def seed_queues(session: Session, queues: tuple[QueueSeed, ...] = DEFAULT_QUEUES) -> list[Queue]:
    seeded = []
    for config in queues:
        queue = session.execute(select(Queue).where(Queue.slug == config.slug)).scalar_one_or_none()
        if queue is None:
            queue = Queue(slug=config.slug)
            session.add(queue)
            logger.info("Created queue %s", config.slug)
        queue.name = config.name
        queue.description = config.description
        queue.is_default = config.is_default
        queue.skills_required = list(config.skills_required)
        queue.priority_policy = dict(config.priority_policy)
        session.flush()
        seeded.append(queue)
    return seeded


def seed_policies(
    session: Session, policies: tuple[PolicySeed, ...] = DEFAULT_POLICIES
) -> list[HandoffPolicy]:
    seeded = []
    for config in policies:
        policy = session.execute(
            select(HandoffPolicy).where(HandoffPolicy.reason_code == config.reason_code)
        ).scalar_one_or_none()
        if policy is None:
            policy = HandoffPolicy(reason_code=config.reason_code)
            session.add(policy)
            logger.info("Created handoff policy %s", config.reason_code)
        policy.name = config.name
        policy.confidence_threshold = config.confidence_threshold
        policy.required_skills = list(config.required_skills)
        policy.meta = {"seeded": True}
        policy.active = True
        session.flush()

        existing = {rule.trigger_type: rule for rule in policy.rules}
        for rule_config in config.rules:
            rule = existing.get(rule_config.trigger_type)
            if rule is None:
                rule = HandoffPolicyRule(trigger_type=rule_config.trigger_type)
                policy.rules.append(rule)
            rule.criteria = dict(rule_config.criteria)
            rule.priority = rule_config.priority
            rule.active = True
        session.flush()
        seeded.append(policy)
    return seeded


def seed(factory: sessionmaker[Session]) -> None:
    with factory.begin() as session:
        queues = seed_queues(session)
        policies = seed_policies(session)
    logger.info("Seeded %d queue(s) and %d handoff policy(ies)", len(queues), len(policies))


def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    settings = get_settings()
    engine = get_engine(settings.database_url)
    logger.info("Starting seed process using %s", _safe_url(settings.database_url))

    wait_for_database(engine)
    create_schema(engine)
    logger.info("Schema ensured successfully.")

    seed(get_sessionmaker(engine=engine))
    logger.info("Seed process completed.")


if __name__ == "__main__":
    main()
