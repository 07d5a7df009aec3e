"""Handoff policy models.

Policies own a reason code and the skills an escalation under that reason
requires; each policy has one or more rules stored as data (a trigger type
plus a JSON criteria payload) and evaluated by
:mod:`switchboard.policies.rules`.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, List

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..clock import utcnow
from . import Base, JsonType


class TriggerType:
    CONFIDENCE_BELOW_THRESHOLD = "confidence_below_threshold"
    POLICY_FLAG_DETECTED = "policy_flag_detected"
    TOOL_ERROR = "tool_error"
    AGENT_REQUESTED_HANDOFF = "agent_requested_handoff"

    ALL = (
        CONFIDENCE_BELOW_THRESHOLD,
        POLICY_FLAG_DETECTED,
        TOOL_ERROR,
        AGENT_REQUESTED_HANDOFF,
    )


class HandoffPolicy(Base):
    """A named escalation reason with its required skills."""

    __tablename__ = "handoff_policies"
    __table_args__ = (
        Index("ix_handoff_policies_reason_code_unique", "reason_code", unique=True),
        Index("ix_handoff_policies_active", "active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    reason_code: Mapped[str] = mapped_column(String(length=100), nullable=False)
    confidence_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    required_skills: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JsonType, nullable=True)
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    rules: Mapped[List["HandoffPolicyRule"]] = relationship(
        back_populates="policy",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="HandoffPolicyRule.id",
    )


class HandoffPolicyRule(Base):
    """One trigger belonging to a policy."""

    __tablename__ = "handoff_policy_rules"
    __table_args__ = (
        Index("ix_handoff_policy_rules_policy_active", "handoff_policy_id", "active"),
        Index("ix_handoff_policy_rules_trigger_active", "trigger_type", "active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handoff_policy_id: Mapped[int] = mapped_column(
        ForeignKey("handoff_policies.id", ondelete="CASCADE"), nullable=False
    )
    trigger_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    criteria: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    policy: Mapped[HandoffPolicy] = relationship(back_populates="rules")
