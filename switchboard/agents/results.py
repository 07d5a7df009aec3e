"""Value types exchanged with the automated response generator."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from ..models import Conversation, Message


class RunStatus:
    SUCCESS = "success"
    FAILURE = "failure"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class AgentRunResult:
    """Outcome of one generator call.

    ``success`` carries a payload with the response text; ``fallback`` means
    the generator could not decide confidently; ``failure`` is fatal and is
    retried by the caller.
    """

    status: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def success(cls, payload: dict[str, Any]) -> "AgentRunResult":
        return cls(RunStatus.SUCCESS, payload=dict(payload))

    @classmethod
    def failure(cls, error: str) -> "AgentRunResult":
        return cls(RunStatus.FAILURE, error=error)

    @classmethod
    def fallback(cls, error: str | None = None) -> "AgentRunResult":
        return cls(RunStatus.FALLBACK, error=error)

    @property
    def is_success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status == RunStatus.FAILURE

    @property
    def is_fallback(self) -> bool:
        return self.status == RunStatus.FALLBACK


@dataclass(frozen=True)
class TranscriptEntry:
    sender_type: str
    content: str
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class ConversationView:
    """Detached snapshot handed to the generator outside any transaction."""

    id: int
    status: str
    priority: str
    subject: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    messages: tuple[TranscriptEntry, ...] = ()

    @classmethod
    def from_model(cls, conversation: Conversation, messages: Iterable[Message]) -> "ConversationView":
        return cls(
            id=conversation.id,
            status=conversation.status,
            priority=conversation.priority,
            subject=conversation.subject,
            metadata=dict(conversation.meta or {}),
            messages=tuple(
                TranscriptEntry(m.sender_type, m.content, m.created_at) for m in messages
            ),
        )


class ResponseGenerator(Protocol):
    def generate(self, conversation: ConversationView) -> AgentRunResult: ...


__all__ = [
    "AgentRunResult",
    "ConversationView",
    "ResponseGenerator",
    "RunStatus",
    "TranscriptEntry",
]
