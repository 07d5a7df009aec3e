"""Pick the queue an escalated conversation should wait in."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..errors import UnroutableHandoff
from ..models import Queue
from .evaluator import PolicyDecision

logger = logging.getLogger(__name__)

_PRIORITY_SCORES = {"critical": 3, "high": 2}


@dataclass(frozen=True)
class QueueSnapshot:
    id: int
    name: str
    slug: str
    is_default: bool = False
    skills_required: tuple[str, ...] = ()
    priority_policy: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, queue: Queue) -> "QueueSnapshot":
        return cls(
            id=queue.id,
            name=queue.name,
            slug=queue.slug,
            is_default=bool(queue.is_default),
            skills_required=tuple(queue.skills_required or ()),
            priority_policy=dict(queue.priority_policy or {}),
        )


QueueLoader = Callable[[], Sequence[QueueSnapshot]]


def sqlalchemy_queue_loader(session_factory: sessionmaker[Session]) -> QueueLoader:
    """Return a loader reading every queue, default first, then by name."""

    def load() -> list[QueueSnapshot]:
        stmt = select(Queue).order_by(Queue.is_default.desc(), Queue.name)
        with session_factory() as session:
            return [QueueSnapshot.from_model(q) for q in session.execute(stmt).scalars()]

    return load


def _priority_score(queue: QueueSnapshot, conversation_priority: str | None) -> int:
    if not queue.priority_policy:
        return 1 if queue.is_default else 0
    return _PRIORITY_SCORES.get(conversation_priority or "", 1)


class QueueResolver:
    """Skill-matching queue selection over a TTL-cached queue list.

    Queues must cover every skill the decision requires.  Candidates are
    ranked by matched skill count, then priority score, then the default
    flag, then name.  With no candidate the default queue is used, then the
    first queue; ``None`` means the handoff cannot be routed.
    """

    def __init__(
        self,
        loader: QueueLoader,
        *,
        ttl_seconds: float = 300,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._cached: tuple[QueueSnapshot, ...] | None = None
        self._loaded_at = 0.0

    def queues(self) -> tuple[QueueSnapshot, ...]:
        with self._lock:
            now = self._monotonic()
            if self._cached is None or now - self._loaded_at >= self._ttl:
                self._cached = tuple(self._loader())
                self._loaded_at = now
            return self._cached

    def flush_cache(self) -> None:
        with self._lock:
            self._cached = None

    def supports(self, queue: QueueSnapshot, decision: PolicyDecision) -> bool:
        return set(decision.required_skills).issubset(queue.skills_required)

    def resolve(
        self,
        decision: PolicyDecision,
        *,
        conversation_priority: str | None = None,
    ) -> QueueSnapshot | None:
        queues = self.queues()
        required = set(decision.required_skills)
        candidates = [q for q in queues if self.supports(q, decision)]
        if candidates:
            ranked = sorted(
                candidates,
                key=lambda q: (
                    -len(required.intersection(q.skills_required)),
                    -_priority_score(q, conversation_priority),
                    not q.is_default,
                    q.name,
                ),
            )
            return ranked[0]

        default = next((q for q in queues if q.is_default), None)
        if default is not None:
            return default
        return queues[0] if queues else None

    def require(
        self,
        decision: PolicyDecision,
        *,
        conversation_priority: str | None = None,
    ) -> QueueSnapshot:
        queue = self.resolve(decision, conversation_priority=conversation_priority)
        if queue is None:
            raise UnroutableHandoff(
                f"No queue available for reason '{decision.reason}' "
                f"(skills: {', '.join(decision.required_skills) or 'none'})"
            )
        return queue


__all__ = ["QueueResolver", "QueueSnapshot", "sqlalchemy_queue_loader"]
