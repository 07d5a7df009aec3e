"""Post-commit publication of "transition occurred" facts.

The state machine queues a :class:`TransitionEvent` on the session for
every transition it applies.  A :class:`TransitionPublisher` bound to the
session factory hands the queued events to its subscribers once the
surrounding transaction commits and discards them on rollback, so
subscribers (webhook dispatch, agent re-entry) never observe a transition
that did not persist.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

_PENDING_KEY = "switchboard.pending_transition_events"


@dataclass(frozen=True)
class TransitionEvent:
    conversation_id: int
    transition: str
    from_status: str
    to_status: str
    occurred_at: dt.datetime
    channel: str
    actor_id: int | None = None
    context: dict[str, Any] = field(default_factory=dict)


TransitionListener = Callable[[TransitionEvent], None]


class TransitionPublisher:
    """Fan out committed transition events to subscribers."""

    def __init__(self) -> None:
        self._listeners: list[TransitionListener] = []

    def subscribe(self, listener: TransitionListener) -> TransitionListener:
        self._listeners.append(listener)
        return listener

    def bind(self, factory: sessionmaker[Session]) -> None:
        """Attach commit/rollback hooks to every session ``factory`` creates."""

        event.listen(factory, "after_commit", self._after_commit)
        event.listen(factory, "after_rollback", self._after_rollback)

    def queue(self, session: Session, transition_event: TransitionEvent) -> None:
        session.info.setdefault(_PENDING_KEY, []).append(transition_event)

    def pending(self, session: Session) -> list[TransitionEvent]:
        return list(session.info.get(_PENDING_KEY, []))

    def publish(self, transition_event: TransitionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(transition_event)
            except Exception:
                # The transition is already committed; a failing subscriber
                # must not turn it into an error for the caller.
                logger.exception(
                    "Transition listener failed",
                    extra={
                        "conversation_id": transition_event.conversation_id,
                        "transition": transition_event.transition,
                    },
                )

    def _after_commit(self, session: Session) -> None:
        for transition_event in session.info.pop(_PENDING_KEY, []):
            self.publish(transition_event)

    def _after_rollback(self, session: Session) -> None:
        session.info.pop(_PENDING_KEY, None)


__all__ = ["TransitionEvent", "TransitionListener", "TransitionPublisher"]
