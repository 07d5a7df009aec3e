"""Process-wide wiring of the routing engine components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.orm import Session, sessionmaker

from .agents.dispatcher import AgentDispatcher, ThreadPoolDispatcher
from .agents.openai_generator import OpenAIResponseGenerator
from .agents.orchestrator import AgentOrchestrator
from .agents.results import ResponseGenerator
from .clock import Clock, utcnow
from .config import Settings, get_settings
from .lifecycle.events import TransitionEvent, TransitionPublisher
from .lifecycle.intake import ConversationService
from .lifecycle.service import LifecycleService
from .lifecycle.state_machine import StateMachineFactory
from .models.session import get_sessionmaker
from .policies.evaluator import PolicyEvaluationService
from .policies.queue_resolver import QueueResolver, sqlalchemy_queue_loader
from .policies.repository import PolicyRepository, SqlAlchemyPolicyRepository

logger = logging.getLogger(__name__)


@dataclass
class EngineContainer:
    session_factory: sessionmaker[Session]
    publisher: TransitionPublisher
    machines: StateMachineFactory
    resolver: QueueResolver
    evaluator: PolicyEvaluationService
    orchestrator: AgentOrchestrator
    lifecycle: LifecycleService
    conversations: ConversationService
    dispatcher: AgentDispatcher | None = None

    def attach_dispatcher(self, dispatcher: AgentDispatcher) -> None:
        self.dispatcher = dispatcher
        self.conversations = ConversationService(self.session_factory, self.machines, dispatcher)

    def _on_transition(self, transition_event: TransitionEvent) -> None:
        if transition_event.transition == "return_to_agent" and self.dispatcher is not None:
            self.dispatcher.dispatch(transition_event.conversation_id)

    def close(self) -> None:
        if isinstance(self.dispatcher, ThreadPoolDispatcher):
            self.dispatcher.shutdown(wait=True)


def build_container(
    session_factory: sessionmaker[Session],
    *,
    settings: Settings | None = None,
    generator: ResponseGenerator | None = None,
    policy_repository: PolicyRepository | None = None,
    clock: Clock = utcnow,
) -> EngineContainer:
    """Assemble the engine; the caller attaches a dispatcher."""

    settings = settings or get_settings()
    publisher = TransitionPublisher()
    publisher.bind(session_factory)
    machines = StateMachineFactory(
        publisher=publisher, clock=clock, default_channel=settings.default_channel
    )
    resolver = QueueResolver(
        sqlalchemy_queue_loader(session_factory), ttl_seconds=settings.queue_cache_ttl_seconds
    )
    evaluator = PolicyEvaluationService(
        policy_repository or SqlAlchemyPolicyRepository(session_factory)
    )
    orchestrator = AgentOrchestrator(
        session_factory,
        machines,
        generator
        or OpenAIResponseGenerator(
            model=settings.openai_model, system_prompt=settings.agent_system_prompt
        ),
        evaluator,
        resolver,
        channel=settings.default_channel,
    )
    container = EngineContainer(
        session_factory=session_factory,
        publisher=publisher,
        machines=machines,
        resolver=resolver,
        evaluator=evaluator,
        orchestrator=orchestrator,
        lifecycle=LifecycleService(
            session_factory,
            machines,
            resolver=resolver,
            archive_on_resolve=settings.archive_on_resolve,
        ),
        conversations=ConversationService(session_factory, machines),
    )
    publisher.subscribe(container._on_transition)
    return container


@lru_cache(maxsize=1)
def get_container() -> EngineContainer:
    """Return the process-wide container backed by ``DATABASE_URL``."""

    settings = get_settings()
    container = build_container(get_sessionmaker(settings.database_url), settings=settings)
    container.attach_dispatcher(
        ThreadPoolDispatcher(
            container.orchestrator.run,
            max_workers=settings.agent_workers,
            max_attempts=settings.agent_max_attempts,
            backoff_seconds=settings.agent_retry_backoff_seconds,
        )
    )
    logger.info("Routing engine initialised")
    return container


def reset_container() -> None:
    """Shut down and forget the cached container; used by tests."""

    if get_container.cache_info().currsize:
        get_container().close()
    get_container.cache_clear()


__all__ = ["EngineContainer", "build_container", "get_container", "reset_container"]
