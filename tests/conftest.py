import datetime as dt
import pathlib
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import pytest
from fastapi import FastAPI, Request
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from switchboard.agents.results import AgentRunResult, ConversationView
from switchboard.app_logging import init_logging
from switchboard.config import Settings
from switchboard.container import EngineContainer, build_container
from switchboard.models import (
    Assignment,
    AssignmentStatus,
    AuditEvent,
    Conversation,
    ConversationStatus,
    HandoffPolicy,
    HandoffPolicyRule,
    Message,
    Queue,
    QueueItem,
    QueueItemState,
    SenderType,
)
from switchboard.models.session import create_schema, get_engine, get_sessionmaker

START = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: dt.datetime = START) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**delta)
        return self.now


class ScriptedGenerator:
    """Response generator returning queued results, then a confident answer."""

    def __init__(self) -> None:
        self.results: list[AgentRunResult | Callable[[ConversationView], AgentRunResult]] = []
        self.calls: list[ConversationView] = []

    def push(self, *results: AgentRunResult | Callable[[ConversationView], AgentRunResult]) -> None:
        self.results.extend(results)

    def generate(self, conversation: ConversationView) -> AgentRunResult:
        self.calls.append(conversation)
        if not self.results:
            return AgentRunResult.success(
                {
                    "response": "Happy to help with that.",
                    "confidence": 0.95,
                    "reason": "answered",
                    "policy_flags": [],
                }
            )
        result = self.results.pop(0)
        if callable(result):
            return result(conversation)
        return result


class RecordingDispatcher:
    def __init__(self) -> None:
        self.dispatched: list[int] = []

    def dispatch(self, conversation_id: int) -> None:
        self.dispatched.append(conversation_id)


@dataclass
class Store:
    """Row factories and fresh-session lookups over the test database."""

    session_factory: sessionmaker[Session]
    clock: FrozenClock

    def queue(
        self,
        name: str,
        *,
        skills: tuple[str, ...] = (),
        is_default: bool = False,
        priority_policy: dict[str, Any] | None = None,
    ) -> int:
        with self.session_factory.begin() as session:
            queue = Queue(
                name=name,
                slug=name.lower().replace(" ", "-"),
                is_default=is_default,
                skills_required=list(skills),
                priority_policy=dict(priority_policy or {}),
            )
            session.add(queue)
            session.flush()
            return queue.id

    def policy(
        self,
        reason_code: str,
        trigger_type: str,
        *,
        criteria: dict[str, Any] | None = None,
        priority: int = 0,
        required_skills: tuple[str, ...] = (),
        threshold: float | None = None,
        active: bool = True,
        rule_active: bool = True,
    ) -> int:
        with self.session_factory.begin() as session:
            policy = HandoffPolicy(
                name=reason_code.replace("_", " ").title(),
                reason_code=reason_code,
                confidence_threshold=threshold,
                required_skills=list(required_skills),
                active=active,
            )
            policy.rules.append(
                HandoffPolicyRule(
                    trigger_type=trigger_type,
                    criteria=dict(criteria or {}),
                    priority=priority,
                    active=rule_active,
                )
            )
            session.add(policy)
            session.flush()
            return policy.id

    def conversation(
        self,
        status: str = ConversationStatus.NEW,
        *,
        priority: str = "standard",
        subject: str | None = "Order help",
        message: str | None = None,
    ) -> int:
        with self.session_factory.begin() as session:
            conversation = Conversation(
                subject=subject,
                status=status,
                priority=priority,
                requester_type="customer",
                requester_identifier="customer@example.com",
                meta={},
                last_activity_at=self.clock(),
                created_at=self.clock(),
                updated_at=self.clock(),
            )
            session.add(conversation)
            session.flush()
            if message:
                session.add(
                    Message(
                        conversation_id=conversation.id,
                        sender_type=SenderType.REQUESTER,
                        content=message,
                        meta={},
                        created_at=self.clock(),
                    )
                )
            return conversation.id

    def queue_item(
        self, conversation_id: int, queue_id: int, state: str = QueueItemState.QUEUED
    ) -> int:
        with self.session_factory.begin() as session:
            item = QueueItem(
                queue_id=queue_id,
                conversation_id=conversation_id,
                state=state,
                enqueued_at=self.clock(),
                dequeued_at=None if state == QueueItemState.QUEUED else self.clock(),
            )
            session.add(item)
            session.flush()
            return item.id

    def assignment(
        self,
        conversation_id: int,
        queue_id: int | None,
        user_id: int,
        status: str = AssignmentStatus.ASSIGNED,
    ) -> int:
        with self.session_factory.begin() as session:
            assignment = Assignment(
                conversation_id=conversation_id,
                queue_id=queue_id,
                user_id=user_id,
                status=status,
                assigned_at=self.clock(),
                accepted_at=self.clock() if status == AssignmentStatus.HUMAN_WORKING else None,
            )
            session.add(assignment)
            session.flush()
            return assignment.id

    def working_assignment(self, user_id: int = 7) -> tuple[int, int, int, int]:
        """Conversation held by ``user_id``: (conversation, queue, item, assignment) ids."""

        queue_id = self.queue(f"Desk {user_id}", is_default=False)
        conversation_id = self.conversation(ConversationStatus.HUMAN_WORKING)
        item_id = self.queue_item(conversation_id, queue_id, QueueItemState.HOT)
        assignment_id = self.assignment(
            conversation_id, queue_id, user_id, AssignmentStatus.HUMAN_WORKING
        )
        return conversation_id, queue_id, item_id, assignment_id

    def get(self, model: type, ident: int) -> Any:
        with self.session_factory() as session:
            return session.get(model, ident)

    def all(self, model: type, **filters: Any) -> list[Any]:
        with self.session_factory() as session:
            stmt = select(model).filter_by(**filters).order_by(model.id)
            return list(session.execute(stmt).scalars())

    def audit_types(self, conversation_id: int) -> list[str]:
        return [e.event_type for e in self.all(AuditEvent, conversation_id=conversation_id)]


@pytest.fixture
def database_url(tmp_path: pathlib.Path) -> str:
    return f"sqlite+pysqlite:///{tmp_path / 'switchboard.db'}"


@pytest.fixture
def engine(database_url: str) -> Iterator[Engine]:
    engine = get_engine(database_url)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return get_sessionmaker(engine=engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(session_factory: sessionmaker[Session], clock: FrozenClock) -> Store:
    return Store(session_factory, clock)


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        queue_cache_ttl_seconds=0,
        agent_max_attempts=2,
        agent_retry_backoff_seconds=0.0,
    )


@pytest.fixture
def container(
    session_factory: sessionmaker[Session],
    settings: Settings,
    generator: ScriptedGenerator,
    dispatcher: RecordingDispatcher,
    clock: FrozenClock,
) -> EngineContainer:
    container = build_container(
        session_factory, settings=settings, generator=generator, clock=clock
    )
    container.attach_dispatcher(dispatcher)
    return container


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
