"""Claim/accept/release/resolve under check-lock-recheck-apply."""

from __future__ import annotations

import threading

import pytest

from switchboard.agents import AgentRunResult
from switchboard.clock import as_utc
from switchboard.errors import (
    ConflictError,
    MissingTransitionContext,
    NotFoundError,
    UnroutableHandoff,
)
from switchboard.lifecycle.repository import LifecycleRepository
from switchboard.lifecycle.service import LifecycleService
from switchboard.models import (
    Assignment,
    AssignmentStatus,
    AuditEvent,
    Conversation,
    ConversationStatus,
    Handoff,
    QueueItem,
    QueueItemState,
    TriggerType,
)


def _queued(store, queue_name="General", **queue_kwargs):
    queue_id = store.queue(queue_name, **queue_kwargs)
    conversation_id = store.conversation(ConversationStatus.QUEUED)
    item_id = store.queue_item(conversation_id, queue_id)
    return queue_id, conversation_id, item_id


def _race_on_lock(monkeypatch, competitor):
    """Run ``competitor`` right before the first conversation row lock is taken."""

    original = LifecycleRepository.get_conversation
    state = {"raced": False}

    def racing(self, conversation_id, *, lock=False):
        if lock and not state["raced"]:
            state["raced"] = True
            competitor()
        return original(self, conversation_id, lock=lock)

    monkeypatch.setattr(LifecycleRepository, "get_conversation", racing)


def test_claim_creates_assignment_and_marks_item_hot(container, store, clock):
    queue_id, conversation_id, item_id = _queued(store, is_default=True)

    assignment = container.lifecycle.claim(queue_id, item_id, actor_id=7)

    assert assignment.status == AssignmentStatus.ASSIGNED
    assert assignment.user_id == 7
    assert assignment.queue_id == queue_id
    assert assignment.meta == {"claimed_by": 7}

    item = store.get(QueueItem, item_id)
    assert item.state == QueueItemState.HOT
    assert as_utc(item.dequeued_at) == clock.now
    assert store.get(Conversation, conversation_id).status == ConversationStatus.ASSIGNED


def test_claim_on_behalf_of_another_operator(container, store):
    queue_id, conversation_id, item_id = _queued(store)

    assignment = container.lifecycle.claim(
        queue_id, item_id, actor_id=1, assignee_id=7, metadata={"note": "vip"}
    )

    assert assignment.user_id == 7
    assert assignment.meta == {"claimed_by": 1, "note": "vip"}
    (event,) = [
        e
        for e in store.all(AuditEvent, conversation_id=conversation_id)
        if e.event_type == "conversation.assign_human"
    ]
    assert event.user_id == 1
    assert event.payload["assignment_user_id"] == 7


def test_second_claim_conflicts_and_leaves_no_trace(container, store):
    queue_id, conversation_id, item_id = _queued(store)

    container.lifecycle.claim(queue_id, item_id, actor_id=7)
    with pytest.raises(ConflictError):
        container.lifecycle.claim(queue_id, item_id, actor_id=8)

    assignments = store.all(Assignment, conversation_id=conversation_id)
    assert [(a.user_id, a.status) for a in assignments] == [(7, AssignmentStatus.ASSIGNED)]


def test_claim_rechecks_after_lock(container, store, monkeypatch):
    queue_id, conversation_id, item_id = _queued(store)
    _race_on_lock(monkeypatch, lambda: container.lifecycle.claim(queue_id, item_id, actor_id=8))

    with pytest.raises(ConflictError):
        container.lifecycle.claim(queue_id, item_id, actor_id=7)

    assignments = store.all(Assignment, conversation_id=conversation_id)
    assert [(a.user_id, a.status) for a in assignments] == [(8, AssignmentStatus.ASSIGNED)]
    assert store.get(QueueItem, item_id).state == QueueItemState.HOT
    assert store.audit_types(conversation_id).count("conversation.assign_human") == 1


def test_concurrent_claims_have_one_winner(container, store):
    queue_id, conversation_id, item_id = _queued(store)
    barrier = threading.Barrier(2)
    outcomes = []

    def claim(user_id):
        barrier.wait()
        try:
            outcomes.append(container.lifecycle.claim(queue_id, item_id, actor_id=user_id))
        except ConflictError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=claim, args=(user_id,)) for user_id in (7, 8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(type(outcome).__name__ for outcome in outcomes) == ["Assignment", "ConflictError"]
    (assignment,) = store.all(Assignment, conversation_id=conversation_id)
    assert assignment.status == AssignmentStatus.ASSIGNED
    assert store.get(QueueItem, item_id).state == QueueItemState.HOT
    assert store.audit_types(conversation_id).count("conversation.assign_human") == 1


def test_claim_without_assignee_is_missing_context(container, store):
    queue_id, conversation_id, item_id = _queued(store)

    with pytest.raises(MissingTransitionContext) as excinfo:
        container.lifecycle.claim(queue_id, item_id, actor_id=None)

    assert excinfo.value.status_code == 400
    assert excinfo.value.missing == ["assignment_user_id"]
    assert store.all(Assignment, conversation_id=conversation_id) == []
    assert store.get(QueueItem, item_id).state == QueueItemState.QUEUED


def test_claim_from_wrong_queue_is_not_found(container, store):
    queue_id, _conversation_id, item_id = _queued(store)
    other_queue = store.queue("Billing")

    with pytest.raises(NotFoundError):
        container.lifecycle.claim(other_queue, item_id, actor_id=7)
    with pytest.raises(NotFoundError):
        container.lifecycle.claim(queue_id, 999, actor_id=7)


def test_accept_requires_assigned_status(container, store):
    queue_id, conversation_id, item_id = _queued(store)
    assignment = container.lifecycle.claim(queue_id, item_id, actor_id=7)

    accepted = container.lifecycle.accept(assignment.id, actor_id=7)
    assert accepted.status == AssignmentStatus.HUMAN_WORKING
    assert store.get(Conversation, conversation_id).status == ConversationStatus.HUMAN_WORKING

    with pytest.raises(ConflictError):
        container.lifecycle.accept(assignment.id, actor_id=7)
    with pytest.raises(NotFoundError):
        container.lifecycle.accept(12345, actor_id=7)


def test_accept_rechecks_after_lock(container, store, monkeypatch):
    queue_id, conversation_id, item_id = _queued(store)
    assignment = container.lifecycle.claim(queue_id, item_id, actor_id=7)
    _race_on_lock(monkeypatch, lambda: container.lifecycle.accept(assignment.id, actor_id=7))

    with pytest.raises(ConflictError):
        container.lifecycle.accept(assignment.id, actor_id=7)

    assert store.audit_types(conversation_id).count("conversation.human_accepts") == 1


def test_release_returns_conversation_to_agent_and_dispatches(container, store, dispatcher):
    conversation_id, _queue_id, item_id, assignment_id = store.working_assignment(user_id=7)

    released = container.lifecycle.release(assignment_id, actor_id=7, reason="out_of_scope")

    assert released.status == AssignmentStatus.RELEASED
    assert released.meta == {"release_reason": "out_of_scope"}
    assert store.get(Conversation, conversation_id).status == ConversationStatus.BACK_TO_AGENT
    assert store.get(QueueItem, item_id).state == QueueItemState.COMPLETED
    assert dispatcher.dispatched == [conversation_id]


def test_released_conversation_can_be_claimed_again(
    container, store, session_factory, generator, clock
):
    store.policy(
        "low_confidence",
        TriggerType.CONFIDENCE_BELOW_THRESHOLD,
        criteria={"threshold": 0.6},
        priority=100,
    )
    queue_id, conversation_id, item_id = _queued(store, is_default=True)
    first = container.lifecycle.claim(queue_id, item_id, actor_id=7)
    container.lifecycle.accept(first.id, actor_id=7)
    clock.advance(minutes=5)
    container.lifecycle.release(first.id, actor_id=7, reason="needs_agent")

    generator.push(
        AgentRunResult.success(
            {"response": "Not sure", "confidence": 0.2, "reason": "unsure", "policy_flags": []}
        )
    )
    container.orchestrator.run(conversation_id)
    (requeued,) = store.all(QueueItem, conversation_id=conversation_id, state=QueueItemState.QUEUED)
    clock.advance(minutes=5)
    second = container.lifecycle.claim(queue_id, requeued.id, actor_id=8)

    with session_factory() as session:
        conversation = session.get(Conversation, conversation_id)
        unreleased = [a.id for a in conversation.assignments if a.released_at is None]
        assert unreleased == [second.id]
        assert conversation.current_assignment().user_id == 8
        assert conversation.status == ConversationStatus.ASSIGNED


def test_release_of_assigned_conversation_conflicts(container, store, dispatcher):
    queue_id, conversation_id, item_id = _queued(store)
    assignment = container.lifecycle.claim(queue_id, item_id, actor_id=7)

    with pytest.raises(ConflictError):
        container.lifecycle.release(assignment.id, actor_id=7)

    assert dispatcher.dispatched == []
    assert store.get(Conversation, conversation_id).status == ConversationStatus.ASSIGNED


def test_resolve_archives_by_default(container, store, clock):
    conversation_id, _queue_id, item_id, assignment_id = store.working_assignment(user_id=7)

    resolved = container.lifecycle.resolve(assignment_id, actor_id=7, summary="Refund issued")

    assert resolved.status == AssignmentStatus.RESOLVED
    assert as_utc(resolved.resolved_at) == clock.now
    assert store.get(QueueItem, item_id).state == QueueItemState.COMPLETED
    assert store.get(Conversation, conversation_id).status == ConversationStatus.ARCHIVED
    assert store.audit_types(conversation_id) == ["conversation.resolve", "conversation.archive"]


def test_resolve_without_archive(container, store, session_factory):
    lifecycle = LifecycleService(session_factory, container.machines, archive_on_resolve=False)
    conversation_id, _queue_id, _item_id, assignment_id = store.working_assignment(user_id=7)

    lifecycle.resolve(assignment_id, actor_id=7)

    assert store.get(Conversation, conversation_id).status == ConversationStatus.RESOLVED
    assert store.audit_types(conversation_id) == ["conversation.resolve"]


def test_resolve_twice_conflicts(container, store):
    _conversation_id, _queue_id, _item_id, assignment_id = store.working_assignment(user_id=7)
    container.lifecycle.resolve(assignment_id, actor_id=7)

    with pytest.raises(ConflictError):
        container.lifecycle.resolve(assignment_id, actor_id=7)


def test_resolve_conversation_directly(container, store):
    conversation_id = store.conversation(ConversationStatus.HUMAN_WORKING)

    conversation = container.lifecycle.resolve_conversation(conversation_id, actor_id=3, summary="done")

    assert conversation.status == ConversationStatus.ARCHIVED
    (resolve_event, _archive) = store.all(AuditEvent, conversation_id=conversation_id)
    assert resolve_event.payload["resolution_summary"] == "done"
    assert resolve_event.user_id == 3

    with pytest.raises(ConflictError):
        container.lifecycle.resolve_conversation(conversation_id, actor_id=3)
    with pytest.raises(NotFoundError):
        container.lifecycle.resolve_conversation(999, actor_id=3)


def test_manual_handoff_resolves_queue_by_skill(container, store):
    store.queue("General", is_default=True)
    billing = store.queue("Billing", skills=("billing", "refund"))
    conversation_id = store.conversation(ConversationStatus.AGENT_WORKING)

    conversation = container.lifecycle.trigger_handoff(
        conversation_id, "billing_specialist", actor_id=4, required_skills=["billing"]
    )

    assert conversation.status == ConversationStatus.QUEUED
    (item,) = store.all(QueueItem, conversation_id=conversation_id)
    assert item.queue_id == billing
    assert item.meta == {"reason": "billing_specialist", "required_skills": ["billing"]}
    (handoff,) = store.all(Handoff, conversation_id=conversation_id)
    assert handoff.meta == {"source": "manual"}


def test_manual_handoff_with_explicit_queue(container, store):
    store.queue("General", is_default=True)
    target = store.queue("Escalations", skills=("escalation",))
    conversation_id = store.conversation(ConversationStatus.AGENT_WORKING)

    container.lifecycle.trigger_handoff(conversation_id, "legal", queue_id=target)

    (item,) = store.all(QueueItem, conversation_id=conversation_id)
    assert item.queue_id == target


def test_manual_handoff_without_queues_is_unroutable(container, store):
    conversation_id = store.conversation(ConversationStatus.AGENT_WORKING)

    with pytest.raises(UnroutableHandoff):
        container.lifecycle.trigger_handoff(conversation_id, "legal")

    assert store.get(Conversation, conversation_id).status == ConversationStatus.AGENT_WORKING
    assert store.all(Handoff, conversation_id=conversation_id) == []


def test_manual_handoff_requires_agent_working(container, store):
    queue_id = store.queue("General", is_default=True)
    conversation_id = store.conversation(ConversationStatus.QUEUED)

    with pytest.raises(ConflictError):
        container.lifecycle.trigger_handoff(conversation_id, "legal", queue_id=queue_id)
