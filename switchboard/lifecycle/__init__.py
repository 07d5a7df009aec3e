"""Conversation lifecycle: state machine, side-effect handlers and services."""

from .events import TransitionEvent, TransitionPublisher
from .state_machine import TRANSITIONS, ConversationStateMachine, StateMachineFactory

__all__ = [
    "ConversationStateMachine",
    "StateMachineFactory",
    "TRANSITIONS",
    "TransitionEvent",
    "TransitionPublisher",
]
