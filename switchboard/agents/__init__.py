"""Automated agent execution: generator contract, orchestration and dispatch."""

from .dispatcher import AgentDispatcher, InlineDispatcher, ThreadPoolDispatcher
from .orchestrator import AgentOrchestrator, AgentOutcome, OutcomeStatus
from .results import AgentRunResult, ConversationView, ResponseGenerator, TranscriptEntry

__all__ = [
    "AgentDispatcher",
    "AgentOrchestrator",
    "AgentOutcome",
    "AgentRunResult",
    "ConversationView",
    "InlineDispatcher",
    "OutcomeStatus",
    "ResponseGenerator",
    "ThreadPoolDispatcher",
    "TranscriptEntry",
]
