"""Error taxonomy for the routing engine.

Every error carries ``status_code`` so the API layer can translate it
without knowing the individual classes.
"""

from __future__ import annotations


class SwitchboardError(RuntimeError):
    """Base class for routing engine errors."""

    status_code = 500


class TransitionNotAllowed(SwitchboardError):
    """The conversation's current status forbids the requested transition."""

    status_code = 409

    def __init__(self, transition: str, status: str) -> None:
        super().__init__(
            f"Transition '{transition}' is not allowed from status '{status}'."
        )
        self.transition = transition
        self.status = status


class MissingTransitionContext(SwitchboardError):
    """The caller omitted context keys required by a transition."""

    status_code = 400

    def __init__(self, transition: str, missing: list[str]) -> None:
        super().__init__(
            f"Missing {', '.join(missing)} when triggering {transition} transition."
        )
        self.transition = transition
        self.missing = missing


class InvalidTransitionContext(MissingTransitionContext):
    """A context value is present but cannot be interpreted."""

    def __init__(self, transition: str, key: str, value: object) -> None:
        SwitchboardError.__init__(
            self, f"Invalid {key} {value!r} when triggering {transition} transition."
        )
        self.transition = transition
        self.missing = [key]
        self.value = value


class ConflictError(SwitchboardError):
    """A concurrent request won the race; re-fetch state and retry."""

    status_code = 409


class NotFoundError(SwitchboardError):
    status_code = 404


class UnroutableHandoff(SwitchboardError):
    """No queue could be resolved for an escalated conversation."""

    status_code = 409


class AgentRunFailed(SwitchboardError):
    """The response generator failed; the whole orchestration should be retried."""

    status_code = 502


__all__ = [
    "AgentRunFailed",
    "ConflictError",
    "InvalidTransitionContext",
    "MissingTransitionContext",
    "NotFoundError",
    "SwitchboardError",
    "TransitionNotAllowed",
    "UnroutableHandoff",
]
