"""OpenAI-backed automated response generator."""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import OpenAI

from ..models import SenderType
from .results import AgentRunResult, ConversationView

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a customer support agent. Answer the requester using the "
    "conversation so far. Set handoff to true when a human operator should "
    "take over, give a short snake_case reason and list any policy flags "
    "(for example legal, pii, billing_issue) raised by the conversation."
)

OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["response", "confidence", "handoff", "reason", "policy_flags"],
    "properties": {
        "response": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "handoff": {"type": "boolean"},
        "reason": {"type": "string"},
        "policy_flags": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}


def build_messages(conversation: ConversationView, system_prompt: str) -> list[dict[str, str]]:
    """Render the transcript as chat messages."""

    messages = [{"role": "system", "content": system_prompt}]
    if conversation.subject:
        messages.append({"role": "system", "content": f"Subject: {conversation.subject}"})
    for entry in conversation.messages:
        role = "user" if entry.sender_type == SenderType.REQUESTER else "assistant"
        messages.append({"role": role, "content": entry.content})
    return messages


def validate_output(output: Any) -> bool:
    if not isinstance(output, dict):
        return False
    for key in OUTPUT_SCHEMA["required"]:
        if key not in output:
            return False
    if not isinstance(output["response"], str) or not isinstance(output["reason"], str):
        return False
    if not isinstance(output["handoff"], bool) or not isinstance(output["policy_flags"], list):
        return False
    confidence = output["confidence"]
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return False
    return 0 <= confidence <= 1


def normalize_output(output: dict[str, Any]) -> dict[str, Any]:
    reason = output["reason"].strip().lower().replace(" ", "_")
    return {
        "response": output["response"],
        "confidence": float(output["confidence"]),
        "handoff": output["handoff"],
        "reason": reason or "uncertain_intent",
        "policy_flags": [str(flag) for flag in output["policy_flags"]],
    }


def _parse_content(content: Any) -> Any:
    if isinstance(content, str):
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            return None
    return content


class OpenAIResponseGenerator:
    """Ask a chat model for a structured support reply."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        model: str = "gpt-4o-mini",
        system_prompt: str | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def generate(self, conversation: ConversationView) -> AgentRunResult:
        try:
            completion = self.client.chat.completions.create(
                model=self._model,
                messages=build_messages(conversation, self._system_prompt),
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "agent_response",
                        "strict": True,
                        "schema": OUTPUT_SCHEMA,
                    },
                },
            )
            content = completion.choices[0].message.content
        except Exception as exc:
            logger.warning(
                "OpenAI chat completion failed: %s",
                exc,
                extra={"conversation_id": conversation.id},
            )
            return AgentRunResult.failure(str(exc) or exc.__class__.__name__)

        output = _parse_content(content)
        if not validate_output(output):
            return AgentRunResult.fallback("Malformed agent output.")
        return AgentRunResult.success(normalize_output(output))


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "OUTPUT_SCHEMA",
    "OpenAIResponseGenerator",
    "build_messages",
    "normalize_output",
    "validate_output",
]
