"""Conversation History — the append-only message log sent on each model round.

Invariants:
    - Three message types: user text, assistant text/calls, capability result
    - History is a tuple; appending returns a new tuple (caller's history never mutates)
    - Every AssistantMessage call is answered by a CapabilityResultMessage with the
      same invocation_id before the next model round
    - to_dict()/message_from_dict() round-trip through JSON (API boundary)

Design Decisions:
    - Provider-neutral types: the Anthropic wire format is produced in
      services/agent_runner_helpers.py, so history can outlive a transport swap
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Union

from sqlagent.core.stream_events import CapabilityCall


@dataclass(frozen=True)
class UserMessage:
    text: str
    role: ClassVar[str] = "user"

    def to_dict(self) -> dict:
        return {"role": self.role, "text": self.text}


@dataclass(frozen=True)
class AssistantMessage:
    text: str = ""
    capability_calls: tuple[CapabilityCall, ...] = ()
    role: ClassVar[str] = "assistant"

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "text": self.text,
            "capability_calls": [c.to_dict() for c in self.capability_calls],
        }


@dataclass(frozen=True)
class CapabilityResultMessage:
    invocation_id: str
    capability_name: str
    payload: dict[str, Any]
    role: ClassVar[str] = "capability-result"

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "invocation_id": self.invocation_id,
            "capability_name": self.capability_name,
            "payload": self.payload,
        }


ConversationMessage = Union[UserMessage, AssistantMessage, CapabilityResultMessage]
History = tuple[ConversationMessage, ...]


def message_from_dict(data: dict) -> ConversationMessage:
    """Parse one serialized message. Raises ValueError on unknown roles."""
    role = data.get("role")
    if role == "user":
        return UserMessage(text=str(data.get("text", "")))
    if role == "assistant":
        return AssistantMessage(
            text=str(data.get("text") or ""),
            capability_calls=tuple(
                CapabilityCall.from_dict(c) for c in data.get("capability_calls") or ()
            ),
        )
    if role == "capability-result":
        return CapabilityResultMessage(
            invocation_id=data["invocation_id"],
            capability_name=data.get("capability_name", ""),
            payload=dict(data.get("payload") or {}),
        )
    raise ValueError(f"Unknown conversation role: {role!r}")


def history_from_dicts(items: list[dict] | None) -> History:
    return tuple(message_from_dict(d) for d in items or ())


def history_to_dicts(history: History) -> list[dict]:
    return [m.to_dict() for m in history]


def unanswered_calls(history: History) -> list[CapabilityCall]:
    """Calls in history without a matching result message."""
    answered = {
        m.invocation_id for m in history if isinstance(m, CapabilityResultMessage)
    }
    return [
        c
        for m in history if isinstance(m, AssistantMessage)
        for c in m.capability_calls
        if c.invocation_id not in answered
    ]
