"""Agent Schemas — Pydantic models for the run and confirmation API boundary.

Invariants:
    - RunRequest.prompt: 1-10000 chars, stripped, non-empty
    - RunRequest.history items are parsed into conversation messages before a run starts
    - ConfirmationDecision and ExecuteRequest are strict booleans: "yes" is rejected,
      not coerced

Design Decisions:
    - History travels as plain dicts (ConversationMessage.to_dict shape) so clients
      can store it verbatim between runs; parsing lives in core/conversation.py
"""

from typing import Any

from pydantic import BaseModel, Field, StrictBool, field_validator

from sqlagent.core.conversation import History, history_from_dicts


class RunRequest(BaseModel):
    """Start a run: a natural-language request plus optional prior history."""
    prompt: str = Field(min_length=1, max_length=10_000)
    history: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt cannot be empty or whitespace")
        return v

    @field_validator("history")
    @classmethod
    def check_history(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        try:
            history_from_dicts(v)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"invalid history: {e}")
        return v

    def parsed_history(self) -> History:
        return history_from_dicts(self.history)


class ConfirmationDecision(BaseModel):
    approve: StrictBool


class PendingConfirmationResponse(BaseModel):
    """A gated invocation awaiting the user's decision."""
    invocation_id: str
    capability_name: str
    input: dict[str, Any]
    reason: str
    status: str


class ConfirmationResult(BaseModel):
    invocation_id: str
    status: str
    applied: bool


class DisplayResponse(BaseModel):
    run_id: str
    state: str
    units: list[dict[str, Any]]
    final: dict[str, Any] | None = None
    invocations: dict[str, str] = Field(default_factory=dict)


class ExecuteRequest(BaseModel):
    """Execute a finished run's final statement; approve is needed for writes."""
    approve: StrictBool = False


class ExecutionResponse(BaseModel):
    run_id: str
    query: str
    approved: bool
    result: dict[str, Any]
