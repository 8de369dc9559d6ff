"""Stream Event Protocol — the ordered, typed events one agent run emits.

Invariants:
    - Exactly three event types: StepEvent, FinalEvent, ErrorEvent
    - Events are immutable; consumers process them strictly in emission order
    - invocation_id on calls/results is the sole correlation key (supplied by the model)
    - Every event serializes to the SSE envelope {"type": ..., "data": ...}
    - A stream without a FinalEvent is an error condition (final_or_fallback)

Design Decisions:
    - Frozen dataclasses over dicts: the reducer pattern-matches on type, not on
      string keys, and mutation after emission is impossible
    - CapabilityCall carries the literal SQL and the gate verdict so consumers can show
      the statement (and a confirmation prompt) before execution completes
"""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Union

from sqlagent.core.errors import MISSING_FINAL_ANSWER
from sqlagent.core.final_answer import FinalAnswer, fallback_answer

RESULT_PREVIEW_CHARS = 300


@dataclass(frozen=True)
class CapabilityCall:
    """One capability invocation requested by the model."""
    invocation_id: str
    capability_name: str
    input: dict[str, Any] = field(default_factory=dict)
    sql: str | None = None
    requires_confirmation: bool = False

    def to_dict(self) -> dict:
        data = {
            "invocation_id": self.invocation_id,
            "capability_name": self.capability_name,
            "input": self.input,
            "requires_confirmation": self.requires_confirmation,
        }
        if self.sql is not None:
            data["sql"] = self.sql
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CapabilityCall":
        return cls(
            invocation_id=data["invocation_id"],
            capability_name=data["capability_name"],
            input=dict(data.get("input") or {}),
            sql=data.get("sql"),
            requires_confirmation=bool(data.get("requires_confirmation", False)),
        )


@dataclass(frozen=True)
class CapabilityResult:
    """Outcome of one invocation, correlated to its call by invocation_id."""
    invocation_id: str
    capability_name: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.payload.get("success") is False

    def preview(self, limit: int = RESULT_PREVIEW_CHARS) -> str:
        text = json.dumps(self.payload, ensure_ascii=False, default=str)
        return text if len(text) <= limit else text[:limit] + "…"

    def to_dict(self) -> dict:
        return {
            "invocation_id": self.invocation_id,
            "capability_name": self.capability_name,
            "payload": self.payload,
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class StepEvent:
    """Incremental step output: a text delta and/or capability calls and results."""
    text: str | None = None
    capability_calls: tuple[CapabilityCall, ...] = ()
    capability_results: tuple[CapabilityResult, ...] = ()

    @property
    def has_capability_activity(self) -> bool:
        return bool(self.capability_calls or self.capability_results)

    def to_sse_event(self) -> dict:
        data: dict[str, Any] = {}
        if self.text:
            data["text"] = self.text
        if self.capability_calls:
            data["capability_calls"] = [c.to_dict() for c in self.capability_calls]
        if self.capability_results:
            data["capability_results"] = [
                r.to_dict() for r in self.capability_results
            ]
        return {"type": "step", "data": data}


@dataclass(frozen=True)
class FinalEvent:
    """Terminal structured answer. At most one per run."""
    answer: FinalAnswer

    def to_sse_event(self) -> dict:
        return {"type": "final", "data": self.answer.model_dump(mode="json")}


@dataclass(frozen=True)
class ErrorEvent:
    """Run-level error. message is user-facing text derived from code."""
    code: str
    message: str

    def to_sse_event(self) -> dict:
        return {"type": "error", "data": {"code": self.code, "message": self.message}}


StreamEvent = Union[StepEvent, FinalEvent, ErrorEvent]


def text_delta(text: str) -> StepEvent:
    return StepEvent(text=text)


def calls_started(calls: Iterable[CapabilityCall]) -> StepEvent:
    return StepEvent(capability_calls=tuple(calls))


def result_finished(result: CapabilityResult) -> StepEvent:
    return StepEvent(capability_results=(result,))


def final_or_fallback(events: Iterable[StreamEvent]) -> FinalAnswer:
    """Last FinalEvent's answer, or the missing-answer fallback."""
    answer = None
    for event in events:
        if isinstance(event, FinalEvent):
            answer = event.answer
    return answer or fallback_answer(MISSING_FINAL_ANSWER)
