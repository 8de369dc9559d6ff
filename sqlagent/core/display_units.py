"""Display Units — pure reducer projecting stream events into renderable units.

Invariants:
    - reduce(state, event) -> state is PURE: the input state is never mutated
    - Consecutive text deltas accumulate into one text unit (concatenation in order)
    - Any capability call/result, final or error event closes the open text unit
    - At most one open capability-call unit per invocation_id; invocation ids are
      never reused within one run
    - A result with no open invocation yields exactly one standalone error unit and
      leaves every other unit untouched
    - An SQL-bearing call is preceded by an sql-preview unit carrying its statement,
      independent of the call lifecycle
    - The thinking placeholder is dropped by the first event of any kind
    - Units are derived: replay(events) rebuilds the same state from the event log

Design Decisions:
    - Explicit invocation_id -> unit index map: O(1) correlation, explicit orphan path
      instead of scanning the unit list by predicate
    - Payload-level failure ({"success": False}) marks the unit ERROR, not FINISHED
    - FinalEvent is stored on the state (state.final) rather than rendered as a unit:
      the answer panel is owned by the renderer
    - Deterministic unit ids (call-<invocation_id>, text-<n>): replay yields equal states
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from sqlagent.core.domain_types import UnitKind, UnitStatus
from sqlagent.core.errors import CORRELATION_VIOLATION, user_message_for
from sqlagent.core.final_answer import FinalAnswer
from sqlagent.core.stream_events import (
    CapabilityCall, CapabilityResult, ErrorEvent, FinalEvent, StepEvent, StreamEvent,
)


@dataclass(frozen=True)
class DisplayUnit:
    """One renderable block. Read-only for renderers."""
    id: str
    kind: UnitKind
    content: str
    status: UnitStatus | None = None
    meta: Mapping[str, Any] | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "content": self.content,
            "status": self.status.value if self.status else None,
            "meta": dict(self.meta) if self.meta is not None else None,
        }


@dataclass(frozen=True)
class DisplayState:
    """Reducer state for one run. Treat as immutable."""
    units: tuple[DisplayUnit, ...] = ()
    open_text: int | None = None
    open_calls: Mapping[str, int] = field(default_factory=dict)
    seen_calls: frozenset[str] = frozenset()
    thinking: int | None = None
    final: FinalAnswer | None = None
    seq: int = 0


# -- Unit list primitives ------------------------------------------------------

def _append(state: DisplayState, unit: DisplayUnit) -> tuple[DisplayState, int]:
    index = len(state.units)
    return replace(state, units=state.units + (unit,), seq=state.seq + 1), index


def _set_unit(state: DisplayState, index: int, unit: DisplayUnit) -> DisplayState:
    units = state.units[:index] + (unit,) + state.units[index + 1:]
    return replace(state, units=units)


def _shift(index: int | None, removed: int) -> int | None:
    if index is None or index < removed:
        return index
    return index - 1


def _drop_thinking(state: DisplayState) -> DisplayState:
    removed = state.thinking
    if removed is None:
        return state
    return replace(
        state,
        units=state.units[:removed] + state.units[removed + 1:],
        thinking=None,
        open_text=_shift(state.open_text, removed),
        open_calls={k: _shift(v, removed) for k, v in state.open_calls.items()},
    )


def _close_text(state: DisplayState) -> DisplayState:
    if state.open_text is None:
        return state
    return replace(state, open_text=None)


def _append_error(
    state: DisplayState, code: str, message: str, **meta: Any,
) -> DisplayState:
    unit = DisplayUnit(
        id=f"error-{state.seq}", kind=UnitKind.ERROR,
        content=message, meta={"code": code, **meta},
    )
    return _append(state, unit)[0]


# -- Text segmentation ---------------------------------------------------------

def _apply_text(state: DisplayState, delta: str) -> DisplayState:
    if state.open_text is None:
        unit = DisplayUnit(id=f"text-{state.seq}", kind=UnitKind.TEXT, content=delta)
        state, index = _append(state, unit)
        return replace(state, open_text=index)
    current = state.units[state.open_text]
    return _set_unit(
        state, state.open_text, replace(current, content=current.content + delta),
    )


# -- Capability correlation ----------------------------------------------------

def _apply_call(state: DisplayState, call: CapabilityCall) -> DisplayState:
    if call.invocation_id in state.seen_calls:
        return _append_error(
            state, CORRELATION_VIOLATION, user_message_for(CORRELATION_VIOLATION),
            invocation_id=call.invocation_id, reason="duplicate invocation id",
        )
    if call.sql is not None:
        preview = DisplayUnit(
            id=f"sql-{call.invocation_id}",
            kind=UnitKind.SQL_PREVIEW,
            content=call.sql,
            meta={
                "invocation_id": call.invocation_id,
                "requires_confirmation": call.requires_confirmation,
            },
        )
        state = _append(state, preview)[0]
    unit = DisplayUnit(
        id=f"call-{call.invocation_id}",
        kind=UnitKind.CAPABILITY_CALL,
        content=f"{call.capability_name} started",
        status=UnitStatus.STARTED,
        meta={
            "invocation_id": call.invocation_id,
            "capability_name": call.capability_name,
            "input": call.input,
            "requires_confirmation": call.requires_confirmation,
        },
    )
    state, index = _append(state, unit)
    return replace(
        state,
        open_calls={**state.open_calls, call.invocation_id: index},
        seen_calls=state.seen_calls | {call.invocation_id},
    )


def _apply_result(state: DisplayState, result: CapabilityResult) -> DisplayState:
    index = state.open_calls.get(result.invocation_id)
    if index is None:
        return _append_error(
            state, CORRELATION_VIOLATION, user_message_for(CORRELATION_VIOLATION),
            invocation_id=result.invocation_id, reason="no open invocation",
        )
    current = state.units[index]
    updated = replace(
        current,
        status=UnitStatus.ERROR if result.is_error else UnitStatus.FINISHED,
        content=result.preview(),
        meta={
            "invocation_id": result.invocation_id,
            "capability_name": result.capability_name,
            "result": result.payload,
        },
    )
    open_calls = {k: v for k, v in state.open_calls.items() if k != result.invocation_id}
    return replace(_set_unit(state, index, updated), open_calls=open_calls)


def _apply_step(state: DisplayState, event: StepEvent) -> DisplayState:
    if event.text:
        state = _apply_text(state, event.text)
    if event.has_capability_activity:
        state = _close_text(state)
    for call in event.capability_calls:
        state = _apply_call(state, call)
    for result in event.capability_results:
        state = _apply_result(state, result)
    return state


# -- Public API ----------------------------------------------------------------

def reduce(state: DisplayState, event: StreamEvent) -> DisplayState:
    """Fold one stream event into the display state."""
    state = _drop_thinking(state)
    if isinstance(event, StepEvent):
        return _apply_step(state, event)
    if isinstance(event, FinalEvent):
        return replace(_close_text(state), final=event.answer)
    if isinstance(event, ErrorEvent):
        return _append_error(_close_text(state), event.code, event.message)
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def add_user_message(state: DisplayState, text: str) -> DisplayState:
    unit = DisplayUnit(id=f"user-{state.seq}", kind=UnitKind.USER, content=text)
    return _append(_close_text(_drop_thinking(state)), unit)[0]


def add_thinking(state: DisplayState, label: str = "Thinking…") -> DisplayState:
    """Insert the transient placeholder (replacing any existing one)."""
    state = _drop_thinking(state)
    unit = DisplayUnit(id=f"thinking-{state.seq}", kind=UnitKind.THINKING, content=label)
    state, index = _append(state, unit)
    return replace(state, thinking=index)


def replay(
    events: Iterable[StreamEvent], state: DisplayState | None = None,
) -> DisplayState:
    """Rebuild display state from an event log."""
    if state is None:
        state = DisplayState()
    for event in events:
        state = reduce(state, event)
    return state


def open_invocations(state: DisplayState) -> list[str]:
    return list(state.open_calls)


def units_as_dicts(state: DisplayState) -> list[dict]:
    return [u.to_dict() for u in state.units]
