"""Agent Runner Helpers — pure stream processing, message building and caching.

Invariants:
    - All functions are pure (stateless, deterministic)
    - to_anthropic_messages() never emits two consecutive messages with the same role;
      within a merged user message tool_result blocks come before text blocks
    - Capability results sent to the model are truncated to max_chars of JSON
    - Prompt caching tags last block in each cacheable segment (system, tools, last-user-message)

Design Decisions:
    - Extracted from agent_runner.py so the loop reads as control flow only
    - process_stream_event returns (event_or_None, text_lstrip): caller decides yield timing
    - Unanswered calls in an incoming history are closed with a synthetic failed
      result; the Messages API rejects a tool_use block without its tool_result
"""

import json
from typing import Any

from sqlagent.core.conversation import (
    AssistantMessage, CapabilityResultMessage, History, UserMessage, unanswered_calls,
)
from sqlagent.core.domain_types import ResponseKind
from sqlagent.core.errors import CAPABILITY_EXECUTION_ERROR
from sqlagent.core.final_answer import FinalAnswer
from sqlagent.core.stream_events import CapabilityCall, StepEvent, text_delta


# -- SSE envelopes -------------------------------------------------------------

def run_started_event(run_id: str) -> dict:
    return {"type": "run_started", "data": {"run_id": run_id}}


def done_event(
    run_id: str, error: bool = False, history: list[dict] | None = None,
) -> dict:
    data: dict[str, Any] = {"run_id": run_id, "error": error}
    if history is not None:
        data["history"] = history
    return {"type": "done", "data": data}


# -- Response introspection ----------------------------------------------------

def tool_use_blocks(message: Any) -> list:
    return [
        b for b in message.content
        if getattr(b, "type", None) == "tool_use"
    ]


def response_text(message: Any) -> str:
    return "".join(
        b.text for b in message.content
        if getattr(b, "type", None) == "text"
    )


def split_final_call(blocks: list, final_name: str) -> tuple[Any | None, list]:
    """Separate the first final-answer block from the other tool_use blocks."""
    final = next((b for b in blocks if b.name == final_name), None)
    others = [b for b in blocks if b is not final and b.name != final_name]
    return final, others


def final_answer_text(answer: FinalAnswer) -> str:
    """Assistant text recorded in history for a terminal answer."""
    if answer.response_kind == ResponseKind.SQL and answer.query:
        if answer.explanation:
            return f"{answer.explanation}\n\n{answer.query}"
        return answer.query
    return answer.explanation


# -- Stream event processing ---------------------------------------------------

def process_stream_event(
    event: Any, text_lstrip: bool,
) -> tuple[StepEvent | None, bool]:
    """Process a single stream event. Returns (event_or_None, new_text_lstrip)."""
    etype = getattr(event, "type", None)

    if etype == "content_block_start":
        if getattr(event.content_block, "type", None) == "text":
            return None, True
        return None, text_lstrip

    if etype == "content_block_delta":
        return _handle_block_delta(event.delta, text_lstrip)

    return None, text_lstrip


def _handle_block_delta(
    delta: Any, text_lstrip: bool,
) -> tuple[StepEvent | None, bool]:
    dt = getattr(delta, "type", None)
    if dt == "text_delta" and delta.text:
        txt = delta.text
        if text_lstrip:
            txt = txt.lstrip()
            if not txt:
                return None, True
        return text_delta(txt), False
    return None, text_lstrip


# -- History -> Messages API ---------------------------------------------------

def result_content(payload: dict, max_chars: int) -> str:
    text = json.dumps(payload, ensure_ascii=False, default=str)
    if len(text) > max_chars:
        return text[:max_chars] + "...(truncated)"
    return text


def _interrupted(call: CapabilityCall) -> CapabilityResultMessage:
    return CapabilityResultMessage(
        invocation_id=call.invocation_id,
        capability_name=call.capability_name,
        payload={
            "success": False,
            "error_code": CAPABILITY_EXECUTION_ERROR,
            "message": "Invocation was interrupted before it completed",
        },
    )


def close_unanswered(history: History) -> History:
    """Follow each call that never got a result with a failed one.

    The synthetic result sits right after the assistant message that owns the
    call, so it lands in the tool_result turn answering that tool_use.
    """
    dangling = {c.invocation_id for c in unanswered_calls(history)}
    if not dangling:
        return history
    closed: list = []
    for message in history:
        closed.append(message)
        if isinstance(message, AssistantMessage):
            closed.extend(
                _interrupted(c) for c in message.capability_calls
                if c.invocation_id in dangling
            )
    return tuple(closed)


def _to_api_message(message, max_chars: int) -> dict | None:
    if isinstance(message, UserMessage):
        return {"role": "user", "content": [{"type": "text", "text": message.text}]}
    if isinstance(message, AssistantMessage):
        content: list[dict] = []
        if message.text:
            content.append({"type": "text", "text": message.text})
        content.extend(
            {
                "type": "tool_use",
                "id": c.invocation_id,
                "name": c.capability_name,
                "input": c.input,
            }
            for c in message.capability_calls
        )
        return {"role": "assistant", "content": content} if content else None
    if isinstance(message, CapabilityResultMessage):
        return {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": message.invocation_id,
                "content": result_content(message.payload, max_chars),
                "is_error": message.payload.get("success") is False,
            }],
        }
    raise TypeError(f"Unsupported conversation message: {type(message).__name__}")


def to_anthropic_messages(history: History, max_chars: int = 1000) -> list[dict]:
    """Convert conversation history to the Messages API wire format."""
    messages: list[dict] = []
    for item in history:
        msg = _to_api_message(item, max_chars)
        if msg is None:
            continue
        if messages and messages[-1]["role"] == msg["role"]:
            messages[-1] = {
                "role": msg["role"],
                "content": messages[-1]["content"] + msg["content"],
            }
        else:
            messages.append(msg)
    for msg in messages:
        if msg["role"] == "user":
            msg["content"] = sorted(
                msg["content"], key=lambda b: b["type"] != "tool_result",
            )
    return messages


# -- Prompt Caching ------------------------------------------------------------

_CACHE = {"type": "ephemeral"}


def with_system_cache(system: str) -> list[dict]:
    return [{"type": "text", "text": system, "cache_control": _CACHE}]


def with_tools_cache(tools: list[dict]) -> list[dict]:
    if not tools:
        return tools
    cached = list(tools)
    cached[-1] = {**cached[-1], "cache_control": _CACHE}
    return cached


def with_message_cache(messages: list[dict]) -> list[dict]:
    if not messages:
        return messages
    cached = [dict(m) for m in messages]
    for i in range(len(cached) - 1, -1, -1):
        if cached[i].get("role") == "user":
            content = cached[i].get("content")
            if isinstance(content, str):
                cached[i]["content"] = [
                    {"type": "text", "text": content,
                     "cache_control": _CACHE},
                ]
            elif isinstance(content, list) and content:
                last = {**content[-1], "cache_control": _CACHE}
                cached[i]["content"] = content[:-1] + [last]
            break
    return cached
