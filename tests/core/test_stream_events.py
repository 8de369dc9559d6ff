"""Stream Events — tests for SSE envelopes and the missing-final fallback."""

from sqlagent.core.errors import MISSING_FINAL_ANSWER, user_message_for
from sqlagent.core.final_answer import FinalAnswer
from sqlagent.core.stream_events import (
    CapabilityCall,
    CapabilityResult,
    ErrorEvent,
    FinalEvent,
    StepEvent,
    calls_started,
    final_or_fallback,
    text_delta,
)


def test_step_event_envelope_includes_only_present_parts():
    assert text_delta("hi").to_sse_event() == {"type": "step", "data": {"text": "hi"}}

    call = CapabilityCall("c1", "run_query", {"query": "SELECT 1"}, sql="SELECT 1")
    envelope = calls_started([call]).to_sse_event()
    assert envelope["type"] == "step"
    assert envelope["data"]["capability_calls"][0]["sql"] == "SELECT 1"
    assert "text" not in envelope["data"]


def test_final_event_envelope_is_json_ready():
    answer = FinalAnswer(response_kind="sql", query="SELECT 1", success=True)
    envelope = FinalEvent(answer).to_sse_event()
    assert envelope["type"] == "final"
    assert envelope["data"]["response_kind"] == "sql"
    assert envelope["data"]["success"] is True


def test_error_event_envelope():
    assert ErrorEvent("X", "msg").to_sse_event() == {
        "type": "error", "data": {"code": "X", "message": "msg"},
    }


def test_result_error_flag_and_preview_truncation():
    result = CapabilityResult("c1", "run_query", {"success": False, "blob": "x" * 500})
    assert result.is_error
    assert len(result.preview(50)) == 51
    assert not CapabilityResult("c2", "run_query", {"success": True}).is_error


def test_call_round_trips_through_dict():
    call = CapabilityCall("c1", "run_query", {"query": "DELETE"}, "DELETE", True)
    assert CapabilityCall.from_dict(call.to_dict()) == call


def test_final_or_fallback_returns_last_final():
    first = FinalAnswer(response_kind="text", explanation="a", success=True)
    last = FinalAnswer(response_kind="text", explanation="b", success=True)
    assert final_or_fallback([FinalEvent(first), StepEvent(), FinalEvent(last)]) == last


def test_final_or_fallback_synthesizes_when_missing():
    answer = final_or_fallback([text_delta("partial")])
    assert answer.success is False
    assert answer.explanation == user_message_for(MISSING_FINAL_ANSWER)
