"""API tests: runs router — SSE stream, display projection, confirmations.

Invariants:
    - The stream opens with run_started and closes with done; exactly one final between
    - The display endpoint returns the projection of the streamed events
    - Confirmation decisions resolve pending invocations by (run_id, invocation_id)
    - Unknown runs/invocations → 404; malformed bodies → 400 VALIDATION_ERROR
    - Execute refuses non-executable answers and unapproved writes with 409

Design Decisions:
    - httpx ASGITransport against the real app; lifespan does not run, so the
      runner (MockAnthropicClient + seeded registry) is placed on app.state directly
"""

import asyncio
import json

import httpx
import pytest
from sqlalchemy import text

from sqlagent.api.routes import runs
from sqlagent.core.domain_types import GateOutcome
from sqlagent.core.errors import (
    ANSWER_NOT_EXECUTABLE, CONFIRMATION_REQUIRED, RESOURCE_NOT_FOUND,
    TransportFailureError, user_message_for,
)
from sqlagent.infrastructure import database
from sqlagent.main import app
from sqlagent.services.agent_runner import AgentRunner

from tests.services.mock_anthropic import MockAnthropicClient, final_response, tool_response

ORDERS_QUERY = "SELECT id FROM orders ORDER BY created_at DESC LIMIT 2"


@pytest.fixture(autouse=True)
def _clear_runs():
    runs._active_runs.clear()
    yield
    runs._active_runs.clear()
    if hasattr(app.state, "agent_runner"):
        del app.state.agent_runner


@pytest.fixture
async def http():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _install_runner(registry, responses) -> MockAnthropicClient:
    client = MockAnthropicClient(responses)
    app.state.agent_runner = AgentRunner(client, registry)
    return client


def _sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines() if line.startswith("data: ")
    ]


# ==============================================================================
# Streaming
# ==============================================================================


async def test_run_streams_envelopes_in_order(http, registry):
    _install_runner(registry, [
        tool_response("run_query", {"query": ORDERS_QUERY}, tool_id="q1"),
        final_response({
            "response_kind": "sql", "query": ORDERS_QUERY,
            "explanation": "Newest orders.", "success": True,
        }),
    ])

    response = await http.post("/api/v1/runs", json={"prompt": "newest orders"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    types = [e["type"] for e in events]
    assert types[0] == "run_started"
    assert types[-1] == "done"
    assert types.count("final") == 1
    assert types[-2] == "final"

    steps = [e["data"] for e in events if e["type"] == "step"]
    assert steps[0]["capability_calls"][0]["sql"] == ORDERS_QUERY
    assert steps[1]["capability_results"][0]["payload"]["rows"] == [[8], [7]]

    done = events[-1]["data"]
    assert done["error"] is False
    assert [m["role"] for m in done["history"]] == [
        "user", "assistant", "capability-result", "assistant",
    ]


async def test_display_projection_after_run(http, registry):
    _install_runner(registry, [
        tool_response("run_query", {"query": ORDERS_QUERY}, tool_id="q1"),
        final_response({"response_kind": "text", "explanation": "ok", "success": True}),
    ])
    response = await http.post("/api/v1/runs", json={"prompt": "newest orders"})
    run_id = _sse_events(response.text)[0]["data"]["run_id"]

    display = await http.get(f"/api/v1/runs/{run_id}/display")

    assert display.status_code == 200
    body = display.json()
    assert body["state"] == "terminal_final"
    assert [u["kind"] for u in body["units"]] == ["user", "sql-preview", "capability-call"]
    assert body["units"][2]["status"] == "finished"
    assert body["final"]["explanation"] == "ok"
    assert body["invocations"] == {"q1": "finished"}


async def test_history_round_trips_into_next_run(http, registry):
    client = _install_runner(registry, [
        final_response({"response_kind": "text", "explanation": "first", "success": True}),
        final_response({"response_kind": "text", "explanation": "second", "success": True}),
    ])
    first = await http.post("/api/v1/runs", json={"prompt": "one"})
    history = _sse_events(first.text)[-1]["data"]["history"]

    second = await http.post("/api/v1/runs", json={"prompt": "two", "history": history})

    assert _sse_events(second.text)[-2]["data"]["explanation"] == "second"
    sent = client.calls[1]["messages"]
    assert [m["role"] for m in sent] == ["user", "assistant", "user"]


async def test_transport_failure_marks_done_as_error(http, registry):
    _install_runner(registry, [TransportFailureError("down", "timeout")])

    response = await http.post("/api/v1/runs", json={"prompt": "hi"})

    types = [e["type"] for e in _sse_events(response.text)]
    assert types == ["run_started", "error", "final", "done"]
    assert _sse_events(response.text)[-1]["data"]["error"] is True


# ==============================================================================
# Validation & Not Found
# ==============================================================================


async def test_blank_prompt_rejected(http, registry):
    _install_runner(registry, [])
    response = await http.post("/api/v1/runs", json={"prompt": "   "})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert response.json()["error"]["details"][0]["field"] == "prompt"


async def test_malformed_history_rejected(http, registry):
    _install_runner(registry, [])
    response = await http.post(
        "/api/v1/runs", json={"prompt": "hi", "history": [{"role": "robot"}]},
    )
    assert response.status_code == 400


async def test_unknown_run_is_404(http):
    response = await http.get("/api/v1/runs/missing/display")
    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "RESOURCE_NOT_FOUND"
    assert error["message"] == user_message_for(RESOURCE_NOT_FOUND)
    assert error["detail"] == "Run 'missing' not found"
    assert error["category"] == "resource_not_found"


# ==============================================================================
# Confirmations
# ==============================================================================


async def _pending_guard(registry):
    runner = AgentRunner(MockAnthropicClient([]), registry)
    run = runner.start("delete")
    runs.register_run(run)
    task = asyncio.create_task(
        run.gate.guard("d1", "run_query", {"query": "DELETE FROM orders"}),
    )
    for _ in range(50):
        if run.gate.pending():
            break
        await asyncio.sleep(0)
    return run, task


async def test_list_and_approve_confirmation(http, registry):
    run, task = await _pending_guard(registry)

    listed = await http.get(f"/api/v1/runs/{run.run_id}/confirmations")
    assert listed.status_code == 200
    assert [p["invocation_id"] for p in listed.json()] == ["d1"]
    assert listed.json()[0]["status"] == "pending"

    decided = await http.post(
        f"/api/v1/runs/{run.run_id}/confirmations/d1", json={"approve": True},
    )
    assert decided.status_code == 200
    assert decided.json() == {"invocation_id": "d1", "status": "approved", "applied": True}
    assert await task == GateOutcome.APPROVED

    again = await http.post(
        f"/api/v1/runs/{run.run_id}/confirmations/d1", json={"approve": False},
    )
    assert again.status_code == 404


async def test_deny_confirmation(http, registry):
    run, task = await _pending_guard(registry)

    decided = await http.post(
        f"/api/v1/runs/{run.run_id}/confirmations/d1", json={"approve": False},
    )

    assert decided.json()["status"] == "denied"
    assert await task == GateOutcome.DENIED


async def test_confirmation_decision_must_be_boolean(http, registry):
    run, task = await _pending_guard(registry)

    response = await http.post(
        f"/api/v1/runs/{run.run_id}/confirmations/d1", json={"approve": "yes"},
    )

    assert response.status_code == 400
    assert run.gate.pending()
    run.close()
    assert await task == GateOutcome.DENIED


async def test_close_all_runs_denies_pending(registry):
    run, task = await _pending_guard(registry)

    assert runs.close_all_runs() == 1
    assert await task == GateOutcome.DENIED


async def test_abandoned_runs_are_pruned(registry):
    total = runs._MAX_RETAINED_RUNS + 20
    client = MockAnthropicClient([
        tool_response("run_query", {"query": "DELETE FROM orders"}, tool_id=f"d{i}")
        for i in range(total)
    ])
    runner = AgentRunner(client, registry)

    for _ in range(total):
        run = runner.start("delete every order")
        runs.register_run(run)
        events = run.events()
        await events.__anext__()
        await events.aclose()
        assert run.closed
        assert not run.finished

    assert len(runs._active_runs) <= runs._MAX_RETAINED_RUNS


# ==============================================================================
# Executing the final answer
# ==============================================================================


async def _finished_run(http, registry, answer: dict) -> str:
    _install_runner(registry, [final_response(answer)])
    response = await http.post("/api/v1/runs", json={"prompt": "go"})
    return _sse_events(response.text)[0]["data"]["run_id"]


async def _count(gateway, table: str) -> int:
    async with gateway.engine.connect() as conn:
        return (await conn.execute(text(f"SELECT COUNT(*) FROM {table}"))).scalar()


@pytest.fixture
def db(gateway, monkeypatch):
    monkeypatch.setattr(database, "db_gateway", gateway)
    return gateway


async def test_refused_text_answer_is_not_executable(http, registry, db):
    run_id = await _finished_run(http, registry, {
        "responseKind": "text", "success": False,
        "explanation": "Deleting all users is destructive; please narrow the request.",
    })

    response = await http.post(f"/api/v1/runs/{run_id}/execute", json={"approve": True})

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == ANSWER_NOT_EXECUTABLE
    assert error["run_id"] == run_id
    assert await _count(db, "users") == 3


async def test_read_only_answer_executes_without_approval(http, registry, db):
    run_id = await _finished_run(http, registry, {
        "response_kind": "sql", "query": ORDERS_QUERY, "success": True,
    })

    response = await http.post(f"/api/v1/runs/{run_id}/execute", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["approved"] is False
    assert body["result"]["rows"] == [[8], [7]]


async def test_write_answer_requires_approval(http, registry, db):
    delete = "DELETE FROM orders WHERE user_id = 1"
    run_id = await _finished_run(http, registry, {
        "response_kind": "sql", "query": delete,
        "requires_confirmation": False, "success": True,
    })

    refused = await http.post(f"/api/v1/runs/{run_id}/execute", json={"approve": False})
    assert refused.status_code == 409
    assert refused.json()["error"]["code"] == CONFIRMATION_REQUIRED
    assert await _count(db, "orders") == 8

    approved = await http.post(f"/api/v1/runs/{run_id}/execute", json={"approve": True})
    assert approved.status_code == 200
    assert approved.json()["approved"] is True
    assert approved.json()["result"] == {"rows_affected": 2}
    assert await _count(db, "orders") == 6


async def test_execute_approval_must_be_boolean(http, registry, db):
    run_id = await _finished_run(http, registry, {
        "response_kind": "sql", "query": "DELETE FROM orders", "success": True,
    })
    response = await http.post(f"/api/v1/runs/{run_id}/execute", json={"approve": "yes"})
    assert response.status_code == 400
    assert await _count(db, "orders") == 8


async def test_execute_unknown_run_is_404(http, db):
    response = await http.post("/api/v1/runs/missing/execute", json={})
    assert response.status_code == 404


async def test_execute_without_database_is_503(http, registry, monkeypatch):
    run_id = await _finished_run(http, registry, {
        "response_kind": "sql", "query": "SELECT 1", "success": True,
    })
    monkeypatch.setattr(database, "db_gateway", None)

    response = await http.post(f"/api/v1/runs/{run_id}/execute", json={})

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "DATABASE_ERROR"
    assert "detail" not in error
