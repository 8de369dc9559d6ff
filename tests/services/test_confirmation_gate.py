"""Confirmation Gate — tests for classify/guard and Pending -> Approved | Denied.

Tests cover:
    - SELECT auto-approves, DELETE suspends; non-SQL capabilities auto-approve
    - approve()/deny() resolve the waiting invocation; first call wins
    - Denial yields "User denied execution" and never runs the executor
    - A pending confirmation blocks only its own invocation
    - release_all() denies everything and closes the gate
"""

import asyncio

import pytest
from pydantic import BaseModel

from sqlagent.core.domain_types import ConfirmationStatus, GateOutcome
from sqlagent.core.errors import USER_DENIED_REASON, ResourceNotFoundError
from sqlagent.services.agent_runner import AgentRunner
from sqlagent.services.capability_registry import Capability, CapabilityRegistry
from sqlagent.services.confirmation_gate import ConfirmationGate, sql_classifier

from tests.services.mock_anthropic import MockAnthropicClient, final_response, tool_response


class _QueryInput(BaseModel):
    query: str
    requires_confirmation: bool = False


def _registry(executed):
    async def run_query(data: _QueryInput) -> dict:
        executed.append(data.query)
        return {"success": True, "rows_affected": 1}

    async def list_tables(_) -> dict:
        return {"success": True, "tables": ["users"]}

    return CapabilityRegistry([
        Capability("run_query", "Run SQL.", _QueryInput, run_query, sql_field="query"),
        Capability("list_tables", "List tables.", _QueryInput, list_tables),
    ])


def _gate(executed=None):
    return ConfirmationGate(sql_classifier(_registry(executed or [])), run_id="r1")


async def _until_pending(gate, count=1):
    for _ in range(50):
        if len(gate.pending()) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("confirmation never became pending")


# ─── classify ────────────────────────────────────────────────────

def test_classify_select_auto_approves():
    assert _gate().classify("run_query", {"query": "SELECT * FROM users"}).auto_approve


def test_classify_delete_requires_confirmation():
    decision = _gate().classify("run_query", {"query": "DELETE FROM users"})
    assert decision.auto_approve is False


def test_classify_honors_requires_confirmation_flag():
    decision = _gate().classify(
        "run_query", {"query": "SELECT 1", "requires_confirmation": True},
    )
    assert decision.auto_approve is False


def test_classify_non_sql_capability_auto_approves():
    assert _gate().classify("list_tables", {"query": "DROP TABLE users"}).auto_approve


# ─── guard ───────────────────────────────────────────────────────

async def test_guard_auto_approved_never_suspends():
    gate = _gate()
    outcome = await gate.guard("c1", "run_query", {"query": "SELECT 1"})
    assert outcome == GateOutcome.AUTO_APPROVED
    assert gate.pending() == []


async def test_guard_waits_for_approval():
    gate = _gate()
    task = asyncio.create_task(gate.guard("c1", "run_query", {"query": "DELETE FROM users"}))
    await _until_pending(gate)

    pending = gate.pending()[0]
    assert pending.invocation_id == "c1"
    assert pending.status == ConfirmationStatus.PENDING
    assert not task.done()

    assert gate.approve("c1") is True
    assert await task == GateOutcome.APPROVED
    assert gate.pending() == []


async def test_guard_denied():
    gate = _gate()
    task = asyncio.create_task(gate.guard("c1", "run_query", {"query": "DELETE FROM users"}))
    await _until_pending(gate)
    gate.deny("c1")
    assert await task == GateOutcome.DENIED


async def test_first_decision_wins():
    gate = _gate()
    task = asyncio.create_task(gate.guard("c1", "run_query", {"query": "DELETE FROM users"}))
    await _until_pending(gate)
    pending = gate.get("c1")

    assert pending.deny() is True
    assert pending.approve() is False
    assert pending.deny() is False
    assert pending.status == ConfirmationStatus.DENIED
    assert await task == GateOutcome.DENIED


async def test_unknown_invocation_raises_not_found():
    with pytest.raises(ResourceNotFoundError):
        _gate().approve("nope")


async def test_pending_blocks_only_its_own_invocation():
    gate = _gate()
    blocked = asyncio.create_task(
        gate.guard("c1", "run_query", {"query": "DELETE FROM users"}),
    )
    await _until_pending(gate)

    outcome = await gate.guard("c2", "run_query", {"query": "SELECT 1"})
    assert outcome == GateOutcome.AUTO_APPROVED
    assert not blocked.done()

    gate.approve("c1")
    assert await blocked == GateOutcome.APPROVED


async def test_release_all_denies_and_closes():
    gate = _gate()
    first = asyncio.create_task(gate.guard("c1", "run_query", {"query": "DELETE FROM users"}))
    second = asyncio.create_task(gate.guard("c2", "run_query", {"query": "UPDATE users SET x=1"}))
    await _until_pending(gate, 2)

    assert gate.release_all() == 2
    assert await first == GateOutcome.DENIED
    assert await second == GateOutcome.DENIED
    assert gate.closed
    assert await gate.guard("c3", "run_query", {"query": "DELETE FROM users"}) == GateOutcome.DENIED


async def test_cancelled_waiter_leaves_nothing_pending():
    gate = _gate()
    task = asyncio.create_task(gate.guard("c1", "run_query", {"query": "DELETE FROM users"}))
    await _until_pending(gate)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert gate.pending() == []


async def test_failing_pending_callback_leaves_nothing_pending():
    def explode(pending):
        raise RuntimeError("renderer gone")

    gate = ConfirmationGate(
        sql_classifier(_registry([])), run_id="r1", on_pending=explode,
    )
    with pytest.raises(RuntimeError):
        await gate.guard("c1", "run_query", {"query": "DELETE FROM users"})

    assert gate.pending() == []
    with pytest.raises(ResourceNotFoundError):
        gate.approve("c1")


# ─── Denial through the agent loop ───────────────────────────────

async def test_denied_invocation_never_executes():
    executed = []
    client = MockAnthropicClient([
        tool_response("run_query", {"query": "DELETE FROM users"}, tool_id="del"),
        final_response({"response_kind": "text", "explanation": "Not deleted.", "success": True}),
    ])
    runner = AgentRunner(client, _registry(executed))

    answer, history = await runner.answer("delete all users")

    assert executed == []
    result = history[2]
    assert result.invocation_id == "del"
    assert result.payload["success"] is False
    assert result.payload["reason"] == USER_DENIED_REASON
    assert answer.explanation == "Not deleted."
