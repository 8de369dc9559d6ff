"""Runs — SSE streaming of agent runs, display projection, and confirmations.

Invariants:
    - POST /runs streams run_started, then every stream event envelope, then done
    - The display projection is folded from exactly the events the client received
    - Confirmations resolve by (run_id, invocation_id); unknown ids are 404
    - Client disconnect closes the run: pending confirmations are denied and
      in-flight invocations cancelled
    - done carries the updated history so clients can continue the conversation
    - POST /{run_id}/execute runs the final statement only when it is executable, and
      writes only with approve=true (409 otherwise)

Design Decisions:
    - _active_runs as module-level dict: single-process uvicorn, runs are short-lived
      and lost on restart; finished or abandoned runs are pruned beyond
      _MAX_RETAINED_RUNS
    - AgentRunner resolved through a dependency (app.state), overridable in tests
"""

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from sqlagent.core.conversation import history_to_dicts
from sqlagent.core.display_units import (
    DisplayState, add_thinking, add_user_message, reduce, units_as_dicts,
)
from sqlagent.core.domain_types import RunState
from sqlagent.core.errors import ResourceNotFoundError
from sqlagent.infrastructure.database import DatabaseGateway, get_gateway
from sqlagent.schemas.agent import (
    ConfirmationDecision, ConfirmationResult, DisplayResponse, ExecuteRequest,
    ExecutionResponse, PendingConfirmationResponse, RunRequest,
)
from sqlagent.services.agent_runner import AgentRun, AgentRunner
from sqlagent.services.agent_runner_helpers import done_event, run_started_event
from sqlagent.services.execute_final_answer import execute_final_answer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/runs", tags=["runs"])

# SSE headers prevent proxy/browser buffering of streamed events.
_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

_MAX_RETAINED_RUNS = 100


@dataclass
class RunEntry:
    run: AgentRun
    display: DisplayState


_active_runs: dict[str, RunEntry] = {}


def get_agent_runner(request: Request) -> AgentRunner:
    """FastAPI dependency for the process-wide AgentRunner."""
    runner = getattr(request.app.state, "agent_runner", None)
    if runner is None:
        raise RuntimeError("Agent runner not initialized")
    return runner


def register_run(run: AgentRun) -> RunEntry:
    """Track a run so its display and confirmations are reachable by id."""
    _prune_inactive()
    display = add_thinking(add_user_message(DisplayState(), run.prompt))
    entry = RunEntry(run=run, display=display)
    _active_runs[run.run_id] = entry
    return entry


def get_run_or_404(run_id: str) -> RunEntry:
    entry = _active_runs.get(run_id)
    if entry is None:
        raise ResourceNotFoundError("Run", run_id)
    return entry


def tracked_run_count() -> int:
    return len(_active_runs)


def close_all_runs() -> int:
    """Deny every pending confirmation of every tracked run (shutdown)."""
    return sum(entry.run.close() for entry in _active_runs.values())


def _prune_inactive() -> None:
    inactive = [
        rid for rid, e in _active_runs.items() if e.run.finished or e.run.closed
    ]
    for rid in inactive[: max(0, len(_active_runs) - _MAX_RETAINED_RUNS + 1)]:
        del _active_runs[rid]


def _sse_line(event: dict) -> str:
    """Format event as SSE data line."""
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"


@router.post("")
async def start_run(
    body: RunRequest, runner: AgentRunner = Depends(get_agent_runner),
):
    """Start a run and stream its events."""
    run = runner.start(body.prompt, body.parsed_history())
    entry = register_run(run)

    async def event_generator():
        try:
            yield _sse_line(run_started_event(run.run_id))
            async with aclosing(run.events()) as events:
                async for event in events:
                    entry.display = reduce(entry.display, event)
                    yield _sse_line(event.to_sse_event())
            yield _sse_line(done_event(
                run.run_id,
                error=run.state == RunState.TERMINAL_ERROR,
                history=history_to_dicts(run.history),
            ))
        except asyncio.CancelledError:
            logger.info(
                "Client disconnected from run stream",
                extra={"run_id": run.run_id},
            )
            run.close()
            return

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/{run_id}/display", response_model=DisplayResponse)
async def get_display(run_id: str):
    entry = get_run_or_404(run_id)
    final = entry.display.final
    return DisplayResponse(
        run_id=run_id,
        state=entry.run.state.value,
        units=units_as_dicts(entry.display),
        final=final.model_dump(mode="json") if final is not None else None,
        invocations={k: v.value for k, v in entry.run.invocations.items()},
    )


@router.get(
    "/{run_id}/confirmations", response_model=list[PendingConfirmationResponse],
)
async def list_confirmations(run_id: str):
    entry = get_run_or_404(run_id)
    return [p.to_dict() for p in entry.run.gate.pending()]


@router.post(
    "/{run_id}/confirmations/{invocation_id}", response_model=ConfirmationResult,
)
async def resolve_confirmation(
    run_id: str, invocation_id: str, body: ConfirmationDecision,
):
    """Approve or deny one pending invocation. Resolved invocations are gone (404)."""
    entry = get_run_or_404(run_id)
    pending = entry.run.gate.get(invocation_id)
    applied = pending.approve() if body.approve else pending.deny()
    logger.info(
        "Confirmation decision received",
        extra={
            "run_id": run_id, "invocation_id": invocation_id,
            "outcome": pending.status.value,
        },
    )
    return ConfirmationResult(
        invocation_id=invocation_id, status=pending.status.value, applied=applied,
    )


@router.post("/{run_id}/execute", response_model=ExecutionResponse)
async def execute_run_answer(
    run_id: str,
    body: ExecuteRequest,
    gateway: DatabaseGateway = Depends(get_gateway),
):
    """Execute the run's final statement. Writes require approve=true."""
    entry = get_run_or_404(run_id)
    outcome = await execute_final_answer(
        entry.run.final, gateway, approved=body.approve, run_id=run_id,
    )
    return ExecutionResponse(run_id=run_id, **outcome)
