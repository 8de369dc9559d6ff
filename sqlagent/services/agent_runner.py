"""Agent Runner — async multi-step loop that turns a prompt into a final answer.

Invariants:
    - At most max_steps model rounds; every exit path yields exactly one FinalEvent
      (model answer, or a synthesized fallback with success=False)
    - Capability calls of one step are dispatched only after the step is fully received,
      run concurrently, and all complete before the next round is sent
    - Each result is emitted as it completes; history receives results in request order
    - Tool errors never crash the loop: every invocation ends in a CapabilityResult
    - A provide_final_answer call terminates the run; other calls in that step are skipped
    - Closing or cancelling the event iterator denies pending confirmations and cancels
      in-flight invocations
    - Transport failures are never retried
    - invocations tracks each call requested -> executing -> finished | error; a
      terminal state is never left, and denied or invalid calls go straight to error

Design Decisions:
    - Anthropic streaming API for real-time text delivery; get_final_message() for the
      complete step (avoids manual block reconstruction)
    - AgentRun object per run: its gate, history and state are run-scoped, so concurrent
      runs share nothing mutable
    - Pure helpers live in agent_runner_helpers.py; the loop reads as control flow only
    - answer() is a drain wrapper over events(): one streaming protocol, two surfaces
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

from sqlagent.core.conversation import (
    AssistantMessage, CapabilityResultMessage, History, UserMessage,
)
from sqlagent.core.domain_types import GateOutcome, InvocationState, RunState
from sqlagent.core.errors import (
    CAPABILITY_EXECUTION_ERROR, CORRELATION_VIOLATION, INTERNAL_ERROR,
    MISSING_FINAL_ANSWER, CorrelationViolationError, ErrorContext, SqlAgentError,
    StepBudgetExceededError, TransportFailureError, UserDeniedError, user_message_for,
)
from sqlagent.core.final_answer import FinalAnswer, extract_final_answer, fallback_answer
from sqlagent.core.stream_events import (
    CapabilityCall, CapabilityResult, ErrorEvent, FinalEvent, StreamEvent,
    calls_started, final_or_fallback, result_finished,
)
from sqlagent.infrastructure.anthropic_client import ResilientAnthropicClient
from sqlagent.services.agent_runner_helpers import (
    close_unanswered, final_answer_text, process_stream_event, response_text,
    split_final_call, to_anthropic_messages, tool_use_blocks,
    with_message_cache, with_system_cache, with_tools_cache,
)
from sqlagent.services.capability_registry import CapabilityRegistry
from sqlagent.services.confirmation_gate import (
    ConfirmationGate, PendingConfirmation, sql_classifier,
)
from sqlagent.services.define_sql_tools import FINAL_ANSWER_TOOL, FINAL_ANSWER_TOOL_NAME
from sqlagent.services.system_prompt import build_system_prompt

logger = logging.getLogger(__name__)

OnPending = Callable[[PendingConfirmation], None]

_TERMINAL_INVOCATION = frozenset({InvocationState.FINISHED, InvocationState.ERROR})


class AgentRunner:
    """Builds runs against one model transport and one capability registry."""

    def __init__(
        self,
        anthropic_client: ResilientAnthropicClient,
        registry: CapabilityRegistry,
        *,
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 4096,
        max_steps: int = 5,
        result_preview_chars: int = 1000,
        system_prompt: str | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.client = anthropic_client
        self.registry = registry
        self.model = model
        self.max_tokens = max_tokens
        self.max_steps = max_steps
        self.result_preview_chars = result_preview_chars
        self.system_prompt = system_prompt or build_system_prompt()
        self.classify = sql_classifier(registry)

    def tools(self) -> list[dict]:
        return self.registry.declarations() + [FINAL_ANSWER_TOOL]

    def start(
        self, prompt: str, history: History = (),
        run_id: str | None = None, on_pending: OnPending | None = None,
    ) -> "AgentRun":
        """Create a run. Nothing is sent until its events are iterated."""
        return AgentRun(self, prompt, history, run_id, on_pending)

    async def answer(
        self, prompt: str, history: History = (),
        on_pending: OnPending | None = None,
    ) -> tuple[FinalAnswer, History]:
        """Drain a run and return its final answer with the updated history.

        Without on_pending there is nobody to ask, so gated invocations are denied.
        """
        run = self.start(
            prompt, history, on_pending=on_pending or (lambda p: p.deny()),
        )
        events = [event async for event in run.events()]
        return final_or_fallback(events), run.history


class AgentRun:
    """One prompt's journey through the loop. Single-use."""

    def __init__(
        self, runner: AgentRunner, prompt: str, history: History,
        run_id: str | None = None, on_pending: OnPending | None = None,
    ):
        self.runner = runner
        self.run_id = run_id or str(uuid.uuid4())
        self.prompt = prompt
        self.state = RunState.IDLE
        self.history: History = close_unanswered(tuple(history)) + (UserMessage(prompt),)
        self.gate = ConfirmationGate(runner.classify, self.run_id, on_pending)
        self.final: FinalAnswer | None = None
        self.invocations: dict[str, InvocationState] = {}
        self._seen_ids: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._last_response = None
        self._consumed = False
        self._closed = False

    @property
    def finished(self) -> bool:
        return self.state in (RunState.TERMINAL_FINAL, RunState.TERMINAL_ERROR)

    @property
    def closed(self) -> bool:
        """True once the run was closed, by finishing or by being abandoned."""
        return self._closed

    def events(self) -> AsyncIterator[StreamEvent]:
        """The run's ordered event stream. Can be iterated only once."""
        if self._consumed:
            raise RuntimeError(f"Run {self.run_id} events were already consumed")
        self._consumed = True
        return self._run()

    def close(self) -> int:
        """Abandon the run: deny pending confirmations, cancel in-flight invocations."""
        self._closed = True
        released = self.gate.release_all()
        for task in self._tasks:
            task.cancel()
        return released

    async def _run(self) -> AsyncIterator[StreamEvent]:
        ctx = ErrorContext(run_id=self.run_id)
        logger.info("Run started", extra={"run_id": self.run_id})
        try:
            async with aclosing(self._iteration_loop(ctx)) as loop:
                async for event in loop:
                    yield event
        except asyncio.CancelledError:
            logger.info("Run cancelled", extra={"run_id": self.run_id})
            raise
        except Exception as e:
            logger.error(
                "Unexpected error in agent run: %s", e,
                extra={"run_id": self.run_id, "error_code": INTERNAL_ERROR},
                exc_info=True,
            )
            yield ErrorEvent(INTERNAL_ERROR, user_message_for(INTERNAL_ERROR))
            yield self._finish(fallback_answer(INTERNAL_ERROR), RunState.TERMINAL_ERROR)
        finally:
            self.close()

    async def _iteration_loop(self, ctx: ErrorContext) -> AsyncIterator[StreamEvent]:
        runner = self.runner
        for step in range(1, runner.max_steps + 1):
            ctx.step_number = step
            self._last_response = None
            async with aclosing(self._stream_api_call(ctx)) as round_events:
                async for event in round_events:
                    yield event
            if self._last_response is None:
                return  # error + fallback final already yielded
            response = self._last_response
            self.state = RunState.STEP_RECEIVED
            ResilientAnthropicClient.log_usage(response, self.run_id, step)

            text = response_text(response)
            final_block, call_blocks = split_final_call(
                tool_use_blocks(response), FINAL_ANSWER_TOOL_NAME,
            )

            if final_block is not None:
                if call_blocks:
                    logger.info(
                        "Final answer preempts %d capability call(s)", len(call_blocks),
                        extra={"run_id": self.run_id, "step": step},
                    )
                async for event in self._finish_with_answer(final_block.input, text, ctx):
                    yield event
                return

            if not call_blocks:
                if text:
                    self.history += (AssistantMessage(text=text),)
                logger.warning(
                    "Step ended without capability calls or final answer",
                    extra={"run_id": self.run_id, "step": step,
                           "error_code": MISSING_FINAL_ANSWER},
                )
                yield self._finish(
                    fallback_answer(MISSING_FINAL_ANSWER), RunState.TERMINAL_ERROR,
                )
                return

            calls = []
            for block in call_blocks:
                call = self._to_call(block)
                if call is None:
                    yield ErrorEvent(
                        CORRELATION_VIOLATION, user_message_for(CORRELATION_VIOLATION),
                    )
                    continue
                calls.append(call)

            self.history += (AssistantMessage(text=text, capability_calls=tuple(calls)),)
            if not calls:
                continue

            self.state = RunState.CAPABILITY_DISPATCH
            yield calls_started(calls)
            results: dict[str, CapabilityResult] = {}
            tasks = [
                asyncio.create_task(self._execute_safe(call, ctx)) for call in calls
            ]
            self._tasks.update(tasks)
            try:
                for next_done in asyncio.as_completed(tasks):
                    result = await next_done
                    results[result.invocation_id] = result
                    yield result_finished(result)
            finally:
                for task in tasks:
                    task.cancel()
                self._tasks.difference_update(tasks)

            self.history += tuple(
                CapabilityResultMessage(
                    invocation_id=c.invocation_id,
                    capability_name=c.capability_name,
                    payload=results[c.invocation_id].payload,
                )
                for c in calls
            )

        error = StepBudgetExceededError(runner.max_steps, ctx)
        logger.warning(
            error.message, extra={"run_id": self.run_id, "error_code": error.code},
        )
        yield self._finish(fallback_answer(error.code), RunState.TERMINAL_ERROR)

    async def _stream_api_call(self, ctx: ErrorContext) -> AsyncIterator[StreamEvent]:
        """Yield text deltas for one round; sets self._last_response on success."""
        runner = self.runner
        self.state = RunState.SENDING
        try:
            text_lstrip = True
            async with runner.client.stream_message(
                model=runner.model, max_tokens=runner.max_tokens,
                system=with_system_cache(runner.system_prompt),
                tools=with_tools_cache(runner.tools()),
                messages=with_message_cache(
                    to_anthropic_messages(self.history, runner.result_preview_chars),
                ),
                context=ctx,
            ) as stream:
                self.state = RunState.AWAITING_MODEL
                async for raw in stream:
                    event, text_lstrip = process_stream_event(raw, text_lstrip)
                    if event:
                        yield event
                self._last_response = await stream.get_final_message()

        except TransportFailureError as e:
            logger.error(
                "Model transport error: %s", e.message,
                extra={"run_id": self.run_id, "step": ctx.step_number,
                       "error_code": e.code},
            )
            yield ErrorEvent(e.code, e.user_message)
            yield self._finish(fallback_answer(e.code), RunState.TERMINAL_ERROR)

    async def _finish_with_answer(
        self, payload, text: str, ctx: ErrorContext,
    ) -> AsyncIterator[StreamEvent]:
        answer, error = extract_final_answer(payload, ctx)
        if error is not None:
            logger.warning(
                "Final answer failed validation: %s", error.details,
                extra={"run_id": self.run_id, "error_code": error.code},
            )
            if text:
                self.history += (AssistantMessage(text=text),)
            yield ErrorEvent(error.code, error.user_message)
            yield self._finish(answer, RunState.TERMINAL_ERROR)
            return
        recorded = "\n\n".join(t for t in (text, final_answer_text(answer)) if t)
        self.history += (AssistantMessage(text=recorded),)
        yield self._finish(answer, RunState.TERMINAL_FINAL)

    def _finish(self, answer: FinalAnswer, state: RunState) -> FinalEvent:
        self.final = answer
        self.state = state
        logger.info(
            "Run finished",
            extra={"run_id": self.run_id, "outcome": state.value},
        )
        return FinalEvent(answer)

    def _mark(self, invocation_id: str, state: InvocationState) -> None:
        if self.invocations.get(invocation_id) in _TERMINAL_INVOCATION:
            return
        self.invocations[invocation_id] = state

    def _to_call(self, block) -> CapabilityCall | None:
        """Build the emitted call; None when the invocation id was already used."""
        if block.id in self._seen_ids:
            error = CorrelationViolationError(block.id, "invocation id reused in run")
            logger.error(
                error.message,
                extra={"run_id": self.run_id, "invocation_id": block.id,
                       "error_code": error.code},
            )
            return None
        self._seen_ids.add(block.id)
        self._mark(block.id, InvocationState.REQUESTED)
        input_data = dict(block.input or {})
        decision = self.gate.classify(block.name, input_data)
        return CapabilityCall(
            invocation_id=block.id,
            capability_name=block.name,
            input=input_data,
            sql=self.runner.registry.sql_of(block.name, input_data),
            requires_confirmation=not decision.auto_approve,
        )

    async def _execute_safe(
        self, call: CapabilityCall, ctx: ErrorContext,
    ) -> CapabilityResult:
        """Validate, gate and execute one call. Never raises (except cancellation)."""
        registry = self.runner.registry
        ictx = ErrorContext(
            run_id=self.run_id, invocation_id=call.invocation_id,
            capability_name=call.capability_name, step_number=ctx.step_number,
        )
        log_extra = {
            "run_id": self.run_id, "invocation_id": call.invocation_id,
            "capability": call.capability_name,
        }
        try:
            registry.validate(call.capability_name, call.input, ictx)
            outcome = await self.gate.guard(
                call.invocation_id, call.capability_name, call.input,
            )
            if outcome == GateOutcome.DENIED:
                payload = UserDeniedError(ictx).to_result()
            else:
                self._mark(call.invocation_id, InvocationState.EXECUTING)
                payload = await registry.invoke(call.capability_name, call.input, ictx)
                if not isinstance(payload, dict):
                    payload = {"success": True, "result": payload}
        except SqlAgentError as e:
            logger.warning(
                "Capability error: %s", e.message,
                extra={**log_extra, "error_code": e.code},
            )
            payload = e.to_result()
        except asyncio.CancelledError:
            self._mark(call.invocation_id, InvocationState.ERROR)
            raise
        except Exception as e:
            logger.error(
                "Unexpected error in capability '%s': %s", call.capability_name, e,
                extra={**log_extra, "error_code": CAPABILITY_EXECUTION_ERROR},
                exc_info=True,
            )
            payload = {
                "success": False,
                "error_code": CAPABILITY_EXECUTION_ERROR,
                "message": f"Internal error executing {call.capability_name}",
            }
        self._mark(
            call.invocation_id,
            InvocationState.ERROR if payload.get("success") is False
            else InvocationState.FINISHED,
        )
        return CapabilityResult(call.invocation_id, call.capability_name, payload)
