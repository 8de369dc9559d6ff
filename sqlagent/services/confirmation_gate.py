"""Confirmation Gate — suspends mutating invocations until the user decides.

Invariants:
    - classify() decides; guard() enforces. Auto-approved calls never suspend
    - A suspended invocation is a PendingConfirmation: PENDING -> APPROVED | DENIED
    - approve()/deny() are terminal; the first call wins, repeats are no-ops
    - Denial is a normal outcome (GateOutcome.DENIED), never an unhandled exception;
      the executor is not called
    - One pending confirmation blocks only its own invocation
    - release_all() denies everything outstanding and closes the gate (run abandoned)

Design Decisions:
    - One gate per run: confirmations are scoped to the run that requested them, and
      closing a run cannot leave a stale dialog able to execute against it
    - asyncio.Future per pending invocation: the UI resolves it from any task via
      approve()/deny(), decoupled from how the prompt is presented
    - The wait is unbounded by design; it is the only human-paced suspension point
"""

import asyncio
import logging
from collections.abc import Callable

from sqlagent.core.domain_types import ConfirmationStatus, GateOutcome
from sqlagent.core.errors import CorrelationViolationError, ResourceNotFoundError
from sqlagent.core.sql_classify import AUTO_APPROVE, GateDecision, classify_statement
from sqlagent.services.capability_registry import CapabilityRegistry

logger = logging.getLogger(__name__)

Classifier = Callable[[str, dict], GateDecision]


def auto_approve_all(name: str, input_data: dict) -> GateDecision:
    return AUTO_APPROVE


def sql_classifier(registry: CapabilityRegistry) -> Classifier:
    """Classifier that inspects the statement of SQL-bearing capabilities."""

    def classify(name: str, input_data: dict) -> GateDecision:
        sql = registry.sql_of(name, input_data)
        if sql is None:
            return AUTO_APPROVE
        return classify_statement(
            sql, bool((input_data or {}).get("requires_confirmation")),
        )

    return classify


class PendingConfirmation:
    """An invocation waiting for approve() or deny()."""

    def __init__(
        self, invocation_id: str, capability_name: str, input_data: dict, reason: str,
    ):
        self.invocation_id = invocation_id
        self.capability_name = capability_name
        self.input = input_data
        self.reason = reason
        self.status = ConfirmationStatus.PENDING
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self.status != ConfirmationStatus.PENDING

    def approve(self) -> bool:
        """Approve execution. Returns False if already resolved."""
        return self._resolve(ConfirmationStatus.APPROVED)

    def deny(self) -> bool:
        """Deny execution. Returns False if already resolved."""
        return self._resolve(ConfirmationStatus.DENIED)

    def _resolve(self, status: ConfirmationStatus) -> bool:
        if self.resolved:
            return False
        self.status = status
        if not self._future.done():
            self._future.set_result(status)
        return True

    async def wait(self) -> ConfirmationStatus:
        return await self._future

    def to_dict(self) -> dict:
        return {
            "invocation_id": self.invocation_id,
            "capability_name": self.capability_name,
            "input": self.input,
            "reason": self.reason,
            "status": self.status.value,
        }


class ConfirmationGate:
    """Per-run gate in front of capability execution."""

    def __init__(
        self,
        classify: Classifier = auto_approve_all,
        run_id: str | None = None,
        on_pending: Callable[[PendingConfirmation], None] | None = None,
    ):
        self._classify = classify
        self._run_id = run_id
        self._on_pending = on_pending
        self._pending: dict[str, PendingConfirmation] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def classify(self, name: str, input_data: dict) -> GateDecision:
        return self._classify(name, input_data)

    async def guard(
        self, invocation_id: str, name: str, input_data: dict,
        classify: Classifier | None = None,
    ) -> GateOutcome:
        """Let an invocation through, suspending it if approval is required."""
        decision = (classify or self._classify)(name, input_data)
        if decision.auto_approve:
            return GateOutcome.AUTO_APPROVED
        if self._closed:
            return GateOutcome.DENIED
        if invocation_id in self._pending:
            raise CorrelationViolationError(invocation_id, "confirmation already pending")

        pending = PendingConfirmation(invocation_id, name, input_data, decision.reason)
        self._pending[invocation_id] = pending
        logger.info(
            "Awaiting user confirmation: %s", decision.reason,
            extra={
                "run_id": self._run_id, "invocation_id": invocation_id,
                "capability": name,
            },
        )
        try:
            if self._on_pending is not None:
                self._on_pending(pending)
            status = await pending.wait()
        finally:
            pending.deny()
            self._pending.pop(invocation_id, None)

        outcome = (
            GateOutcome.APPROVED if status == ConfirmationStatus.APPROVED
            else GateOutcome.DENIED
        )
        logger.info(
            "Confirmation resolved",
            extra={
                "run_id": self._run_id, "invocation_id": invocation_id,
                "capability": name, "outcome": outcome.value,
            },
        )
        return outcome

    def get(self, invocation_id: str) -> PendingConfirmation:
        pending = self._pending.get(invocation_id)
        if pending is None:
            raise ResourceNotFoundError("Confirmation", invocation_id)
        return pending

    def approve(self, invocation_id: str) -> bool:
        return self.get(invocation_id).approve()

    def deny(self, invocation_id: str) -> bool:
        return self.get(invocation_id).deny()

    def pending(self) -> list[PendingConfirmation]:
        return [p for p in self._pending.values() if not p.resolved]

    def release_all(self) -> int:
        """Deny every outstanding confirmation and refuse new ones."""
        self._closed = True
        released = sum(1 for p in list(self._pending.values()) if p.deny())
        if released:
            logger.info(
                "Released %d pending confirmation(s)", released,
                extra={"run_id": self._run_id},
            )
        return released
