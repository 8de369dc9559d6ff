"""Execute Final Answer — run a vetted final answer's statement against the database.

Invariants:
    - Only executable answers run (success=True, response_kind=sql, non-empty query);
      text answers, failed answers and fallbacks are refused
    - A statement that is not read-only, or that the answer flagged with
      requires_confirmation, runs only with approved=True
    - Execution goes through DatabaseGateway.run_sql: one transaction per call
    - Database failures propagate as DatabaseError carrying the run id

Design Decisions:
    - Reuses classify_statement through execution_decision: the same policy decides
      capability calls during the run and the final statement after it
    - Approval is a request flag, not a pending gate entry: the run has already
      finished, so there is nothing to suspend
"""

import logging

from sqlagent.core.errors import (
    AnswerNotExecutableError, ConfirmationRequiredError, DatabaseError, ErrorContext,
)
from sqlagent.core.final_answer import FinalAnswer, execution_decision, is_executable
from sqlagent.infrastructure.database import DatabaseGateway

logger = logging.getLogger(__name__)


async def execute_final_answer(
    answer: FinalAnswer | None,
    gateway: DatabaseGateway,
    *,
    approved: bool = False,
    run_id: str | None = None,
) -> dict:
    """Execute the answer's statement. Returns {query, approved, result}."""
    ctx = ErrorContext(run_id=run_id)
    if answer is None:
        raise AnswerNotExecutableError("the run has no final answer yet", ctx)
    if not is_executable(answer):
        reason = (
            "the answer reports failure" if not answer.success
            else "the answer has no SQL statement"
        )
        raise AnswerNotExecutableError(reason, ctx)

    decision = execution_decision(answer)
    if not decision.auto_approve and not approved:
        raise ConfirmationRequiredError(decision.reason, ctx)

    try:
        result = await gateway.run_sql(answer.query)
    except DatabaseError as e:
        e.context.run_id = run_id
        raise
    logger.info(
        "Final answer executed",
        extra={
            "run_id": run_id,
            "outcome": "auto_approved" if decision.auto_approve else "approved",
        },
    )
    return {
        "query": answer.query,
        "approved": not decision.auto_approve,
        "result": result,
    }
