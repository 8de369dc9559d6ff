"""Error Hierarchy — typed, categorized exceptions for every agent failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Invocation-level errors fail one capability call; run-level errors abort the run
      and always end in a synthesized final answer
    - The API envelope is built in api/error_handlers.py from code, user_message and
      context; run-level errors reach the stream as ErrorEvent, never as exceptions
    - User-visible text comes from USER_MESSAGES keyed by code, never from a raw trace

Design Decisions:
    - Single hierarchy with SqlAgentError base: FastAPI global handler catches all
    - ErrorContext as dataclass: rich observability without coupling to logging framework
    - to_result() gives the capability-result payload shape so executors, registry and
      gate failures all reach the model as {"success": False, ...}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    PROTOCOL = "protocol"
    RESOURCE_NOT_FOUND = "resource_not_found"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    USER_ACTION = "user_action"
    INTERNAL = "internal"
    CONFLICT = "conflict"


# ─── Error codes ─────────────────────────────────────────────────

UNKNOWN_CAPABILITY = "UNKNOWN_CAPABILITY"
INPUT_VALIDATION_FAILED = "INPUT_VALIDATION_FAILED"
CORRELATION_VIOLATION = "CORRELATION_VIOLATION"
TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
ANSWER_VALIDATION_FAILED = "ANSWER_VALIDATION_FAILED"
USER_DENIED = "USER_DENIED"
STEP_BUDGET_EXCEEDED = "STEP_BUDGET_EXCEEDED"
DUPLICATE_CAPABILITY = "DUPLICATE_CAPABILITY"
CAPABILITY_EXECUTION_ERROR = "CAPABILITY_EXECUTION_ERROR"
MISSING_FINAL_ANSWER = "MISSING_FINAL_ANSWER"
RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
ANSWER_NOT_EXECUTABLE = "ANSWER_NOT_EXECUTABLE"
CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
DATABASE_ERROR = "DATABASE_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

USER_DENIED_REASON = "User denied execution"

USER_MESSAGES: dict[str, str] = {
    UNKNOWN_CAPABILITY: "The assistant requested a capability that does not exist.",
    INPUT_VALIDATION_FAILED: "The assistant sent malformed input to a capability.",
    CORRELATION_VIOLATION: "Received a result for a call that is not in progress.",
    TRANSPORT_FAILURE: "The language model could not be reached. Please try again.",
    ANSWER_VALIDATION_FAILED: (
        "The assistant did not produce a well-formed final answer."
    ),
    USER_DENIED: USER_DENIED_REASON,
    STEP_BUDGET_EXCEEDED: (
        "The assistant could not reach an answer within the allowed number of steps."
    ),
    CAPABILITY_EXECUTION_ERROR: "A capability failed while executing.",
    MISSING_FINAL_ANSWER: "The assistant finished without providing a final answer.",
    RESOURCE_NOT_FOUND: "The requested run or invocation does not exist.",
    ANSWER_NOT_EXECUTABLE: "This answer has no statement that can be executed.",
    CONFIRMATION_REQUIRED: (
        "This statement modifies data and must be approved before it runs."
    ),
    DATABASE_ERROR: "The database rejected the operation.",
    INTERNAL_ERROR: "An unexpected error occurred.",
}


def user_message_for(code: str) -> str:
    """User-facing text for an error code. Unknown codes map to INTERNAL_ERROR."""
    return USER_MESSAGES.get(code, USER_MESSAGES[INTERNAL_ERROR])


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str | None = None
    invocation_id: str | None = None
    capability_name: str | None = None
    step_number: int | None = None
    debug_info: dict[str, Any] | None = None


class SqlAgentError(Exception):
    """Base exception for all sqlagent errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    @property
    def user_message(self) -> str:
        return user_message_for(self.code)

    def to_result(self) -> dict:
        """Convert to a failed capability-result payload."""
        return {
            "success": False,
            "error_code": self.code,
            "message": self.message,
        }


# ─── Invocation-level errors (fail one capability call) ─────────

class UnknownCapabilityError(SqlAgentError):
    """Capability name is not registered."""
    def __init__(self, name: str, context: ErrorContext | None = None):
        super().__init__(
            f"Capability '{name}' does not exist.",
            UNKNOWN_CAPABILITY, ErrorCategory.VALIDATION,
            ErrorSeverity.WARNING, context, 404,
        )
        self.name = name


class InputValidationError(SqlAgentError):
    """Capability input failed its schema."""
    def __init__(
        self, name: str, details: list[dict] | None = None,
        context: ErrorContext | None = None,
    ):
        fields = ", ".join(
            ".".join(str(p) for p in d.get("loc", ())) or "<root>"
            for d in (details or [])
        )
        super().__init__(
            f"Invalid input for '{name}'" + (f": {fields}" if fields else ""),
            INPUT_VALIDATION_FAILED, ErrorCategory.VALIDATION,
            ErrorSeverity.WARNING, context, 400,
        )
        self.name = name
        self.details = details or []

    def to_result(self) -> dict:
        result = super().to_result()
        result["details"] = [
            {"field": ".".join(str(p) for p in d.get("loc", ())), "message": d.get("msg")}
            for d in self.details
        ]
        return result


class UserDeniedError(SqlAgentError):
    """User rejected a gated invocation. A normal outcome, not a run failure."""
    def __init__(self, context: ErrorContext | None = None):
        super().__init__(
            USER_DENIED_REASON, USER_DENIED, ErrorCategory.USER_ACTION,
            ErrorSeverity.INFO, context, 409,
        )

    def to_result(self) -> dict:
        result = super().to_result()
        result["reason"] = USER_DENIED_REASON
        return result


class CorrelationViolationError(SqlAgentError):
    """Result or call that does not match the open-invocation map."""
    def __init__(self, invocation_id: str, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Invocation '{invocation_id}': {reason}",
            CORRELATION_VIOLATION, ErrorCategory.PROTOCOL,
            ErrorSeverity.ERROR, context, 500,
        )
        self.invocation_id = invocation_id


class DuplicateCapabilityError(SqlAgentError):
    """A capability with the same name is already registered."""
    def __init__(self, name: str):
        super().__init__(
            f"Capability '{name}' is already registered",
            DUPLICATE_CAPABILITY, ErrorCategory.CONFLICT,
            ErrorSeverity.CRITICAL, None, 409,
        )
        self.name = name


class ResourceNotFoundError(SqlAgentError):
    """Requested resource does not exist."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            RESOURCE_NOT_FOUND, ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context, 404,
        )


class DatabaseError(SqlAgentError):
    """Database operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Database {operation} failed: {message}",
            DATABASE_ERROR, ErrorCategory.DATABASE,
            ErrorSeverity.ERROR, context, 503,
        )
        self.operation = operation


class AnswerNotExecutableError(SqlAgentError):
    """Execution requested for a run whose final answer carries no statement."""
    def __init__(self, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Final answer cannot be executed: {reason}",
            ANSWER_NOT_EXECUTABLE, ErrorCategory.CONFLICT,
            ErrorSeverity.WARNING, context, 409,
        )


class ConfirmationRequiredError(SqlAgentError):
    """Execution of a modifying statement requested without approval."""
    def __init__(self, reason: str, context: ErrorContext | None = None):
        super().__init__(
            f"Approval required: {reason}",
            CONFIRMATION_REQUIRED, ErrorCategory.USER_ACTION,
            ErrorSeverity.INFO, context, 409,
        )
        self.reason = reason


# ─── Run-level errors (abort the run, synthesize a final answer) ─

class TransportFailureError(SqlAgentError):
    """Model backend unreachable or errored."""
    def __init__(
        self,
        message: str,
        api_error_type: str,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Model transport error ({api_error_type}): {message}",
            TRANSPORT_FAILURE, ErrorCategory.EXTERNAL_API,
            ErrorSeverity.CRITICAL, context, 503,
        )
        self.api_error_type = api_error_type


class AnswerValidationError(SqlAgentError):
    """Terminal payload failed the final-answer schema."""
    def __init__(self, details: list[dict] | None = None, context: ErrorContext | None = None):
        super().__init__(
            "Final answer failed validation",
            ANSWER_VALIDATION_FAILED, ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, 502,
        )
        self.details = details or []


class StepBudgetExceededError(SqlAgentError):
    """Agent exceeded its step budget without a terminal answer."""
    def __init__(self, max_steps: int, context: ErrorContext | None = None):
        super().__init__(
            f"Agent exceeded maximum step budget ({max_steps})",
            STEP_BUDGET_EXCEEDED, ErrorCategory.INTERNAL,
            ErrorSeverity.CRITICAL, context, 500,
        )
        self.max_steps = max_steps
