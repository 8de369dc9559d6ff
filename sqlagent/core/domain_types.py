"""Domain Types — rich types that replace bare primitives across the codebase.

Invariants:
    - All valid states encoded as Enums — no raw string matching

Design Decisions:
    - str Enums: serialize to JSON without custom encoders (SSE payloads are JSON)
"""

from enum import Enum


# ─── Enums ───────────────────────────────────────────────────────

class ResponseKind(str, Enum):
    """Shape of a final answer."""
    SQL = "sql"
    TEXT = "text"


class InvocationState(str, Enum):
    """Capability invocation lifecycle. FINISHED and ERROR are terminal."""
    REQUESTED = "requested"
    EXECUTING = "executing"
    FINISHED = "finished"
    ERROR = "error"


class RunState(str, Enum):
    """Agent loop driver states for one run."""
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_MODEL = "awaiting_model"
    STEP_RECEIVED = "step_received"
    CAPABILITY_DISPATCH = "capability_dispatch"
    TERMINAL_FINAL = "terminal_final"
    TERMINAL_ERROR = "terminal_error"


class ConfirmationStatus(str, Enum):
    """Pending -> Approved | Denied. Both resolutions are terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class GateOutcome(str, Enum):
    """How the confirmation gate let an invocation through (or not)."""
    AUTO_APPROVED = "auto_approved"
    APPROVED = "approved"
    DENIED = "denied"


class UnitKind(str, Enum):
    """Display unit kinds rendered by the UI."""
    USER = "user"
    TEXT = "text"
    CAPABILITY_CALL = "capability-call"
    ERROR = "error"
    SQL_PREVIEW = "sql-preview"
    THINKING = "thinking"


class UnitStatus(str, Enum):
    """Lifecycle of a capability-call display unit."""
    STARTED = "started"
    FINISHED = "finished"
    ERROR = "error"
