"""Final Answer Extractor — validates the terminal payload, synthesizes fallbacks.

Invariants:
    - Consumers always receive a well-typed FinalAnswer (never a raw dict or exception)
    - response_kind and success are required; query is required when response_kind=sql
    - Validation failure, budget exhaustion, transport failure and a missing answer all
      share the fallback shape {success: False, response_kind: text, explanation}
    - Fallback explanations derive from the error code, never from a raw trace
    - A sql answer whose statement is not read-only always has requires_confirmation=True
      (forced on the raw input before validation; the model stays frozen)

Design Decisions:
    - Pydantic model with AliasChoices: accepts snake_case and the camelCase keys
      models tend to emit (responseType, requiresConfirmation, dbName)
    - StrictBool for success: "yes"/1 are schema failures, not coerced truthiness
    - extract_final_answer returns (answer, error) instead of raising: the agent loop
      needs both the fallback to emit and the error to report
"""

from typing import Any, NamedTuple

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, StrictBool,
    ValidationError, field_validator, model_validator,
)

from sqlagent.core.domain_types import ResponseKind
from sqlagent.core.errors import AnswerValidationError, ErrorContext, user_message_for
from sqlagent.core.sql_classify import GateDecision, classify_statement, is_read_only

_KIND_KEYS = ("response_kind", "responseKind", "responseType")
_CONFIRM_KEYS = ("requires_confirmation", "requiresConfirmation")


class FinalAnswer(BaseModel):
    """Terminal structured answer of one agent run."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    response_kind: ResponseKind = Field(
        validation_alias=AliasChoices(*_KIND_KEYS),
        description="'sql' for a database operation, 'text' for an informational answer.",
    )
    query: str | None = Field(
        None, description="The generated SQL statement. Required for sql answers.",
    )
    explanation: str = Field(
        "", description="What the statement does, or the direct text answer.",
    )
    requires_confirmation: bool | None = Field(
        None,
        validation_alias=AliasChoices(*_CONFIRM_KEYS),
        description="True when executing the statement modifies data or schema.",
    )
    success: StrictBool = Field(
        description="True if the request was answered successfully.",
    )
    database: str | None = Field(
        None,
        validation_alias=AliasChoices("database", "dbName", "db_name"),
        description="Database the statement targets, when relevant.",
    )

    @field_validator("response_kind", mode="before")
    @classmethod
    def lower_kind(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="before")
    @classmethod
    def force_confirmation_for_writes(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        kind = next((data[k] for k in _KIND_KEYS if k in data), None)
        query = data.get("query")
        if (
            isinstance(kind, str) and kind.strip().lower() == ResponseKind.SQL.value
            and isinstance(query, str) and query.strip()
            and not is_read_only(query)
        ):
            data = {k: v for k, v in data.items() if k not in _CONFIRM_KEYS}
            data["requires_confirmation"] = True
        return data

    @model_validator(mode="after")
    def check_query_for_sql(self) -> "FinalAnswer":
        if self.response_kind == ResponseKind.SQL:
            if not self.query or not self.query.strip():
                raise ValueError("query is required when response_kind is 'sql'")
        return self


class ExtractionResult(NamedTuple):
    answer: FinalAnswer
    error: AnswerValidationError | None


def fallback_answer(code: str, detail: str | None = None) -> FinalAnswer:
    """Synthesize the failure answer for an error code."""
    explanation = user_message_for(code)
    if detail:
        explanation = f"{explanation} ({detail})"
    return FinalAnswer(
        response_kind=ResponseKind.TEXT,
        explanation=explanation,
        success=False,
    )


def _describe_errors(errors: list[dict]) -> str:
    parts = []
    for e in errors:
        loc = ".".join(str(p) for p in e.get("loc", ()))
        parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return "; ".join(parts)


def extract_final_answer(
    payload: Any, context: ErrorContext | None = None,
) -> ExtractionResult:
    """Validate a terminal payload. Never raises."""
    try:
        return ExtractionResult(FinalAnswer.model_validate(payload), None)
    except ValidationError as e:
        details = e.errors(include_url=False, include_input=False)
        error = AnswerValidationError(details, context)
        return ExtractionResult(
            fallback_answer(error.code, _describe_errors(details)), error,
        )


def is_executable(answer: FinalAnswer) -> bool:
    """Only successful sql answers carrying a statement may be executed."""
    return (
        answer.success
        and answer.response_kind == ResponseKind.SQL
        and bool(answer.query and answer.query.strip())
    )


def final_answer_schema() -> dict:
    """JSON schema for the final-answer tool declaration (snake_case keys)."""
    return FinalAnswer.model_json_schema(by_alias=False)


def execution_decision(answer: FinalAnswer) -> GateDecision:
    """Whether executing an answer's statement needs the user's approval.

    The answer's own requires_confirmation wins, as it does for capability calls.
    """
    return classify_statement(answer.query or "", bool(answer.requires_confirmation))
