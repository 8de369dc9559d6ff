"""Final Answer Extractor — tests for validation, aliases and fallbacks.

Tests cover:
    - Valid sql/text payloads parse; camelCase aliases and upper-case kinds accepted
    - Missing query on sql answers, missing success, non-bool success are failures
    - Failures never raise: extract returns the text fallback plus the error
    - Non-read-only statements always require confirmation
    - is_executable only for successful sql answers with a query
    - execution_decision asks for approval unless the statement is read-only
"""

import pytest
from pydantic import ValidationError

from sqlagent.core.domain_types import ResponseKind
from sqlagent.core.errors import (
    ANSWER_VALIDATION_FAILED, STEP_BUDGET_EXCEEDED, user_message_for,
)
from sqlagent.core.final_answer import (
    FinalAnswer,
    extract_final_answer,
    fallback_answer,
    final_answer_schema,
    execution_decision,
    is_executable,
)


# ─── extract_final_answer: valid payloads ────────────────────────

def test_sql_answer_parses():
    answer, error = extract_final_answer({
        "response_kind": "sql",
        "query": "SELECT * FROM orders ORDER BY created_at DESC LIMIT 5",
        "explanation": "Five newest orders.",
        "success": True,
    })
    assert error is None
    assert answer.response_kind == ResponseKind.SQL
    assert answer.query.startswith("SELECT")
    assert answer.requires_confirmation is None


def test_camel_case_aliases_and_upper_case_kind():
    answer, error = extract_final_answer({
        "responseType": "TEXT",
        "explanation": "There are two tables.",
        "requiresConfirmation": False,
        "success": True,
        "dbName": "main",
    })
    assert error is None
    assert answer.response_kind == ResponseKind.TEXT
    assert answer.requires_confirmation is False
    assert answer.database == "main"


def test_explanation_defaults_to_empty():
    answer, error = extract_final_answer({"response_kind": "text", "success": True})
    assert error is None
    assert answer.explanation == ""


def test_mutating_sql_forces_confirmation():
    answer, _ = extract_final_answer({
        "response_kind": "sql",
        "query": "DELETE FROM orders WHERE id = 3",
        "requires_confirmation": False,
        "success": True,
    })
    assert answer.requires_confirmation is True


def test_forced_confirmation_with_camel_case_keys_and_direct_construction():
    parsed, _ = extract_final_answer({
        "responseType": "SQL",
        "query": "  update users set email = 'x'",
        "requiresConfirmation": False,
        "success": True,
    })
    built = FinalAnswer(
        response_kind=ResponseKind.SQL, query="DROP TABLE orders", success=True,
    )
    assert parsed.requires_confirmation is True
    assert built.requires_confirmation is True


def test_read_only_sql_keeps_callers_confirmation_flag():
    answer = FinalAnswer(
        response_kind="sql", query="SELECT 1", requires_confirmation=False, success=True,
    )
    assert answer.requires_confirmation is False


def test_forced_answer_stays_frozen():
    answer = FinalAnswer(response_kind="sql", query="DELETE FROM orders", success=True)
    with pytest.raises(ValidationError):
        answer.requires_confirmation = False
    assert answer.requires_confirmation is True


# ─── extract_final_answer: failures ──────────────────────────────

def test_sql_answer_without_query_falls_back():
    answer, error = extract_final_answer({"response_kind": "sql", "success": True})
    assert error is not None
    assert error.code == ANSWER_VALIDATION_FAILED
    assert answer.success is False
    assert answer.response_kind == ResponseKind.TEXT
    assert answer.explanation.startswith(user_message_for(ANSWER_VALIDATION_FAILED))


def test_missing_success_falls_back():
    answer, error = extract_final_answer({"response_kind": "text"})
    assert error is not None
    assert answer.success is False


def test_string_success_is_not_coerced():
    _, error = extract_final_answer({"response_kind": "text", "success": "yes"})
    assert error is not None


def test_unknown_kind_falls_back():
    _, error = extract_final_answer({"response_kind": "chart", "success": True})
    assert error is not None
    assert any("response_kind" in str(d.get("loc")) for d in error.details)


def test_non_dict_payload_never_raises():
    answer, error = extract_final_answer("not an object")
    assert error is not None
    assert answer.success is False


# ─── fallback_answer / is_executable ─────────────────────────────

def test_fallback_answer_shape():
    answer = fallback_answer(STEP_BUDGET_EXCEEDED)
    assert answer.success is False
    assert answer.response_kind == ResponseKind.TEXT
    assert answer.query is None
    assert answer.explanation == user_message_for(STEP_BUDGET_EXCEEDED)


def test_fallback_answer_appends_detail():
    answer = fallback_answer(STEP_BUDGET_EXCEEDED, "5 steps")
    assert answer.explanation.endswith("(5 steps)")


def test_is_executable_only_for_successful_sql():
    sql = FinalAnswer(response_kind="sql", query="SELECT 1", success=True)
    failed = FinalAnswer(response_kind="sql", query="SELECT 1", success=False)
    text = FinalAnswer(response_kind="text", explanation="hi", success=True)
    assert is_executable(sql)
    assert not is_executable(failed)
    assert not is_executable(text)


def test_delete_all_users_refusal_is_not_executable():
    answer, error = extract_final_answer({
        "responseKind": "text",
        "success": False,
        "explanation": "ambiguous/destructive, not generated",
    })
    assert error is None
    assert answer.query is None
    assert not is_executable(answer)


def test_schema_uses_snake_case_keys():
    schema = final_answer_schema()
    assert "response_kind" in schema["properties"]
    assert set(schema["required"]) == {"response_kind", "success"}


def test_execution_decision_follows_statement_and_flag():
    select = FinalAnswer(response_kind="sql", query="SELECT 1", success=True)
    flagged = FinalAnswer(
        response_kind="sql", query="SELECT 1", requires_confirmation=True, success=True,
    )
    delete = FinalAnswer(response_kind="sql", query="DELETE FROM users", success=True)
    assert execution_decision(select).auto_approve
    assert not execution_decision(flagged).auto_approve
    decision = execution_decision(delete)
    assert not decision.auto_approve
    assert "DELETE" in decision.reason
