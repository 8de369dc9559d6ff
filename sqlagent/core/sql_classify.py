"""SQL Classification — leading-keyword policy for the confirmation gate.

Invariants:
    - All functions are PURE: no IO, no async, no DB
    - SELECT, SHOW, DESCRIBE (DESC), EXPLAIN auto-approve; everything else needs approval
    - Leading keyword is trimmed and case-insensitive; leading SQL comments are skipped
    - requires_confirmation=True from the caller always wins over the keyword
    - Empty statements and multi-statement batches always need approval

Design Decisions:
    - Keyword check, not a parser: dialect correctness is out of scope, and a false
      "needs confirmation" only costs the user a click
    - Returns GateDecision (not bool) so the gate can surface the reason to the UI
"""

import re
from dataclasses import dataclass

READ_ONLY_KEYWORDS = frozenset({"SELECT", "SHOW", "DESCRIBE", "DESC", "EXPLAIN"})

_LEADING_COMMENT = re.compile(r"\A\s*(?:--[^\n]*(?:\n|\Z)|/\*.*?\*/)", re.DOTALL)
_KEYWORD = re.compile(r"[A-Za-z]+")


@dataclass(frozen=True)
class GateDecision:
    """Classifier verdict for one invocation."""
    auto_approve: bool
    reason: str = ""


AUTO_APPROVE = GateDecision(auto_approve=True, reason="read-only")


def strip_leading_comments(statement: str) -> str:
    """Drop leading `-- ...` and `/* ... */` comments."""
    text = statement
    while True:
        match = _LEADING_COMMENT.match(text)
        if not match:
            return text.strip()
        text = text[match.end():]


def leading_keyword(statement: str) -> str:
    """First SQL keyword, upper-cased. Empty string when there is none."""
    body = strip_leading_comments(statement or "").lstrip("( \t\r\n")
    match = _KEYWORD.match(body)
    return match.group(0).upper() if match else ""


def is_multi_statement(statement: str) -> bool:
    """True when a `;` is followed by anything other than whitespace."""
    body = strip_leading_comments(statement or "")
    head, sep, tail = body.partition(";")
    return bool(sep) and bool(tail.strip(" \t\r\n;"))


def is_read_only(statement: str) -> bool:
    return (
        leading_keyword(statement) in READ_ONLY_KEYWORDS
        and not is_multi_statement(statement)
    )


def classify_statement(
    statement: str, requires_confirmation: bool = False,
) -> GateDecision:
    """Decide whether a SQL statement may run without asking the user."""
    if requires_confirmation:
        return GateDecision(False, "confirmation requested by caller")
    keyword = leading_keyword(statement)
    if not keyword:
        return GateDecision(False, "empty statement")
    if is_multi_statement(statement):
        return GateDecision(False, "multiple statements")
    if keyword in READ_ONLY_KEYWORDS:
        return AUTO_APPROVE
    return GateDecision(False, f"{keyword} modifies data or schema")
