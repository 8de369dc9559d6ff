"""Agent System Prompt — behavioral contract for the SQL assistant.

Invariants:
    - build_system_prompt() always ends with the final-answer contract: every run must
      terminate through provide_final_answer
    - Schema metadata, when supplied, is embedded inside <database_metadata> tags;
      absence is stated explicitly so the model knows to explore with tools
    - prompt_for_gateway never fails startup: an unreachable database yields the
      no-metadata prompt

Design Decisions:
    - XML-tagged sections for reliable parsing by Claude
    - Write safety is stated in the prompt AND enforced by the confirmation gate; the
      prompt is guidance only, never the control
"""

import json
import logging

from sqlagent.core.errors import DatabaseError
from sqlagent.infrastructure.database import DatabaseGateway
from sqlagent.services.define_sql_tools import FINAL_ANSWER_TOOL_NAME

logger = logging.getLogger(__name__)

_IDENTITY = (
    "You are an expert database assistant. You help users interact with their "
    "database through natural language: you explore the schema with the tools "
    "provided, then deliver exactly one vetted SQL statement or a direct text answer."
)

_GUIDELINES = """<operation_guidelines>
1. Understanding:
   - Identify whether the request reads or modifies data
   - Determine which schemas and tables are relevant
2. Information gathering:
   - Use list_schemas and list_tables to find relevant tables
   - Use describe_table before referencing any column
   - Use sample_rows or run_query with a read-only SELECT and a LIMIT to validate
     assumptions about the data
3. Query generation:
   - READ (SELECT): efficient joins and WHERE clauses, LIMIT for large results
   - WRITE (INSERT/UPDATE/DELETE/DDL): always set requires_confirmation to true,
     always include a WHERE clause for UPDATE/DELETE, explain the impact
</operation_guidelines>"""

_SAFETY = """<safety_protocols>
1. Never run a statement that modifies data or schema without user confirmation
2. If a capability result reports "User denied execution", do not retry the statement
3. Quote identifiers and string literals correctly
4. Consider the impact on related tables (foreign keys)
5. If a request is ambiguous or unsafe, answer with response_kind "text", explain the
   risk and suggest an alternative
</safety_protocols>"""

_RESPONSE_FORMAT = f"""<response_format>
Always finish by calling {FINAL_ANSWER_TOOL_NAME} exactly once with:
- response_kind: "sql" for a database operation, "text" for an informational answer
- query: the SQL statement (sql answers only)
- explanation: what the statement does, or the direct answer
- requires_confirmation: true for every statement that modifies data or schema
- success: whether the request was answered
- database: the schema the statement targets, when relevant
Calling {FINAL_ANSWER_TOOL_NAME} ends the conversation turn; call no other tool in
the same step.
</response_format>"""


def _metadata_section(schema_summary: dict | list | str | None) -> str:
    if schema_summary is None:
        body = "No database metadata available. Explore with the tools."
    elif isinstance(schema_summary, str):
        body = schema_summary
    else:
        body = json.dumps(schema_summary, ensure_ascii=False, default=str)
    return f"<database_metadata>\n{body}\n</database_metadata>"


def build_system_prompt(
    schema_summary: dict | list | str | None = None, dialect: str | None = None,
) -> str:
    sections = [_IDENTITY, _metadata_section(schema_summary)]
    if dialect:
        sections.append(f"Use SQL syntax valid for {dialect}.")
    sections += [_GUIDELINES, _SAFETY, _RESPONSE_FORMAT]
    return "\n\n".join(sections)


async def prompt_for_gateway(gateway: DatabaseGateway) -> str:
    """System prompt embedding the live schema summary of the gateway's database."""
    try:
        summary = await gateway.schema_summary()
    except DatabaseError as e:
        logger.warning(
            "Schema summary unavailable: %s", e.message, extra={"error_code": e.code},
        )
        summary = None
    return build_system_prompt(summary, dialect=gateway.engine.dialect.name)
