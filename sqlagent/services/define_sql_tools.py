"""Define SQL Tools — database capabilities and the final-answer tool declaration.

Invariants:
    - Every executor returns {"success": True, ...payload}; failures raise and are turned
      into {"success": False, ...} by the agent loop's error boundary
    - run_query is the only SQL-bearing capability (sql_field="query"); the gate decides
      whether it runs immediately or waits for the user
    - Results sent back to the model are trimmed to result_preview_chars of JSON
    - provide_final_answer has no executor: calling it terminates the run

Design Decisions:
    - Capabilities built per gateway (closures), so tests and runs can point at any engine
    - Identifiers in sample_rows are reflected, not interpolated into SQL text
"""

import json

from pydantic import BaseModel, Field

from sqlagent.core.final_answer import final_answer_schema
from sqlagent.infrastructure.database import DatabaseGateway
from sqlagent.services.capability_registry import Capability, CapabilityRegistry

FINAL_ANSWER_TOOL_NAME = "provide_final_answer"

FINAL_ANSWER_TOOL = {
    "name": FINAL_ANSWER_TOOL_NAME,
    "description": (
        "Use this tool only as the final step, to deliver the generated SQL "
        "statement (response_kind='sql') or a direct text answer "
        "(response_kind='text'). Set requires_confirmation to true for any "
        "statement that modifies data or schema. Calling it ends the run."
    ),
    "input_schema": {
        k: v for k, v in final_answer_schema().items() if k != "title"
    },
}


class ListSchemasInput(BaseModel):
    pass


class ListTablesInput(BaseModel):
    database: str | None = Field(
        None, description="Schema/database to list. Omit for the default one.",
    )


class DescribeTableInput(BaseModel):
    table: str = Field(min_length=1, description="Table name.")
    database: str | None = Field(
        None, description="Schema/database containing the table.",
    )


class SampleRowsInput(BaseModel):
    table: str = Field(min_length=1, description="Table name.")
    database: str | None = Field(
        None, description="Schema/database containing the table.",
    )
    limit: int = Field(5, ge=1, le=50, description="Number of rows to fetch.")


class RunQueryInput(BaseModel):
    query: str = Field(
        min_length=1,
        description=(
            "A single SQL statement. SELECT/SHOW/DESCRIBE/EXPLAIN run immediately; "
            "anything else waits for user confirmation."
        ),
    )
    requires_confirmation: bool = Field(
        False, description="Force user confirmation before execution.",
    )


def fit_result(payload: dict, max_chars: int) -> dict:
    """Drop trailing rows until the JSON payload fits in max_chars."""
    rows = payload.get("rows")
    if not isinstance(rows, list):
        return payload
    fitted = dict(payload)
    fitted["rows"] = list(rows)
    while fitted["rows"] and len(json.dumps(fitted, default=str)) > max_chars:
        fitted["rows"].pop()
        fitted["truncated"] = True
    fitted["row_count"] = len(fitted["rows"])
    return fitted


def build_sql_capabilities(
    gateway: DatabaseGateway, *,
    result_preview_chars: int = 1000, sample_rows_limit: int = 5,
) -> list[Capability]:
    """Capabilities bound to one database gateway."""

    async def list_schemas(_: ListSchemasInput) -> dict:
        return {"success": True, "schemas": await gateway.list_schemas()}

    async def list_tables(data: ListTablesInput) -> dict:
        tables = await gateway.list_tables(data.database)
        return {"success": True, "database": data.database, "tables": tables}

    async def describe_table(data: DescribeTableInput) -> dict:
        description = await gateway.describe_table(data.table, data.database)
        return {"success": True, **description}

    async def sample_rows(data: SampleRowsInput) -> dict:
        limit = min(data.limit, sample_rows_limit)
        rows = await gateway.sample_rows(data.table, data.database, limit)
        return {"success": True, **fit_result(rows, result_preview_chars)}

    async def run_query(data: RunQueryInput) -> dict:
        result = await gateway.run_sql(data.query)
        return {"success": True, **fit_result(result, result_preview_chars)}

    return [
        Capability(
            name="list_schemas",
            description="List the schemas/databases available on the active connection.",
            input_model=ListSchemasInput,
            execute=list_schemas,
        ),
        Capability(
            name="list_tables",
            description="List all tables in a schema/database.",
            input_model=ListTablesInput,
            execute=list_tables,
        ),
        Capability(
            name="describe_table",
            description=(
                "Describe a table: columns with types and nullability, primary key "
                "and foreign keys. Use before writing queries against a table."
            ),
            input_model=DescribeTableInput,
            execute=describe_table,
        ),
        Capability(
            name="sample_rows",
            description=(
                "Fetch a few rows from a table to understand data patterns "
                "before generating the final query."
            ),
            input_model=SampleRowsInput,
            execute=sample_rows,
        ),
        Capability(
            name="run_query",
            description=(
                "Execute one SQL statement and return its rows or affected row count. "
                "Prefer read-only statements with a LIMIT to validate assumptions. "
                "Statements that modify data or schema require user confirmation."
            ),
            input_model=RunQueryInput,
            execute=run_query,
            sql_field="query",
        ),
    ]


def build_sql_registry(gateway: DatabaseGateway, **kwargs) -> CapabilityRegistry:
    return CapabilityRegistry(build_sql_capabilities(gateway, **kwargs))
