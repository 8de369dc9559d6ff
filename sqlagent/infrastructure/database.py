"""Database Gateway — async SQLAlchemy access for the database capabilities.

Invariants:
    - Every call runs on its own connection; write statements commit on success and
      roll back on exception (no partial commits leak)
    - All SQLAlchemy exceptions mapped to DatabaseError (core/errors.py)
    - Result rows are JSON-safe (non-native values stringified) and capped at max_rows
    - The gateway applies no policy: confirmation is the gate's job

Design Decisions:
    - Singleton gateway initialized on startup: FastAPI lifespan manages lifecycle
      (no global import side effects)
    - Schema introspection via sqlalchemy.inspect inside run_sync: dialect-neutral
    - pool_pre_ping only for server databases; SQLite pools don't need it
    - schema_summary mirrors what the model needs up front (tables per schema plus
      the foreign-key graph); column detail stays behind describe_table
"""

import datetime
import decimal
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import MetaData, Table, inspect, select, text
from sqlalchemy.exc import (
    DBAPIError, IntegrityError, NoSuchTableError, OperationalError, SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqlagent.core.errors import DatabaseError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 200
_SYSTEM_SCHEMAS = frozenset({
    "information_schema", "pg_catalog", "pg_toast", "mysql",
    "performance_schema", "sys",
})


def _plain(value: Any) -> Any:
    """Make a column value JSON-safe."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, (datetime.date, datetime.time, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


class DatabaseGateway:
    """Schema introspection and statement execution over an AsyncEngine."""

    def __init__(
        self, database_url: str | None = None, *, echo: bool = False,
        engine: AsyncEngine | None = None, max_rows: int = DEFAULT_MAX_ROWS,
    ):
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            kwargs: dict[str, Any] = {"echo": echo}
            if not database_url.startswith("sqlite"):
                kwargs.update(pool_pre_ping=True, pool_recycle=3600)
            engine = create_async_engine(database_url, **kwargs)
        self.engine = engine
        self.max_rows = max_rows

    @asynccontextmanager
    async def connection(
        self, operation: str, write: bool = False,
    ) -> AsyncGenerator[AsyncConnection, None]:
        """Provide a connection (transactional when write=True) with error mapping."""
        try:
            if write:
                async with self.engine.begin() as conn:
                    yield conn
            else:
                async with self.engine.connect() as conn:
                    yield conn
        except NoSuchTableError as e:
            raise DatabaseError(f"table '{e}' not found", operation)
        except IntegrityError as e:
            logger.warning("DB integrity error: %s", e)
            raise DatabaseError("integrity constraint violated", operation)
        except OperationalError as e:
            logger.warning("DB operational error: %s", e)
            raise DatabaseError(str(e.orig or e), operation)
        except DBAPIError as e:
            logger.warning("DB driver error: %s", e)
            raise DatabaseError(str(e.orig or e), operation)
        except SQLAlchemyError as e:
            logger.warning("SQLAlchemy error: %s", e)
            raise DatabaseError(str(e), operation)

    async def list_schemas(self) -> list[str]:
        async with self.connection("list_schemas") as conn:
            return await conn.run_sync(lambda c: inspect(c).get_schema_names())

    async def list_tables(self, schema: str | None = None) -> list[str]:
        async with self.connection("list_tables") as conn:
            return await conn.run_sync(
                lambda c: inspect(c).get_table_names(schema=schema),
            )

    async def describe_table(self, table: str, schema: str | None = None) -> dict:
        """Columns, primary key and foreign keys of one table."""
        def _describe(sync_conn) -> dict:
            insp = inspect(sync_conn)
            if not insp.has_table(table, schema=schema):
                raise NoSuchTableError(table)
            columns = insp.get_columns(table, schema=schema)
            pk = insp.get_pk_constraint(table, schema=schema)
            fks = insp.get_foreign_keys(table, schema=schema)
            return {
                "table": table,
                "schema": schema,
                "columns": [
                    {
                        "name": c["name"],
                        "type": str(c["type"]),
                        "nullable": bool(c.get("nullable", True)),
                        "default": _plain(c.get("default")),
                    }
                    for c in columns
                ],
                "primary_key": list(pk.get("constrained_columns") or []),
                "foreign_keys": [
                    {
                        "columns": fk.get("constrained_columns", []),
                        "references": (
                            f"{fk.get('referred_table')}"
                            f"({', '.join(fk.get('referred_columns', []))})"
                        ),
                    }
                    for fk in fks
                ],
            }

        async with self.connection("describe_table") as conn:
            return await conn.run_sync(_describe)

    async def schema_summary(self) -> dict:
        """Tables per user schema and the foreign-key graph between them."""
        def _summarize(sync_conn) -> dict:
            insp = inspect(sync_conn)
            default = insp.default_schema_name
            schemas = []
            for name in insp.get_schema_names():
                if name in _SYSTEM_SCHEMAS or name.startswith("pg_"):
                    continue
                target = None if name == default else name
                tables = sorted(insp.get_table_names(schema=target))
                graph = {}
                for table in tables:
                    edges = [
                        {
                            "to_table": fk["referred_table"],
                            "from_column": fk["constrained_columns"][0],
                            "to_column": fk["referred_columns"][0],
                        }
                        for fk in insp.get_foreign_keys(table, schema=target)
                        if fk.get("constrained_columns") and fk.get("referred_columns")
                    ]
                    if edges:
                        graph[table] = edges
                schemas.append({"name": name, "tables": tables, "graph": graph})
            return {
                "dialect": sync_conn.dialect.name,
                "default_schema": default,
                "schemas": schemas,
            }

        async with self.connection("schema_summary") as conn:
            return await conn.run_sync(_summarize)

    async def sample_rows(
        self, table: str, schema: str | None = None, limit: int = 5,
    ) -> dict:
        """First `limit` rows of a table (reflected, so identifiers are quoted)."""
        async with self.connection("sample_rows") as conn:
            reflected = await conn.run_sync(
                lambda c: Table(table, MetaData(), schema=schema, autoload_with=c),
            )
            result = await conn.execute(select(reflected).limit(limit))
            return self._rows(result)

    async def run_sql(self, statement: str) -> dict:
        """Execute one statement. Row-returning statements yield rows, others rowcount."""
        async with self.connection("run_sql", write=True) as conn:
            result = await conn.execute(text(statement))
            if result.returns_rows:
                return self._rows(result)
            return {"rows_affected": result.rowcount}

    def _rows(self, result) -> dict:
        columns = list(result.keys())
        fetched = result.fetchmany(self.max_rows + 1)
        truncated = len(fetched) > self.max_rows
        rows = [[_plain(v) for v in row] for row in fetched[: self.max_rows]]
        return {
            "columns": columns,
            "rows": rows,
            "row_count": len(rows),
            "truncated": truncated,
        }

    async def health_check(self) -> bool:
        """Check database connectivity (for readiness probes)."""
        try:
            async with self.connection("health_check") as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except DatabaseError as e:
            logger.error("DB health check failed: %s", e.message)
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()


# Singleton (initialized on startup)
db_gateway: DatabaseGateway | None = None


def init_db(database_url: str, **kwargs) -> DatabaseGateway:
    global db_gateway
    db_gateway = DatabaseGateway(database_url, **kwargs)
    return db_gateway


def get_gateway() -> DatabaseGateway:
    """FastAPI dependency for the database gateway."""
    if db_gateway is None:
        raise DatabaseError("database not initialized", "connect")
    return db_gateway
