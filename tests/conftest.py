"""Root conftest — shared test configuration and a seeded database.

Invariants:
    - Every test gets a fresh file-backed SQLite database under tmp_path
    - The database holds users (3 rows) and orders (8 rows, orders.user_id -> users.id)

Design Decisions:
    - File-backed over :memory:: every gateway call opens its own connection, and an
      in-memory SQLite database lives only as long as one connection
"""

import os

import pytest
from sqlalchemy import text

# Ensure tests don't accidentally use real API keys or a developer database
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-fake-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

from sqlagent.infrastructure.database import DatabaseGateway  # noqa: E402
from sqlagent.services.define_sql_tools import build_sql_registry  # noqa: E402

_SCHEMA = (
    "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL)",
    "CREATE TABLE orders ("
    " id INTEGER PRIMARY KEY,"
    " user_id INTEGER NOT NULL REFERENCES users(id),"
    " total REAL NOT NULL,"
    " created_at TEXT NOT NULL)",
)


@pytest.fixture
async def gateway(tmp_path):
    gw = DatabaseGateway(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    async with gw.engine.begin() as conn:
        for ddl in _SCHEMA:
            await conn.execute(text(ddl))
        for i in range(1, 4):
            await conn.execute(
                text("INSERT INTO users (id, email) VALUES (:id, :email)"),
                {"id": i, "email": f"user{i}@example.com"},
            )
        for i in range(1, 9):
            await conn.execute(
                text(
                    "INSERT INTO orders (id, user_id, total, created_at) "
                    "VALUES (:id, :user_id, :total, :created_at)"
                ),
                {
                    "id": i, "user_id": (i % 3) + 1, "total": 10.5 * i,
                    "created_at": f"2024-01-{i:02d}",
                },
            )
    yield gw
    await gw.dispose()


@pytest.fixture
def registry(gateway):
    return build_sql_registry(gateway)
