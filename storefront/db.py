from __future__ import annotations

from contextlib import contextmanager

import psycopg
from fastapi import HTTPException

from .config import PostgresConfig


SCHEMA_HINT = "Run: python -m pipeline.run_sql --sql sql/00_schema.sql"


@contextmanager
def get_conn():
    # Autocommit: multi-statement writes use explicit conn.transaction() blocks.
    conn = psycopg.connect(PostgresConfig().dsn(), autocommit=True)
    try:
        conn.execute("SET TIME ZONE 'UTC';", prepare=False)
        yield conn
    finally:
        conn.close()


def schema_missing(area: str) -> HTTPException:
    return HTTPException(status_code=500, detail=f"{area} tables not found. {SCHEMA_HINT}")


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail="Service unavailable (database not reachable). Please try again in a moment.",
    )


SCHEMA_ERRORS = (psycopg.errors.UndefinedTable, psycopg.errors.InvalidSchemaName, psycopg.errors.UndefinedColumn)
