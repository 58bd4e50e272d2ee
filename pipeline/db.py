from __future__ import annotations

from contextlib import contextmanager

import psycopg
from sqlalchemy import create_engine

from .config import PostgresConfig


APPLICATION_NAME = "svitanok-pipeline"
SESSION_OPTIONS = "-c timezone=UTC"


def get_engine(cfg: PostgresConfig):
    """Read-side engine for pandas reports."""
    return create_engine(
        cfg.sqlalchemy_url(),
        future=True,
        pool_pre_ping=True,
        connect_args={"application_name": APPLICATION_NAME, "options": SESSION_OPTIONS},
    )


@contextmanager
def get_conn(cfg: PostgresConfig):
    # Autocommit: jobs group their writes in conn.transaction() blocks.
    conn = psycopg.connect(cfg.dsn(), autocommit=True, application_name=APPLICATION_NAME, options=SESSION_OPTIONS)
    try:
        yield conn
    finally:
        conn.close()
