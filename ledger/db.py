from contextlib import contextmanager
from pathlib import Path

import psycopg

from config import get_settings

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def connect(dsn: str | None = None) -> psycopg.Connection:
    """
    open a Postgres connection for the ledger.
    autocommit is disabled so we can manage transactions explicitly, and every
    statement is bounded by statement_timeout so nothing blocks indefinitely.
    """
    settings = get_settings()
    conn = psycopg.connect(
        dsn or settings.DATABASE_URL,
        connect_timeout=settings.DB_CONNECT_TIMEOUT,
        options=f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
    )
    conn.autocommit = False
    return conn


@contextmanager
def get_conn(dsn: str | None = None):
    """
    simple context manager to get a Postgres connection.
    """
    with connect(dsn) as conn:
        yield conn


def apply_schema(conn: psycopg.Connection) -> None:
    """
    create tables (idempotent) and seed the fixed plan tiers and categories.
    """
    with conn.cursor() as cur:
        cur.execute(SCHEMA_PATH.read_text())
    conn.commit()
