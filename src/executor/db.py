"""Database layer for the result store.

PostgreSQL only (set GENERATION_DATABASE_URL). When it is unset or
unreachable, the result store falls back to one JSON file per job on the
local filesystem; see result_store.py.

Uses raw SQL via psycopg2 for simplicity. No ORM.

Thread-safety: a ThreadedConnectionPool is shared by all callers. The async
store calls into this module through asyncio.to_thread.
"""

import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Database URL: postgres://... or postgresql://...
DATABASE_URL = os.environ.get("GENERATION_DATABASE_URL", "")

_initialized = False
_pg_pool = None


def is_configured(database_url: Optional[str] = None) -> bool:
    """Check if a Postgres URL is configured."""
    return (database_url if database_url is not None else DATABASE_URL).startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=5,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-5 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a pooled Postgres connection.

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    pool = _get_pg_pool()
    conn = pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, dict):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a SQL statement.

    Args:
        sql: SQL statement with %s placeholders
        params: Parameters tuple
        fetch: "none", "one", "all"

    Returns:
        None for "none", dict for "one", list[dict] for "all"
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(sql, params)

        if fetch == "none":
            conn.commit()
            return None
        elif fetch == "one":
            row = cursor.fetchone()
            conn.commit()
            if row is None:
                return None
            columns = [desc[0] for desc in cursor.description]
            return dict(zip(columns, row))
        elif fetch == "all":
            rows = cursor.fetchall()
            conn.commit()
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row)) for row in rows]

        conn.commit()
        return None


def init_db():
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    ddl = """
    CREATE TABLE IF NOT EXISTS generation_results (
        request_id VARCHAR(128) PRIMARY KEY,
        status VARCHAR(20) NOT NULL DEFAULT 'processing',
        record JSONB NOT NULL,
        created_at TIMESTAMP DEFAULT NOW(),
        updated_at TIMESTAMP DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_generation_results_status
        ON generation_results(status);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()

    _initialized = True
    logger.info("Result store database initialized: PostgreSQL")
