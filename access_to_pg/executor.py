"""
Apply translated statements to PostgreSQL, one transaction per job.

Engine errors never escape as exceptions: the transaction is rolled back and
an ExecutionOutcome carrying the SQLSTATE and message is returned, which the
scheduler classifies.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

log = logging.getLogger("access_to_pg.executor")


@dataclass(frozen=True)
class ExecutionOutcome:
    ok: bool
    sqlstate: Optional[str] = None
    message: str = ""

    @property
    def first_line(self) -> str:
        return (self.message or "").strip().splitlines()[0] if self.message else ""


def connect_pg(settings) -> "psycopg2.extensions.connection":
    """Open a PostgreSQL connection from Settings."""
    import psycopg2
    conn = psycopg2.connect(**settings.connect_kwargs())
    conn.autocommit = False
    return conn


def apply_statements(pg_conn, statements: Sequence[str]) -> ExecutionOutcome:
    """Execute *statements* in one transaction; commit on success, roll back on any error."""
    import psycopg2

    statements = [s.strip().rstrip(";").strip() for s in statements if s and s.strip()]
    if not statements:
        return ExecutionOutcome(False, None, "Empty SQL")
    try:
        with pg_conn.cursor() as cur:
            for sql in statements:
                log.debug("Executing: %s", sql[:200])
                cur.execute(sql)
        pg_conn.commit()
        return ExecutionOutcome(True)
    except psycopg2.Error as e:
        pg_conn.rollback()
        return ExecutionOutcome(False, e.pgcode, (e.pgerror or str(e)).strip())


class PgExecutor:
    """Single-connection executor. Not safe for concurrent apply() calls."""

    def __init__(self, pg_conn):
        self.pg_conn = pg_conn

    def apply(self, statements: Sequence[str]) -> ExecutionOutcome:
        return apply_statements(self.pg_conn, statements)

    def close(self) -> None:
        self.pg_conn.close()


class PooledExecutor:
    """Thread-safe executor over psycopg2's ThreadedConnectionPool."""

    def __init__(self, settings, maxconn: int = 4):
        from psycopg2.pool import ThreadedConnectionPool
        self._pool = ThreadedConnectionPool(1, max(1, maxconn), **settings.connect_kwargs())
        self._lock = threading.Lock()

    def apply(self, statements: Sequence[str]) -> ExecutionOutcome:
        conn = self._pool.getconn()
        try:
            conn.autocommit = False
            return apply_statements(conn, statements)
        finally:
            self._pool.putconn(conn)

    def close(self) -> None:
        with self._lock:
            self._pool.closeall()
