"""
Session-partitioned state store backing translated form and TempVars references.

Translated SQL reads control values with

    (SELECT value FROM shared.form_control_state
      WHERE session_id = current_setting('app.session_id', true)
        AND table_name = '<t>' AND column_name = '<c>')

so every connection must bind its session id before running such a view or
function, and values written for one session are invisible to every other.
Stale rows are removed by a background sweep, not by request lifecycle.
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from access_to_pg.references import STATE_TABLE, TEMPVARS_TABLE

log = logging.getLogger("access_to_pg.session_state")

SESSION_SETTING = "app.session_id"
DEFAULT_SWEEP_INTERVAL = 300.0

INFRASTRUCTURE_DDL = [
    "CREATE SCHEMA IF NOT EXISTS shared",
    f"""CREATE TABLE IF NOT EXISTS {STATE_TABLE} (
    session_id  text        NOT NULL,
    table_name  text        NOT NULL,
    column_name text        NOT NULL,
    value       text,
    updated_at  timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (session_id, table_name, column_name)
)""",
    f"CREATE INDEX IF NOT EXISTS form_control_state_updated_at_idx ON {STATE_TABLE} (updated_at)",
    """CREATE TABLE IF NOT EXISTS shared.control_column_map (
    database_id  text NOT NULL,
    form_name    text NOT NULL,
    control_name text NOT NULL,
    table_name   text NOT NULL,
    column_name  text NOT NULL,
    PRIMARY KEY (database_id, form_name, control_name)
)""",
]

_UPSERT = f"""
    INSERT INTO {STATE_TABLE} (session_id, table_name, column_name, value)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (session_id, table_name, column_name)
    DO UPDATE SET value = EXCLUDED.value, updated_at = now()
"""


def install(pg_conn) -> None:
    """Create the shared state tables (idempotent)."""
    with pg_conn.cursor() as cur:
        for ddl in INFRASTRUCTURE_DDL:
            cur.execute(ddl)
    pg_conn.commit()
    log.info("Session state tables installed")


def bind_session(pg_conn, session_id: str) -> None:
    """Bind *session_id* for the rest of this connection's session."""
    if not session_id:
        raise ValueError("session_id is required")
    with pg_conn.cursor() as cur:
        cur.execute("SELECT set_config(%s, %s, false)", (SESSION_SETTING, session_id))


def set_state(pg_conn, session_id: str, entries: dict[tuple[str, str], Optional[object]]) -> int:
    """Upsert {(table, column): value} for one session; returns the row count written."""
    if not session_id:
        raise ValueError("session_id is required")
    rows = [
        (session_id, table.lower(), column.lower(), None if value is None else str(value))
        for (table, column), value in entries.items()
    ]
    if not rows:
        return 0
    with pg_conn.cursor() as cur:
        cur.executemany(_UPSERT, rows)
    pg_conn.commit()
    return len(rows)


def set_tempvar(pg_conn, session_id: str, name: str, value) -> int:
    return set_state(pg_conn, session_id, {(TEMPVARS_TABLE, name): value})


def clear_session(pg_conn, session_id: str) -> int:
    with pg_conn.cursor() as cur:
        cur.execute(f"DELETE FROM {STATE_TABLE} WHERE session_id = %s", (session_id,))
        deleted = cur.rowcount
    pg_conn.commit()
    return deleted


def sweep(pg_conn, ttl_seconds: int) -> int:
    """Delete state rows not updated within *ttl_seconds*."""
    with pg_conn.cursor() as cur:
        cur.execute(
            f"DELETE FROM {STATE_TABLE} WHERE updated_at < now() - make_interval(secs => %s)",
            (ttl_seconds,),
        )
        deleted = cur.rowcount
    pg_conn.commit()
    if deleted:
        log.info("Swept %d stale session state row(s)", deleted)
    return deleted


class StateSweeper(threading.Thread):
    """Daemon thread running sweep() every *interval* seconds until stop()."""

    def __init__(self, connect, ttl_seconds: int, interval: float = DEFAULT_SWEEP_INTERVAL):
        super().__init__(name="state-sweeper", daemon=True)
        self._connect = connect
        self.ttl_seconds = ttl_seconds
        self.interval = interval
        self._stop_event = threading.Event()
        self.runs = 0

    def run(self) -> None:
        conn = self._connect()
        try:
            while not self._stop_event.is_set():
                try:
                    sweep(conn, self.ttl_seconds)
                except Exception as e:
                    log.error("State sweep failed: %s", e)
                    conn.rollback()
                self.runs += 1
                self._stop_event.wait(self.interval)
        finally:
            conn.close()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
