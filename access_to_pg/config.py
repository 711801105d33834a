"""
Settings and logging setup.

Every value resolves CLI flag > environment variable > module default. A
missing ANTHROPIC_API_KEY is not an error: assisted steps are skipped.
"""
from __future__ import annotations

import datetime
import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

# =============================================================================
# Defaults
# =============================================================================

PG_HOST = "localhost"
PG_PORT = 5432
PG_DATABASE = "postgres"
PG_USER = "postgres"
PG_PASSWORD = ""
PG_SCHEMA = "public"

ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
ANTHROPIC_MAX_TOKENS = 4096

MAX_PASSES = 20
WORKERS = 1
SESSION_TTL_SECONDS = 24 * 3600
STATEMENT_TIMEOUT_MS = 120000

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

# Settings attribute -> environment variable
ENV_VARS = {
    "pg_host": "PG_HOST",
    "pg_port": "PG_PORT",
    "pg_database": "PG_DATABASE",
    "pg_user": "PG_USER",
    "pg_password": "PG_PASSWORD",
    "schema": "PG_SCHEMA",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "model": "ACCESS_TO_PG_MODEL",
    "max_passes": "ACCESS_TO_PG_MAX_PASSES",
    "workers": "ACCESS_TO_PG_WORKERS",
    "session_ttl": "ACCESS_TO_PG_SESSION_TTL",
}


@dataclass
class Settings:
    pg_host: str = PG_HOST
    pg_port: int = PG_PORT
    pg_database: str = PG_DATABASE
    pg_user: str = PG_USER
    pg_password: str = PG_PASSWORD
    schema: str = PG_SCHEMA
    anthropic_api_key: Optional[str] = None
    model: str = ANTHROPIC_MODEL
    max_tokens: int = ANTHROPIC_MAX_TOKENS
    max_passes: int = MAX_PASSES
    workers: int = WORKERS
    session_ttl: int = SESSION_TTL_SECONDS
    statement_timeout_ms: int = STATEMENT_TIMEOUT_MS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls()
        types = {f.name: f.type for f in fields(cls)}
        for attr, var in ENV_VARS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            if types[attr] == "int":
                try:
                    setattr(settings, attr, int(raw))
                except ValueError:
                    raise ValueError(f"{var} must be an integer, got {raw!r}") from None
            else:
                setattr(settings, attr, raw)
        return settings

    def apply_args(self, args) -> "Settings":
        """Overlay argparse values that were given on the command line (not None)."""
        for attr in ENV_VARS:
            value = getattr(args, attr, None)
            if value is not None:
                setattr(self, attr, value)
        return self

    def connect_kwargs(self) -> dict:
        return {
            "host": self.pg_host,
            "port": self.pg_port,
            "dbname": self.pg_database,
            "user": self.pg_user,
            "password": self.pg_password,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }

    @property
    def assistant_configured(self) -> bool:
        return bool(self.anthropic_api_key)


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> Optional[Path]:
    """Console handler on stderr, plus a timestamped DEBUG log file when *log_dir* is set."""
    root = logging.getLogger("access_to_pg")
    root.setLevel(logging.DEBUG if log_dir else getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(getattr(logging, level.upper(), logging.INFO))
        handler.setFormatter(fmt)
        root.addHandler(handler)
    if not log_dir:
        return None
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = Path(log_dir) / f"access_to_pg_{timestamp}.log"
    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    root.addHandler(fh)
    root.info("Log file: %s", log_file)
    return log_file
