"""
Tests for settings, the session-state store (with a fake connection) and the
offline CLI commands (translate, resolve, generate, clear-session).
Run with:  python -m pytest test_cli.py -v
"""

import json
import threading

import pytest

from access_to_pg import cli
from access_to_pg import config
from access_to_pg import session_state as mod
from access_to_pg.intents import ModuleIntents, load_intents, save_intents


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))

    def executemany(self, sql, rows):
        self.conn.many.append((sql, list(rows)))


class FakeConn:
    def __init__(self, rowcount=0):
        self.rowcount = rowcount
        self.executed = []
        self.many = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.committed = threading.Event()

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1
        self.committed.set()

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


@pytest.fixture
def clean_env(monkeypatch):
    for var in config.ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)


# ===========================================================================
# 1. settings
# ===========================================================================
class TestSettings:
    def test_defaults(self):
        s = config.Settings.from_env({})
        assert s.pg_host == "localhost"
        assert s.max_passes == config.MAX_PASSES
        assert not s.assistant_configured

    def test_environment_overrides(self):
        s = config.Settings.from_env({
            "PG_HOST": "db.internal",
            "PG_PORT": "6543",
            "PG_SCHEMA": "northwind",
            "ACCESS_TO_PG_MAX_PASSES": "5",
            "ANTHROPIC_API_KEY": "sk-test",
            "ACCESS_TO_PG_WORKERS": "",
        })
        assert (s.pg_host, s.pg_port, s.schema, s.max_passes) == ("db.internal", 6543, "northwind", 5)
        assert s.workers == config.WORKERS
        assert s.assistant_configured

    def test_bad_integer_names_variable(self):
        with pytest.raises(ValueError, match="ACCESS_TO_PG_MAX_PASSES"):
            config.Settings.from_env({"ACCESS_TO_PG_MAX_PASSES": "many"})

    def test_flags_win_over_environment(self):
        args = cli.build_parser().parse_args(["import", "q.json", "--schema", "app", "--max-passes", "3"])
        s = config.Settings.from_env({"PG_SCHEMA": "other", "ACCESS_TO_PG_MAX_PASSES": "9"}).apply_args(args)
        assert s.schema == "app"
        assert s.max_passes == 3

    def test_connect_kwargs(self):
        kw = config.Settings(pg_database="access", statement_timeout_ms=5000).connect_kwargs()
        assert kw["dbname"] == "access"
        assert kw["options"] == "-c statement_timeout=5000"


# ===========================================================================
# 2. session state
# ===========================================================================
class TestSessionState:
    def test_install_runs_ddl_and_commits(self):
        conn = FakeConn()
        mod.install(conn)
        assert len(conn.executed) == len(mod.INFRASTRUCTURE_DDL)
        assert conn.executed[0][0] == "CREATE SCHEMA IF NOT EXISTS shared"
        assert conn.commits == 1

    def test_bind_session(self):
        conn = FakeConn()
        mod.bind_session(conn, "s-1")
        assert conn.executed == [("SELECT set_config(%s, %s, false)", ("app.session_id", "s-1"))]

    def test_set_state_upserts_one_session(self):
        conn = FakeConn()
        count = mod.set_state(conn, "s-1", {("Orders", "CustomerID"): 42, ("Orders", "Note"): None})
        assert count == 2
        _, rows = conn.many[0]
        assert rows == [("s-1", "orders", "customerid", "42"), ("s-1", "orders", "note", None)]
        assert conn.commits == 1

    def test_session_id_required(self):
        with pytest.raises(ValueError):
            mod.set_state(FakeConn(), "", {("t", "c"): 1})
        with pytest.raises(ValueError):
            mod.bind_session(FakeConn(), "")

    def test_empty_entries_write_nothing(self):
        conn = FakeConn()
        assert mod.set_state(conn, "s-1", {}) == 0
        assert conn.many == [] and conn.commits == 0

    def test_tempvar_uses_tempvars_table(self):
        conn = FakeConn()
        mod.set_tempvar(conn, "s-1", "CurrentUser", "bob")
        assert conn.many[0][1] == [("s-1", "_tempvars", "currentuser", "bob")]

    def test_clear_session(self):
        conn = FakeConn(rowcount=4)
        assert mod.clear_session(conn, "s-1") == 4
        sql, params = conn.executed[0]
        assert sql == "DELETE FROM shared.form_control_state WHERE session_id = %s"
        assert params == ("s-1",)
        assert conn.commits == 1

    def test_sweep_returns_rowcount(self):
        conn = FakeConn(rowcount=3)
        assert mod.sweep(conn, 60) == 3
        sql, params = conn.executed[0]
        assert "updated_at < now()" in sql
        assert params == (60,)

    def test_sweeper_thread(self):
        conn = FakeConn(rowcount=1)
        sweeper = mod.StateSweeper(lambda: conn, ttl_seconds=10, interval=30)
        sweeper.start()
        assert conn.committed.wait(5)
        sweeper.stop(timeout=5)
        assert not sweeper.is_alive()
        assert sweeper.runs >= 1
        assert conn.closed


# ===========================================================================
# 3. CLI (no database)
# ===========================================================================
class TestCli:
    def _definitions(self, tmp_path, units):
        path = tmp_path / "queries.json"
        path.write_text(json.dumps(units))
        return str(path)

    def test_translate_writes_sql_files(self, tmp_path, clean_env):
        defs = self._definitions(tmp_path, [
            {"name": "Active Customers", "sql": "SELECT [CustomerID] FROM [Customers] WHERE [Active] = True"},
        ])
        out = tmp_path / "out"
        code = cli.main(["translate", defs, "--out-dir", str(out), "--schema", "app"])
        assert code == 0
        sql = (out / "active_customers.sql").read_text()
        assert sql.startswith("CREATE OR REPLACE VIEW app.active_customers AS")
        assert (out / "translate_warnings.txt").exists()

    def test_translate_reports_failures(self, tmp_path, clean_env):
        defs = self._definitions(tmp_path, [
            {"name": "Good", "sql": "SELECT [a] FROM [t]"},
            {"name": "Pivot", "sql": "TRANSFORM Sum([x]) SELECT [a] FROM [t] GROUP BY [a] PIVOT [b]"},
        ])
        out = tmp_path / "out"
        assert cli.main(["translate", defs, "--out-dir", str(out), "--schema", "app"]) == 1
        assert (out / "good.sql").exists()
        assert not (out / "pivot.sql").exists()
        assert "Pivot: FAILED" in (out / "translate_warnings.txt").read_text()

    def test_bad_environment_is_reported(self, tmp_path, monkeypatch, clean_env):
        monkeypatch.setenv("ACCESS_TO_PG_MAX_PASSES", "lots")
        defs = self._definitions(tmp_path, [])
        assert cli.main(["translate", defs, "--out-dir", str(tmp_path / "out")]) == 2

    def test_clear_session_command(self, monkeypatch, clean_env, capsys):
        conn = FakeConn(rowcount=2)
        monkeypatch.setattr(cli, "connect_pg", lambda settings: conn)
        assert cli.main(["clear-session", "s-1"]) == 0
        assert conn.executed[0][1] == ("s-1",)
        assert conn.closed
        assert "Deleted 2 row(s) for session s-1" in capsys.readouterr().out

    def _intents(self, tmp_path):
        module = ModuleIntents.from_dict({"procedures": [{
            "name": "cmdOpen_Click",
            "trigger": "on-click",
            "intents": [
                {"type": "gap", "vba_line": 'DoCmd.OpenForm "Customer Detail"', "reason": "openform"},
                {"type": "gap", "vba_line": "Shell \"notepad\"", "reason": "shell"},
            ],
        }]}, "Form_Orders")
        path = str(tmp_path / "intents.json")
        save_intents([module], path)
        return path

    def test_resolve_auto_from_graph_file(self, tmp_path, clean_env, capsys):
        intents = self._intents(tmp_path)
        graph = tmp_path / "graph.json"
        graph.write_text(json.dumps({"nodes": [{"type": "form", "name": "Customer Detail"}]}))
        assert cli.main(["resolve", intents, "--auto", "--graph", str(graph)]) == 0
        out = capsys.readouterr().out
        assert "auto-resolved cmdOpen_Click:0" in out
        assert "OPEN cmdOpen_Click:1" in out
        gaps = load_intents(intents)[0].procedures[0].gaps()
        assert gaps[0].resolution["resolved_by"] == "auto"
        assert gaps[1].resolution is None

    def test_resolve_by_id(self, tmp_path, clean_env):
        intents = self._intents(tmp_path)
        assert cli.main(["resolve", intents, "--gap", "cmdOpen_Click:1"]) == 2
        assert cli.main(["resolve", intents, "--gap", "nope:3", "--answer", "x"]) == 1
        assert cli.main(["resolve", intents, "--gap", "cmdOpen_Click:1", "--answer", "Drop it"]) == 0
        gap = load_intents(intents)[0].procedures[0].gaps()[1]
        assert gap.resolution["answer"] == "Drop it"

    def test_generate_writes_handlers_and_gaps(self, tmp_path, clean_env):
        intents = self._intents(tmp_path)
        out = str(tmp_path / "handlers.py")
        assert cli.main(["generate", intents, "--out", out]) == 0
        source = open(out, encoding="utf-8").read()
        assert "def cmdopen_click(app):" in source
        with open(out + ".gaps.json", encoding="utf-8") as f:
            report = json.load(f)
        assert [g["gap_id"] for g in report["unresolved_gaps"]] == ["cmdOpen_Click:0", "cmdOpen_Click:1"]
        assert report["ai_assisted"] is False
