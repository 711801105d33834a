"""
Command-line entry point: python -m access_to_pg <command> ...

    translate      definitions -> one .sql file per unit (no database writes)
    import         translate + multi-pass import into PostgreSQL
    stubs          VBA Function/Sub declarations -> stub functions
    extract        VBA module(s) -> intent trees (assistant)
    resolve        attach decisions to gaps (by id, or --auto from the graph)
    generate       intent trees -> Python event handlers
    install-state  create the shared session-state tables
    clear-session  delete one session's state rows
    sweep-state    delete stale session-state rows

Connection settings resolve CLI flag > environment variable > default
(see config.ENV_VARS).
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
import time
from typing import Optional

from access_to_pg import config
from access_to_pg.assistant import AssistantGateway, QueryFallback
from access_to_pg.catalog import ControlBindings, SchemaCatalog, load_catalog, load_control_bindings, load_snapshot
from access_to_pg.codegen import generate_code
from access_to_pg.converter import load_units, translate
from access_to_pg.errors import AssistantError, AssistantUnavailable, ConversionError
from access_to_pg.executor import PgExecutor, PooledExecutor, connect_pg
from access_to_pg.extractor import extract_intents, load_module_sources
from access_to_pg.graph import DependencyGraph, load_graph
from access_to_pg.intents import auto_resolve_gaps, collect_gaps, load_intents, resolve_gap, save_intents
from access_to_pg.scheduler import ImportJob, build_jobs, import_batch, write_reports
from access_to_pg.session_state import StateSweeper, clear_session, install, sweep
from access_to_pg.stubs import stub_jobs, stubs_for_calls

log = logging.getLogger("access_to_pg.cli")


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------

def _snapshot(args, settings: config.Settings, conn=None) -> tuple[Optional[SchemaCatalog], ControlBindings]:
    """Catalog and bindings from --catalog, else from the database when connected."""
    if getattr(args, "catalog", None):
        catalog, bindings = load_snapshot(args.catalog)
        log.info("Catalog snapshot: %s (%d relation(s), %d binding(s))",
                 args.catalog, len(catalog.relations), len(bindings))
        return catalog, bindings
    if conn is not None:
        return load_catalog(conn, settings.schema), load_control_bindings(conn, getattr(args, "database_id", None))
    return None, ControlBindings()


def _print_summary(summary: dict) -> None:
    print(f"\n  Passes used:         {summary['passes_used']} ({summary['stop_reason']})", flush=True)
    print(f"  Succeeded:           {len(summary['succeeded'])}", flush=True)
    print(f"  Failed (dependency): {len(summary['failed_dependency'])}", flush=True)
    print(f"  Failed (conversion): {len(summary['failed_conversion'])}", flush=True)
    print(f"  Assisted:            {len(summary['assisted'])}", flush=True)
    if summary["assistant_skipped"]:
        print(f"  Assistant skipped:   {len(summary['assistant_skipped'])}", flush=True)


def _run_batch(jobs: list[ImportJob], settings: config.Settings, conn, fallback, out_dir: str) -> int:
    if settings.workers > 1:
        executor = PooledExecutor(settings, maxconn=settings.workers)
    else:
        executor = PgExecutor(conn)

    def on_pass(pass_no, snapshot):
        done = sum(1 for j in snapshot if j.status.value == "succeeded")
        print(f"  Pass {pass_no}: {done}/{len(snapshot)} succeeded", flush=True)

    try:
        result = import_batch(jobs, executor, fallback=fallback,
                              max_passes=settings.max_passes, workers=settings.workers, on_pass=on_pass)
    finally:
        if isinstance(executor, PooledExecutor):
            executor.close()
    report = write_reports(result, out_dir)
    summary = result.summary()
    with open(os.path.join(out_dir, "import_summary.json"), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    _print_summary(summary)
    print(f"\n  Report: {report}", flush=True)
    return 0 if not summary["failed_dependency"] and not summary["failed_conversion"] else 1


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

def cmd_translate(args, settings: config.Settings) -> int:
    conn = connect_pg(settings) if args.from_db else None
    try:
        catalog, bindings = _snapshot(args, settings, conn)
    finally:
        if conn is not None:
            conn.close()
    units = load_units(args.definitions, settings.schema)
    os.makedirs(args.out_dir, exist_ok=True)
    ok = failed = 0
    warnings_path = os.path.join(args.out_dir, "translate_warnings.txt")
    with open(warnings_path, "w", encoding="utf-8") as wf:
        for unit in units:
            try:
                result = translate(unit, catalog, bindings)
            except ConversionError as e:
                failed += 1
                log.warning("Translate failed: %s", e)
                wf.write(f"{unit.name}: FAILED: {e}\n")
                for w in e.warnings:
                    wf.write(f"    {w}\n")
                continue
            ok += 1
            with open(os.path.join(args.out_dir, f"{unit.pg_name}.sql"), "w", encoding="utf-8") as f:
                f.write(result.ddl)
            for w in result.warnings:
                wf.write(f"{unit.name}: {w}\n")
    print(f"  Translated {ok}/{len(units)} unit(s), {failed} failed -> {args.out_dir}", flush=True)
    return 0 if failed == 0 else 1


def cmd_import(args, settings: config.Settings) -> int:
    conn = connect_pg(settings)
    try:
        catalog, bindings = _snapshot(args, settings, conn)
        units = load_units(args.definitions, settings.schema)
        print(f"  {len(units)} unit(s) from {args.definitions}", flush=True)
        jobs = build_jobs(units, catalog, bindings)

        if args.stub_calls:
            statements = [s for j in jobs for s in j.statements]
            existing = catalog.functions if catalog is not None else ()
            stubs = stubs_for_calls(statements, settings.schema, existing)
            stub_list = [
                ImportJob(name=n, statements=(s,), object_kind="function", schema=settings.schema)
                for n, s in zip(stubs.names, stubs.statements)
            ]
            if stub_list:
                print(f"  {len(stub_list)} stub function(s) for unresolved calls", flush=True)
            jobs = stub_list + jobs

        fallback = None
        if not args.no_assist:
            gateway = AssistantGateway.from_settings(settings)
            fallback = QueryFallback(gateway, catalog, bindings)
            if not gateway.available:
                log.warning("ANTHROPIC_API_KEY not set; conversion errors will be reported without correction")
        return _run_batch(jobs, settings, conn, fallback, args.out_dir)
    finally:
        conn.close()


def cmd_stubs(args, settings: config.Settings) -> int:
    modules = load_module_sources(args.modules)
    conn = connect_pg(settings)
    try:
        catalog = load_catalog(conn, settings.schema)
        jobs = stub_jobs(modules, settings.schema, () if args.replace else catalog.functions)
        if not jobs:
            print("  No stub functions to create", flush=True)
            return 0
        return _run_batch(jobs, settings, conn, None, args.out_dir)
    finally:
        conn.close()


def cmd_extract(args, settings: config.Settings) -> int:
    gateway = AssistantGateway.from_settings(settings)
    if not gateway.available:
        print("  Skipped: ANTHROPIC_API_KEY is not configured", flush=True)
        return 0
    app_objects = None
    if args.catalog:
        catalog, _ = load_snapshot(args.catalog)
        app_objects = {
            "tables": sorted(r for r in catalog.relations if r not in catalog.views),
            "queries": sorted(catalog.views),
        }
    modules = []
    failures = 0
    for name, source in load_module_sources(args.modules):
        try:
            modules.append(extract_intents(source, name, gateway, app_objects))
        except AssistantUnavailable as e:
            print(f"  Skipped {name}: {e}", flush=True)
        except (AssistantError, ValueError) as e:
            failures += 1
            log.error("Extraction failed for %s: %s", name, e)
    save_intents(modules, args.out)
    gaps = sum(len(collect_gaps(m.procedures)) for m in modules)
    print(f"  {len(modules)} module(s) extracted, {gaps} open gap(s) -> {args.out}", flush=True)
    return 0 if failures == 0 else 1


def cmd_resolve(args, settings: config.Settings) -> int:
    modules = load_intents(args.intents)
    if args.auto:
        if args.graph:
            with open(args.graph, encoding="utf-8") as f:
                graph = DependencyGraph.from_dict(json.load(f))
        else:
            conn = connect_pg(settings)
            try:
                graph = load_graph(conn, args.database_id)
            finally:
                conn.close()
        for module in modules:
            module.procedures, resolved = auto_resolve_gaps(module.procedures, graph)
            for gap_id in resolved:
                print(f"  auto-resolved {gap_id}", flush=True)
    if args.gap:
        if args.answer is None:
            print("  --answer is required with --gap", flush=True)
            return 2
        for module in modules:
            try:
                module.procedures = resolve_gap(module.procedures, args.gap, args.answer, args.notes or "")
                break
            except KeyError:
                continue
        else:
            print(f"  No gap with id {args.gap}", flush=True)
            return 1
    save_intents(modules, args.out or args.intents)
    remaining = [g for m in modules for g in collect_gaps(m.procedures)]
    for g in remaining:
        print(f"  OPEN {g['gap_id']}: {g['question']}", flush=True)
    print(f"  {len(remaining)} open gap(s)", flush=True)
    return 0


def cmd_generate(args, settings: config.Settings) -> int:
    modules = load_intents(args.intents)
    gateway = AssistantGateway.from_settings(settings) if args.assist else None
    context = ""
    if args.catalog:
        catalog, _ = load_snapshot(args.catalog)
        context = catalog.describe()
    sources = []
    gaps = []
    assisted = False
    for module in modules:
        result = generate_code(module.procedures, gateway, context, module.module_name)
        sources.append(result.rendered_source)
        gaps.extend(result.unresolved_gaps)
        assisted = assisted or result.ai_assisted
    text = "\n\n".join(sources)
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            f.write(text)
        with open(args.out + ".gaps.json", "w", encoding="utf-8") as f:
            json.dump({"unresolved_gaps": gaps, "ai_assisted": assisted}, f, indent=2)
        print(f"  Handlers -> {args.out} ({len(gaps)} unresolved gap(s))", flush=True)
    else:
        sys.stdout.write(text)
    return 0


def cmd_install_state(args, settings: config.Settings) -> int:
    conn = connect_pg(settings)
    try:
        install(conn)
    finally:
        conn.close()
    print("  Session state tables installed", flush=True)
    return 0


def cmd_clear_session(args, settings: config.Settings) -> int:
    conn = connect_pg(settings)
    try:
        deleted = clear_session(conn, args.session_id)
    finally:
        conn.close()
    print(f"  Deleted {deleted} row(s) for session {args.session_id}", flush=True)
    return 0


def cmd_sweep_state(args, settings: config.Settings) -> int:
    if args.once:
        conn = connect_pg(settings)
        try:
            deleted = sweep(conn, settings.session_ttl)
        finally:
            conn.close()
        print(f"  Deleted {deleted} stale row(s)", flush=True)
        return 0
    sweeper = StateSweeper(lambda: connect_pg(settings), settings.session_ttl, args.interval)
    sweeper.start()
    print(f"  Sweeping every {args.interval:.0f}s (ttl {settings.session_ttl}s); Ctrl+C to stop", flush=True)
    try:
        while sweeper.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        sweeper.stop(timeout=5)
    return 0


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------

def _add_connection_args(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("connection")
    g.add_argument("--pg-host", dest="pg_host", default=None, help="PostgreSQL host (env PG_HOST)")
    g.add_argument("--pg-port", dest="pg_port", type=int, default=None, help="PostgreSQL port (env PG_PORT)")
    g.add_argument("--pg-database", dest="pg_database", default=None, help="Database (env PG_DATABASE)")
    g.add_argument("--pg-user", dest="pg_user", default=None, help="User (env PG_USER)")
    g.add_argument("--pg-password", dest="pg_password", default=None, help="Password (env PG_PASSWORD)")
    g.add_argument("--schema", default=None, help="Target schema (env PG_SCHEMA)")
    g.add_argument("--database-id", dest="database_id", default=None,
                   help="Application database id for bindings and graph lookups")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="access_to_pg",
        description="Translate Access queries and VBA procedures into PostgreSQL objects and handlers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            DEFINITIONS is a JSON file (list of {name, kind, sql, parameters,
            owner, record_source, query_type}) or a directory of .sql files.

            Example:
              python -m access_to_pg import queries.json --schema northwind --max-passes 10
        """),
    )
    parser.add_argument("--log-dir", default=None, help="Write a timestamped DEBUG log here")
    parser.add_argument("--log-level", default="INFO", help="Console log level (default: INFO)")
    parser.add_argument("--model", default=None, help="Assistant model (env ACCESS_TO_PG_MODEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("translate", help="Translate definitions to .sql files")
    p.add_argument("definitions")
    p.add_argument("--out-dir", default="translated")
    p.add_argument("--catalog", default=None, help="JSON snapshot {catalog, bindings}")
    p.add_argument("--from-db", action="store_true", help="Read catalog and bindings from PostgreSQL")
    _add_connection_args(p)
    p.set_defaults(func=cmd_translate)

    p = sub.add_parser("import", help="Translate and import into PostgreSQL")
    p.add_argument("definitions")
    p.add_argument("--out-dir", default="import_output")
    p.add_argument("--catalog", default=None, help="JSON snapshot instead of reading the catalog")
    p.add_argument("--max-passes", dest="max_passes", type=int, default=None,
                   help=f"Pass budget (env ACCESS_TO_PG_MAX_PASSES, default {config.MAX_PASSES})")
    p.add_argument("--workers", type=int, default=None,
                   help="Concurrent jobs within a pass (env ACCESS_TO_PG_WORKERS, default 1)")
    p.add_argument("--no-assist", action="store_true", help="Never call the assistant")
    p.add_argument("--stub-calls", action="store_true",
                   help="Create text stubs for called functions that do not exist")
    _add_connection_args(p)
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("stubs", help="Create stub functions for VBA declarations")
    p.add_argument("modules", help="Module file or directory of .bas/.cls files")
    p.add_argument("--out-dir", default="stubs_output")
    p.add_argument("--replace", action="store_true", help="Also replace functions that already exist")
    p.add_argument("--max-passes", dest="max_passes", type=int, default=None)
    _add_connection_args(p)
    p.set_defaults(func=cmd_stubs)

    p = sub.add_parser("extract", help="Extract intent trees from VBA modules")
    p.add_argument("modules", help="Module file or directory of .bas/.cls files")
    p.add_argument("--out", default="intents.json")
    p.add_argument("--catalog", default=None, help="JSON snapshot listing application objects")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("resolve", help="Resolve gaps in saved intent trees")
    p.add_argument("intents")
    p.add_argument("--auto", action="store_true", help="Auto-resolve against the dependency graph")
    p.add_argument("--graph", default=None, help="Graph JSON instead of reading shared._nodes")
    p.add_argument("--gap", default=None, help="Gap id, e.g. btnSave_Click:0")
    p.add_argument("--answer", default=None)
    p.add_argument("--notes", default=None)
    p.add_argument("--out", default=None, help="Write here instead of updating INTENTS in place")
    _add_connection_args(p)
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("generate", help="Generate Python handlers from intent trees")
    p.add_argument("intents")
    p.add_argument("--out", default=None)
    p.add_argument("--assist", action="store_true", help="Render assisted intents with the assistant")
    p.add_argument("--catalog", default=None, help="JSON snapshot used as code-generation context")
    p.set_defaults(func=cmd_generate)

    p = sub.add_parser("install-state", help="Create shared session-state tables")
    _add_connection_args(p)
    p.set_defaults(func=cmd_install_state)

    p = sub.add_parser("clear-session", help="Delete every session-state row of one session")
    p.add_argument("session_id")
    _add_connection_args(p)
    p.set_defaults(func=cmd_clear_session)

    p = sub.add_parser("sweep-state", help="Delete stale session-state rows")
    p.add_argument("--once", action="store_true", help="Sweep once and exit")
    p.add_argument("--interval", type=float, default=300.0, help="Seconds between sweeps")
    p.add_argument("--ttl", dest="session_ttl", type=int, default=None,
                   help="Row lifetime in seconds (env ACCESS_TO_PG_SESSION_TTL)")
    _add_connection_args(p)
    p.set_defaults(func=cmd_sweep_state)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config.setup_logging(args.log_level, args.log_dir)
    try:
        settings = config.Settings.from_env().apply_args(args)
    except ValueError as e:
        print(f"  Configuration error: {e}", file=sys.stderr, flush=True)
        return 2
    log.debug("Arguments: %s", {k: v for k, v in vars(args).items() if k not in ("func", "pg_password")})
    run_start = time.time()
    code = args.func(args, settings)
    log.info("%s finished in %.1fs", args.command, time.time() - run_start)
    return code
