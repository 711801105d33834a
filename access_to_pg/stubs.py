"""
Stub functions for user procedures.

Queries may call VBA Function/Sub procedures (SELECT CalcTax([Amount]) ...).
Before the real handlers exist, each declaration gets a PostgreSQL stub of
the right signature so those queries can be created; stub jobs go through
the same scheduler as queries.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from access_to_pg.normalizer import quote_ident, sanitize_name
from access_to_pg.scanner import find_closing_paren, split_top_level
from access_to_pg.scheduler import ImportJob

log = logging.getLogger("access_to_pg.stubs")

VBA_TYPE_MAP = {
    "long": "bigint",
    "longlong": "bigint",
    "integer": "integer",
    "int": "integer",
    "string": "text",
    "double": "double precision",
    "single": "real",
    "boolean": "boolean",
    "currency": "numeric(19,4)",
    "decimal": "numeric",
    "date": "timestamp",
    "byte": "smallint",
    "variant": "text",
    "object": "text",
}

_DECLARATION = re.compile(
    r"^[ \t]*(?:(?:Public|Private|Friend)[ \t]+)?(?:Static[ \t]+)?(Function|Sub)[ \t]+(\w+)[ \t]*"
    r"\(([^)]*)\)(?:[ \t]+As[ \t]+(\w+))?",
    re.IGNORECASE | re.MULTILINE,
)
_PARAM_MODIFIERS = re.compile(r"^(?:(?:Optional|ByVal|ByRef|ParamArray)\s+)+", re.IGNORECASE)
_PARAM = re.compile(r"^(\w+)(?:\s*\(\s*\))?(?:\s+As\s+(\w+))?", re.IGNORECASE)


def map_vba_type(vba_type: Optional[str]) -> str:
    if not vba_type:
        return "text"
    return VBA_TYPE_MAP.get(vba_type.lower(), "text")


@dataclass(frozen=True)
class Declaration:
    name: str
    params: tuple[tuple[str, Optional[str]], ...] = ()
    return_type: Optional[str] = None
    is_sub: bool = False
    module: str = ""

    @property
    def pg_name(self) -> str:
        return sanitize_name(self.name)


def parse_declarations(source: str, module: str = "") -> list[Declaration]:
    """Function/Sub declarations in a VBA module, in source order."""
    if not source:
        return []
    decls = []
    for m in _DECLARATION.finditer(source):
        kind, name, param_text, ret = m.groups()
        params = []
        for part in param_text.split(","):
            part = _PARAM_MODIFIERS.sub("", part.strip())
            pm = _PARAM.match(part)
            if pm:
                params.append((pm.group(1), pm.group(2)))
        decls.append(Declaration(name, tuple(params), ret, kind.lower() == "sub", module))
    return decls


def build_stub_statement(schema: str, decl: Declaration) -> str:
    params = ", ".join(f"{quote_ident(p)} {map_vba_type(t)}" for p, t in decl.params)
    if decl.is_sub:
        returns, body = "void", "BEGIN\n  -- stub: no-op\nEND;"
    else:
        returns, body = map_vba_type(decl.return_type), "BEGIN\n  RETURN NULL;\nEND;"
    return (
        f"CREATE OR REPLACE FUNCTION {quote_ident(schema)}.{quote_ident(decl.name)}({params}) "
        f"RETURNS {returns} AS $$\n{body}\n$$ LANGUAGE plpgsql"
    )


def stub_jobs(
    modules: Iterable[tuple[str, str]],
    schema: str,
    existing: Iterable[str] = (),
) -> list[ImportJob]:
    """One job per declaration not already present as a function (first module wins)."""
    seen = {sanitize_name(n) for n in existing}
    jobs = []
    skipped = 0
    for module, source in modules:
        for decl in parse_declarations(source, module):
            if decl.pg_name in seen:
                skipped += 1
                continue
            seen.add(decl.pg_name)
            jobs.append(ImportJob(
                name=decl.pg_name,
                statements=(build_stub_statement(schema, decl),),
                object_kind="function",
                source=f"{module}.{decl.name}",
                schema=schema,
            ))
    log.info("Stubs: %d to create, %d already defined", len(jobs), skipped)
    return jobs


@dataclass
class CallStubs:
    statements: list[str] = field(default_factory=list)
    names: list[str] = field(default_factory=list)


def stubs_for_calls(statements: Iterable[str], schema: str, existing: Iterable[str] = ()) -> CallStubs:
    """Text stubs (p1 text, ...) for schema-qualified calls no declaration covers.

    Functions and aggregates the statements themselves create are not stubbed.
    Arity is the largest argument count seen for the name.
    """
    statements = list(statements)
    sch = re.escape(quote_ident(schema))
    call = re.compile(rf'{sch}\.("?)(\w+)\1\s*\(')
    defines = re.compile(
        rf'\bCREATE\s+(?:OR\s+REPLACE\s+)?(?:FUNCTION|AGGREGATE|PROCEDURE)\s+{sch}\.("?)(\w+)\1\s*\(',
        re.IGNORECASE,
    )
    have = {sanitize_name(n) for n in existing}
    for stmt in statements:
        have.update(sanitize_name(m.group(2)) for m in defines.finditer(stmt))
    arity: dict[str, int] = {}
    for stmt in statements:
        for m in call.finditer(stmt):
            name = m.group(2)
            close = find_closing_paren(stmt, m.end() - 1)
            if close is None:
                continue
            inner = stmt[m.end():close]
            n = len(split_top_level(inner)) if inner.strip() else 0
            arity[name] = max(n, arity.get(name, 0))

    result = CallStubs()
    for name in sorted(arity):
        if sanitize_name(name) in have:
            continue
        params = ", ".join(f"p{i + 1} text" for i in range(arity[name]))
        result.statements.append(
            f"CREATE OR REPLACE FUNCTION {quote_ident(schema)}.{quote_ident(name)}({params}) "
            f"RETURNS text AS $$\nBEGIN\n  RETURN NULL;\nEND;\n$$ LANGUAGE plpgsql"
        )
        result.names.append(name)
    return result
