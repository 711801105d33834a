"""
DDL emitter: wrap a translated body into a complete, idempotent
CREATE OR REPLACE statement with typed parameters and a return type.

Output is a pure function of (body, params, catalog snapshot): no clock, no
randomness, no set iteration order leaks into the text.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from access_to_pg.catalog import SchemaCatalog
from access_to_pg.errors import ConversionError
from access_to_pg.normalizer import qualify, quote_ident, sanitize_name
from access_to_pg.scanner import segments, split_top_level

log = logging.getLogger("access_to_pg.ddl")


# -----------------------------------------------------------------------------
# Query kinds
# -----------------------------------------------------------------------------

class QueryKind(str, Enum):
    SELECT = "select"
    UNION = "union"
    CROSSTAB = "crosstab"
    DELETE = "delete"
    UPDATE = "update"
    APPEND = "append"
    MAKE_TABLE = "make-table"
    DATA_DEFINITION = "data-definition"
    PASS_THROUGH = "pass-through"


# DAO QueryDef.Type codes.
QUERY_TYPE_CODES = {
    0: QueryKind.SELECT,
    16: QueryKind.CROSSTAB,
    32: QueryKind.DELETE,
    48: QueryKind.UPDATE,
    64: QueryKind.APPEND,
    80: QueryKind.MAKE_TABLE,
    96: QueryKind.DATA_DEFINITION,
    112: QueryKind.PASS_THROUGH,
    128: QueryKind.UNION,
}

ACTION_KINDS = (QueryKind.DELETE, QueryKind.UPDATE, QueryKind.APPEND)

_LEADING = [
    (re.compile(r"^\s*TRANSFORM\b", re.IGNORECASE), QueryKind.CROSSTAB),
    (re.compile(r"^\s*DELETE\b", re.IGNORECASE), QueryKind.DELETE),
    (re.compile(r"^\s*UPDATE\b", re.IGNORECASE), QueryKind.UPDATE),
    (re.compile(r"^\s*INSERT\b", re.IGNORECASE), QueryKind.APPEND),
    (re.compile(r"^\s*(?:CREATE|ALTER|DROP)\b", re.IGNORECASE), QueryKind.DATA_DEFINITION),
]
_MAKE_TABLE_INTO = re.compile(r"\bINTO\s+((?:\"?\w+\"?\s*\.\s*)?\"?\w+\"?)\s+(?=FROM\b)", re.IGNORECASE)
_UNION = re.compile(r"\bUNION\b", re.IGNORECASE)


def _code_only(text: str) -> str:
    """*text* with literal contents blanked, so keyword searches ignore strings."""
    return "".join(
        "'" + " " * (len(chunk) - 2) + "'" if kind == "string" and len(chunk) >= 2 else chunk
        for kind, chunk in segments(text, "'")
    )


def _top_level(text: str) -> str:
    """*text* with parenthesized groups blanked (same length)."""
    out = []
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
        if depth:
            out.append(" ")
        else:
            out.append(ch)
        if ch == ")" and depth:
            depth -= 1
    return "".join(out)


def detect_query_kind(body: str, type_code: Optional[int] = None) -> QueryKind:
    """Kind from the DAO type code when known, else from the leading keyword."""
    if type_code is not None and type_code in QUERY_TYPE_CODES:
        kind = QUERY_TYPE_CODES[type_code]
        if kind is QueryKind.SELECT and _MAKE_TABLE_INTO.search(_top_level(_code_only(body))):
            return QueryKind.MAKE_TABLE
        return kind
    for pattern, kind in _LEADING:
        if pattern.search(body):
            return kind
    flat = _top_level(_code_only(body))
    if _MAKE_TABLE_INTO.search(flat):
        return QueryKind.MAKE_TABLE
    if _UNION.search(flat):
        return QueryKind.UNION
    return QueryKind.SELECT


# -----------------------------------------------------------------------------
# Parameters and types
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Param:
    name: str       # raw reference as written in the source
    pg_name: str    # p_<sanitized>
    pg_type: str = "text"

    def declaration(self) -> str:
        return f"{self.pg_name} {self.pg_type}"


# Access PARAMETERS / DAO type names -> PostgreSQL types.
ACCESS_PARAM_TYPES = {
    "boolean": "boolean",
    "bit": "boolean",
    "yesno": "boolean",
    "logical": "boolean",
    "byte": "integer",
    "integer": "integer",
    "short": "integer",
    "smallint": "integer",
    "long": "bigint",
    "counter": "bigint",
    "currency": "numeric(19,4)",
    "money": "numeric(19,4)",
    "single": "real",
    "ieeesingle": "real",
    "double": "double precision",
    "ieeedouble": "double precision",
    "float": "double precision",
    "decimal": "numeric",
    "date": "date",
    "datetime": "timestamp",
    "time": "time",
    "guid": "uuid",
}

# information_schema.data_type values that are not usable as declarations.
_UNUSABLE_TYPES = ("ARRAY", "USER-DEFINED")


def map_param_type(access_type: Optional[str]) -> str:
    """Boolean -> boolean, Long -> bigint, Currency -> numeric(19,4), ...; anything else text."""
    if not access_type:
        return "text"
    return ACCESS_PARAM_TYPES.get(access_type.strip().lower().replace(" ", ""), "text")


def _usable(pg_type: Optional[str]) -> Optional[str]:
    if not pg_type or pg_type in _UNUSABLE_TYPES:
        return None
    return pg_type


def relations_in(body: str, schema: str) -> list[str]:
    """Relation names after FROM/JOIN in *body*, in order of appearance."""
    sch = re.escape(quote_ident(schema))
    pattern = re.compile(rf"\b(?:FROM|JOIN)\s+(?:{sch}\.)?(\"?[A-Za-z_]\w*\"?)", re.IGNORECASE)
    seen: list[str] = []
    for m in pattern.finditer(_code_only(body)):
        name = m.group(1).strip('"').lower()
        if name not in seen and name != "select":
            seen.append(name)
    return seen


def _column_type(
    ref: str, catalog: SchemaCatalog, relations: list[str], record_source: Optional[str] = None
) -> Optional[str]:
    """Catalog type for a column reference ("col" or "alias.col")."""
    ref = ref.replace('"', "")
    table, _, column = ref.rpartition(".")
    if table:
        t = catalog.column_type(table, column)
        if t:
            return _usable(t)
    for rel in ([record_source] if record_source else []) + relations:
        t = catalog.column_type(rel, column)
        if t:
            return _usable(t)
    return _usable(catalog.find_column_type(column))


_COMPARED = r"((?:\"?\w+\"?\.)?\"?\w+\"?)"


def infer_param_types(
    params: list[Param],
    body: str,
    catalog: Optional[SchemaCatalog],
    record_source: Optional[str] = None,
    schema: str = "public",
) -> list[Param]:
    """Type each text-typed parameter from the catalog.

    A parameter named after a column of the record source takes that
    column's type; otherwise the first column it is compared with
    (col = p_x or p_x = col) decides. Unknown stays text.
    """
    if catalog is None:
        return list(params)
    code = _code_only(body)
    relations = relations_in(body, schema)
    typed = []
    for p in params:
        if p.pg_type != "text":
            typed.append(p)
            continue
        pg_type = None
        if record_source:
            pg_type = _usable(catalog.column_type(record_source, p.name))
        if pg_type is None:
            name = re.escape(p.pg_name)
            m = (re.search(rf"{_COMPARED}\s*\)?\s*(?:=|<>|<=|>=|<|>)\s*{name}\b", code)
                 or re.search(rf"\b{name}\s*(?:=|<>|<=|>=|<|>)\s*{_COMPARED}", code))
            if m and not m.group(1).lower().startswith("p_"):
                pg_type = _column_type(m.group(1), catalog, relations, record_source)
        typed.append(Param(p.name, p.pg_name, pg_type or "text"))
    return typed


def infer_return_type(body: str) -> str:
    """count-like -> bigint, sum/average -> numeric, everything else text."""
    code = _code_only(body).lower()
    if re.search(r"\bcount\s*\(", code):
        return "bigint"
    if re.search(r"\b(?:sum|avg)\s*\(", code):
        return "numeric"
    return "text"


# -----------------------------------------------------------------------------
# Output columns (RETURNS TABLE)
# -----------------------------------------------------------------------------

def _unique(name: str, used: set[str]) -> str:
    candidate = name
    n = 2
    while candidate in used:
        candidate = f"{name}_{n}"
        n += 1
    used.add(candidate)
    return candidate


def _sqlglot_columns(body: str, catalog: Optional[SchemaCatalog], schema: str):
    import sqlglot
    from sqlglot import exp

    tree = sqlglot.parse_one(body, read="postgres")
    while isinstance(tree, exp.Union):
        tree = tree.left
    if not isinstance(tree, exp.Select):
        return None
    relations = relations_in(body, schema)
    used: set[str] = set()
    cols = []
    for i, e in enumerate(tree.expressions, start=1):
        inner = e.unalias()
        if isinstance(inner, exp.Star) or (isinstance(inner, exp.Column) and isinstance(inner.this, exp.Star)):
            return None
        name = _unique(sanitize_name(e.alias_or_name) or f"column{i}", used)
        pg_type = None
        if isinstance(inner, exp.Column) and catalog is not None:
            ref = f"{inner.table}.{inner.name}" if inner.table else inner.name
            pg_type = _column_type(ref, catalog, relations)
        elif isinstance(inner, exp.Cast):
            pg_type = inner.to.sql(dialect="postgres").lower()
        elif isinstance(inner, exp.Count):
            pg_type = "bigint"
        elif isinstance(inner, (exp.Sum, exp.Avg)):
            pg_type = "numeric"
        cols.append((name, pg_type or "text"))
    return cols


def _top_level_from(text: str, start: int) -> int:
    flat = _top_level(_code_only(text))
    m = re.compile(r"\bFROM\b", re.IGNORECASE).search(flat, start)
    return m.start() if m else len(text)


def _scanned_columns(body: str):
    """Select-list names without a parser: alias, t.col, or bare col only."""
    m = re.match(r"\s*SELECT\s+(?:DISTINCT\s+)?", body, re.IGNORECASE)
    if not m:
        return None
    select_list = body[m.end():_top_level_from(body, m.end())]
    used: set[str] = set()
    cols = []
    for item in split_top_level(select_list):
        item = item.strip()
        alias = re.search(r"\bAS\s+\"?(\w[\w\s]*?)\"?\s*$", item, re.IGNORECASE)
        ref = re.match(r"^(?:\"?\w+\"?\.)?\"?(\w+)\"?$", item)
        if alias:
            name = alias.group(1)
        elif ref and ref.group(1) != "*":
            name = ref.group(1)
        else:
            return None
        cols.append((_unique(sanitize_name(name), used), "text"))
    return cols or None


def select_output_columns(
    body: str, catalog: Optional[SchemaCatalog] = None, schema: str = "public"
) -> Optional[list[tuple[str, str]]]:
    """(name, type) for each output column of a SELECT, or None if not derivable."""
    from sqlglot.errors import SqlglotError

    try:
        return _sqlglot_columns(body, catalog, schema)
    except SqlglotError as e:
        log.debug("sqlglot could not parse select list (%s); scanning instead", str(e).splitlines()[0])
        return _scanned_columns(body)


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------

AGGREGATE_SCHEMA = "public"

CUSTOM_AGGREGATES = {
    "first_agg": ("first_agg_sfunc", "SELECT COALESCE($1, $2)"),
    "last_agg": ("last_agg_sfunc", "SELECT $2"),
}


def custom_aggregate_statements(body: str) -> list[str]:
    """DO blocks creating first_agg/last_agg when *body* calls them (idempotent)."""
    code = _code_only(body).lower()
    statements = []
    for agg, (sfunc, impl) in CUSTOM_AGGREGATES.items():
        if not re.search(rf"\b{agg}\s*\(", code):
            continue
        statements.append(
            "DO $$ BEGIN\n"
            f"  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = '{sfunc}'"
            f" AND pronamespace = '{AGGREGATE_SCHEMA}'::regnamespace) THEN\n"
            f"    CREATE FUNCTION {AGGREGATE_SCHEMA}.{sfunc}(anyelement, anyelement) RETURNS anyelement"
            f" AS '{impl}' LANGUAGE SQL IMMUTABLE STRICT;\n"
            f"    CREATE AGGREGATE {AGGREGATE_SCHEMA}.{agg}(anyelement)"
            f" (SFUNC = {AGGREGATE_SCHEMA}.{sfunc}, STYPE = anyelement);\n"
            "  END IF;\n"
            "END $$"
        )
    return statements


def _signature(params: list[Param]) -> str:
    return ", ".join(p.declaration() for p in params)


def build_view(schema: str, name: str, body: str) -> str:
    return f"CREATE OR REPLACE VIEW {qualify(schema, name)} AS\n{body}"


def build_expression_function(schema: str, name: str, body: str, params: list[Param], return_type: str) -> str:
    return (
        f"CREATE OR REPLACE FUNCTION {qualify(schema, name)}({_signature(params)})\n"
        f"RETURNS {return_type} AS $$\n"
        f"  SELECT {body};\n"
        "$$ LANGUAGE SQL STABLE"
    )


def build_table_function(
    schema: str,
    name: str,
    body: str,
    params: list[Param],
    catalog: Optional[SchemaCatalog] = None,
    warnings: Optional[list[str]] = None,
) -> str:
    """Parameterized SELECT -> set-returning SQL function."""
    cols = select_output_columns(body, catalog, schema)
    if cols:
        returns = "RETURNS TABLE(" + ", ".join(f"{quote_ident(c)} {t}" for c, t in cols) + ")"
    else:
        relations = relations_in(body, schema)
        if len(relations) == 1 and re.match(r"\s*SELECT\s+(?:\w+\.)?\*\s+FROM\b", body, re.IGNORECASE):
            returns = f"RETURNS SETOF {qualify(schema, relations[0])}"
        else:
            returns = "RETURNS SETOF record"
            if warnings is not None:
                warnings.append("could not derive output columns; RETURNS SETOF record needs a column list at call sites")
    return (
        f"CREATE OR REPLACE FUNCTION {qualify(schema, name)}({_signature(params)})\n"
        f"{returns} AS $$\n"
        f"{body};\n"
        "$$ LANGUAGE SQL STABLE"
    )


def build_action_function(schema: str, name: str, body: str, params: list[Param]) -> str:
    """UPDATE/DELETE/INSERT -> plpgsql function returning the affected row count."""
    return (
        f"CREATE OR REPLACE FUNCTION {qualify(schema, name)}({_signature(params)})\n"
        "RETURNS integer AS $$\n"
        "DECLARE _count integer;\n"
        "BEGIN\n"
        f"  {body};\n"
        "  GET DIAGNOSTICS _count = ROW_COUNT;\n"
        "  RETURN _count;\n"
        "END;\n"
        "$$ LANGUAGE plpgsql VOLATILE"
    )


def build_make_table_function(schema: str, name: str, body: str, params: list[Param]) -> str:
    """SELECT ... INTO t FROM ... -> function that drops and re-creates t."""
    m = _MAKE_TABLE_INTO.search(_top_level(_code_only(body)))
    if not m:
        raise ConversionError("make-table query: could not find the INTO target", unit=name)
    target_raw = body[m.start(1):m.end(1)].replace('"', "")
    target = qualify(schema, target_raw.rpartition(".")[2].strip())
    select = (body[:m.start()] + body[m.end():]).strip()
    return (
        f"CREATE OR REPLACE FUNCTION {qualify(schema, name)}({_signature(params)})\n"
        "RETURNS integer AS $$\n"
        "DECLARE _count integer;\n"
        "BEGIN\n"
        f"  DROP TABLE IF EXISTS {target};\n"
        f"  CREATE TABLE {target} AS\n"
        f"  {select};\n"
        "  GET DIAGNOSTICS _count = ROW_COUNT;\n"
        "  RETURN _count;\n"
        "END;\n"
        "$$ LANGUAGE plpgsql VOLATILE"
    )


def build_query_statements(
    schema: str,
    name: str,
    body: str,
    kind: QueryKind,
    params: list[Param],
    catalog: Optional[SchemaCatalog] = None,
    warnings: Optional[list[str]] = None,
) -> tuple[list[str], str]:
    """All statements for one query unit, plus the created object kind (view|function)."""
    if kind in (QueryKind.CROSSTAB, QueryKind.DATA_DEFINITION, QueryKind.PASS_THROUGH):
        raise ConversionError(f"{kind.value} queries are not translated automatically", unit=name)
    statements = custom_aggregate_statements(body)
    if kind is QueryKind.MAKE_TABLE:
        statements.append(build_make_table_function(schema, name, body, params))
        return statements, "function"
    if kind in ACTION_KINDS:
        statements.append(build_action_function(schema, name, body, params))
        return statements, "function"
    if params:
        statements.append(build_table_function(schema, name, body, params, catalog, warnings))
        return statements, "function"
    statements.append(build_view(schema, name, body))
    return statements, "view"
