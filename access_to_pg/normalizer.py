"""
Lexical normalization of Access SQL into PostgreSQL spelling.

Two stages, run at different points of the conversion pipeline:

    normalize_literals(text)   early: "..." string literals -> '...'. After this
                               every double quote in the text is an identifier.
    normalize_lexical(text)    late: [Bracket Names] -> sanitized identifiers,
                               & -> ||, True/False, #dates#, LIKE wildcards,
                               DISTINCTROW, TOP n -> LIMIT n, Date()/Now().

Plus schema qualification for relations and user-function calls. All functions
are pure; nothing here touches a database. Case collisions ([Name] vs [NAME])
fold silently to the same identifier.
"""
from __future__ import annotations

import re
from typing import Optional

from access_to_pg.scanner import segments, sql_literal, sub_outside_strings, unquote_literal

# PostgreSQL reserved keywords; identifiers equal to one of these are double-quoted.
PG_RESERVED = frozenset({
    "all", "analyse", "analyze", "and", "any", "array", "as", "asc", "asymmetric",
    "both", "by", "case", "cast", "check", "collate", "column", "constraint",
    "create", "cross", "current_date", "current_role", "current_time",
    "current_timestamp", "current_user", "default", "deferrable", "desc",
    "distinct", "do", "else", "end", "except", "false", "fetch", "for", "foreign",
    "from", "full", "grant", "group", "having", "in", "initially", "inner",
    "intersect", "into", "join", "lateral", "leading", "left", "like", "limit",
    "localtime", "localtimestamp", "natural", "not", "null", "offset", "on",
    "only", "or", "order", "outer", "overlaps", "placing", "primary", "references",
    "returning", "right", "select", "session_user", "similar", "some", "symmetric",
    "table", "then", "to", "trailing", "true", "union", "unique", "user", "using",
    "variadic", "when", "where", "window", "with",
})

# Functions that exist in PostgreSQL (or are emitted by the translators) and
# must never be schema-qualified.
PG_BUILTINS = frozenset({
    "count", "sum", "avg", "min", "max", "array_agg", "string_agg", "bool_and", "bool_or",
    "length", "substring", "left", "right", "upper", "lower", "trim", "ltrim", "rtrim",
    "position", "strpos", "replace", "reverse", "repeat", "ascii", "chr", "initcap",
    "concat", "concat_ws", "overlay", "translate", "encode", "decode", "md5", "format",
    "regexp_replace", "regexp_match", "regexp_matches", "split_part", "btrim", "lpad", "rpad",
    "floor", "trunc", "abs", "round", "sign", "sqrt", "ln", "exp", "ceil", "ceiling",
    "mod", "power", "random", "log", "pi", "degrees", "radians", "div", "greatest", "least",
    "extract", "make_date", "make_time", "make_timestamp", "make_interval",
    "date_part", "date_trunc", "age", "to_char", "to_date", "to_timestamp", "to_number",
    "now", "clock_timestamp", "statement_timestamp", "timeofday",
    "coalesce", "nullif", "cast",
    "json_agg", "jsonb_agg", "json_build_object", "jsonb_build_object", "row_to_json",
    "to_json", "to_jsonb",
    "row_number", "rank", "dense_rank", "lag", "lead", "first_value", "last_value",
    "ntile", "percent_rank", "cume_dist", "nth_value",
    "array_length", "unnest", "array_to_string",
    "current_setting", "set_config", "pg_typeof", "generate_series", "exists",
    "first_agg", "last_agg",
})

# Words that may be followed by '(' without being a function call.
_SQL_KEYWORDS = frozenset({
    "select", "from", "where", "set", "values", "as", "on", "and", "or", "not", "in",
    "join", "inner", "left", "right", "outer", "cross", "full", "having",
    "group", "order", "by", "union", "except", "intersect",
    "insert", "update", "delete", "into", "table", "view", "function",
    "create", "alter", "drop", "replace", "begin", "end", "return", "returns",
    "declare", "if", "then", "else", "when", "between", "like", "ilike", "similar",
    "is", "null", "true", "false", "distinct", "all", "any", "some", "over",
    "partition", "limit", "offset", "fetch", "for", "with", "recursive", "interval",
    "language", "stable", "immutable", "volatile", "using", "case",
})

# Type names that take a modifier list: numeric(19,4), varchar(50), ...
_TYPE_NAMES = frozenset({
    "numeric", "decimal", "varchar", "char", "character", "bit", "varbit",
    "timestamp", "timestamptz", "time", "timetz", "interval", "float",
})

_TOP_PATTERN = re.compile(r"\b(SELECT\s+(?:DISTINCT\s+)?)TOP\s+(\d+)(\s+PERCENT)?\s+", re.IGNORECASE)
_TRAILING_LIMIT = re.compile(r"\bLIMIT\s+\d+\s*$", re.IGNORECASE)
_DATE_MDY = re.compile(
    r"#(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?)?#"
)
_DATE_ISO = re.compile(r"#(\d{4})-(\d{1,2})-(\d{1,2})#")
_STATE_COMPARISON = re.compile(
    r"([\w.]+)(\s*(?:<>|[<>!]?=|[<>])\s*)\(SELECT value FROM shared\.form_control_state\b"
)
_RELATION_PREFIX = re.compile(
    r"\b(FROM|JOIN|INTO|UPDATE|TABLE)(\s+\(*\s*)(\"?[A-Za-z_]\w*\"?)(\.[A-Za-z_\"][\w.\"]*)?"
    r"(\s+(?:AS\s+)?[A-Za-z_]\w*)?",
    re.IGNORECASE,
)
_FUNCTION_CALL = re.compile(r"(?<![.\"\w:])([A-Za-z_]\w*)\s*\(")
_BARE_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")

# After normalize_literals only single quotes open literals; "x" is an identifier.
_LIT = "'"


def sanitize_name(name: str) -> str:
    """Access object/field name -> lowercase underscore identifier ("Order Date" -> order_date)."""
    s = re.sub(r"\s+", "_", name.strip().lower())
    return re.sub(r"[^a-z0-9_]", "", s)


def quote_ident(name: str) -> str:
    """Sanitize and double-quote only when PostgreSQL requires it."""
    s = sanitize_name(name)
    if not _BARE_IDENT.match(s) or s in PG_RESERVED:
        return f'"{s}"'
    return s


def qualify(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


# -----------------------------------------------------------------------------
# Early stage
# -----------------------------------------------------------------------------

def normalize_literals(text: str) -> str:
    """Rewrite Access "..." literals as PostgreSQL '...' literals (escapes preserved)."""
    out = []
    for kind, chunk in segments(text):
        if kind == "string" and chunk.startswith('"') and len(chunk) >= 2 and chunk.endswith('"'):
            chunk = sql_literal(unquote_literal(chunk))
        out.append(chunk)
    return "".join(out)


# -----------------------------------------------------------------------------
# Late stage
# -----------------------------------------------------------------------------

def normalize_brackets(text: str, params: Optional[dict[str, str]] = None) -> str:
    """[Name] -> name; a bracket naming a declared parameter becomes its p_ name.

    *params* maps lowercased raw names to parameter names. Brackets already
    holding a parameter name ([p_region]) are unwrapped unchanged.
    """
    out = []
    for kind, chunk in segments(text, _LIT):
        if kind == "bracket" and chunk.endswith("]"):
            inner = chunk[1:-1]
            key = inner.strip().lower()
            if params and key in params:
                chunk = params[key]
            elif key.startswith("p_") and _BARE_IDENT.match(key):
                chunk = key
            elif inner.strip() == "*":
                chunk = "*"
            else:
                chunk = quote_ident(inner)
        out.append(chunk)
    result = "".join(out)
    # [T]![C] -> t.c
    return sub_outside_strings(r'(?<=[\w"])\s*!\s*(?=[\w"])', ".", result, quotes=_LIT)


def convert_top_to_limit(text: str, warnings: Optional[list[str]] = None) -> str:
    m = _TOP_PATTERN.search(text)
    if not m:
        return text
    n = m.group(2)
    if m.group(3) and warnings is not None:
        warnings.append(f"TOP {n} PERCENT approximated as LIMIT {n}")
    text = text[:m.start()] + m.group(1) + text[m.end():]
    text = text.rstrip().rstrip(";").rstrip()
    if not _TRAILING_LIMIT.search(text):
        text = f"{text} LIMIT {n}"
    return text


def _mdy_to_literal(m: re.Match) -> str:
    month, day, year = int(m.group(1)), int(m.group(2)), m.group(3)
    if m.group(4) is None:
        return f"'{year}-{month:02d}-{day:02d}'::date"
    hour = int(m.group(4))
    ampm = (m.group(7) or "").upper()
    if ampm == "PM" and hour < 12:
        hour += 12
    elif ampm == "AM" and hour == 12:
        hour = 0
    sec = m.group(6) or "00"
    return f"'{year}-{month:02d}-{day:02d} {hour:02d}:{m.group(5)}:{sec}'::timestamp"


def convert_date_literals(text: str) -> str:
    """#1/31/2024# -> '2024-01-31'::date, with an optional time part -> ::timestamp."""
    text = sub_outside_strings(_DATE_MDY.pattern, _mdy_to_literal, text, quotes=_LIT)
    return sub_outside_strings(
        _DATE_ISO.pattern,
        lambda m: f"'{m.group(1)}-{int(m.group(2)):02d}-{int(m.group(3)):02d}'::date",
        text,
        quotes=_LIT,
    )


def convert_like_patterns(text: str) -> str:
    """LIKE '*abc?' -> LIKE '%abc_' (only literals that directly follow LIKE)."""
    out = []
    after_like = False
    for kind, chunk in segments(text, _LIT):
        if kind == "string" and after_like and chunk.startswith("'"):
            chunk = sql_literal(unquote_literal(chunk).replace("*", "%").replace("?", "_"))
        if kind == "code":
            after_like = bool(re.search(r"\bLIKE\s*$", chunk, re.IGNORECASE))
        elif chunk.strip():
            after_like = False
        out.append(chunk)
    return "".join(out)


def normalize_operators(text: str) -> str:
    text = sub_outside_strings(r"\s*&\s*", " || ", text, quotes=_LIT)
    text = sub_outside_strings(r"\bMod\b", "%", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bTrue\b", "true", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bFalse\b", "false", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bDISTINCTROW\b", "DISTINCT", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bDate\s*\(\s*\)", "CURRENT_DATE", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bNow\s*\(\s*\)", "CURRENT_TIMESTAMP", text, flags=re.IGNORECASE, quotes=_LIT)
    text = sub_outside_strings(r"\bTime\s*\(\s*\)", "CURRENT_TIME", text, flags=re.IGNORECASE, quotes=_LIT)
    return text


def cast_state_comparisons(text: str) -> str:
    """col = (SELECT value FROM shared.form_control_state ...) -> col::text = (...)."""
    return sub_outside_strings(
        _STATE_COMPARISON.pattern,
        r"\1::text\2(SELECT value FROM shared.form_control_state",
        text,
        quotes=_LIT,
    )


def normalize_lexical(
    text: str,
    params: Optional[dict[str, str]] = None,
    warnings: Optional[list[str]] = None,
) -> str:
    text = convert_date_literals(text)
    text = normalize_operators(text)
    text = convert_like_patterns(text)
    text = normalize_brackets(text, params)
    text = convert_top_to_limit(text, warnings)
    return cast_state_comparisons(text)


# -----------------------------------------------------------------------------
# Schema qualification
# -----------------------------------------------------------------------------

def _is_keyword(word: str) -> bool:
    return word.strip().strip('"').lower() in _SQL_KEYWORDS


def add_schema_prefix(text: str, schema: str) -> str:
    """Qualify bare relation names after FROM/JOIN/INTO/UPDATE/TABLE with *schema*.

    An unaliased table keeps its bare name as alias so t.col references still
    resolve: FROM customers -> FROM app.customers customers.
    """
    sch = quote_ident(schema)

    def prefix(m: re.Match) -> str:
        keyword, gap, name, qualified, alias = m.groups()
        if qualified or _is_keyword(name):
            return m.group(0)
        if keyword.upper() == "FROM":
            before = m.string[max(0, m.start() - 60):m.start()]
            if re.search(r"\b(?:EXTRACT|SUBSTRING|OVERLAY|TRIM|POSITION)\s*\([^()]*$", before, re.IGNORECASE):
                return m.group(0)
        bare = quote_ident(name.strip('"'))
        has_alias = bool(alias) and not _is_keyword(re.sub(r"(?i)^\s*AS\s+", "", alias))
        target = f"{sch}.{bare}"
        if not has_alias and keyword.upper() not in ("INTO", "UPDATE", "TABLE"):
            target = f"{target} {bare}"
        return f"{keyword}{gap}{target}{alias or ''}"

    return sub_outside_strings(_RELATION_PREFIX.pattern, prefix, text, flags=re.IGNORECASE, quotes=_LIT)


def add_function_prefix(text: str, schema: str) -> str:
    """Qualify calls to non-builtin functions (user procedures) with *schema*."""
    sch = quote_ident(schema)

    def prefix(m: re.Match) -> str:
        name = m.group(1).lower()
        if name in PG_BUILTINS or name in _SQL_KEYWORDS or name in _TYPE_NAMES:
            return m.group(0)
        return f"{sch}.{quote_ident(name)}("

    return sub_outside_strings(_FUNCTION_CALL.pattern, prefix, text, quotes=_LIT)


# -----------------------------------------------------------------------------
# Parameter naming
# -----------------------------------------------------------------------------

class ParamRegistry:
    """Collision-free p_ names for bracket references, in first-seen order.

    Lookups are case-insensitive on the raw reference ([Region] == [REGION]).
    Two different references that sanitize to the same name get numbered
    suffixes (p_order_date, p_order_date_2) in encounter order.
    """

    def __init__(self):
        self._by_key: dict[str, str] = {}
        self._raw: dict[str, str] = {}
        self._taken: set[str] = set()

    def add(self, raw: str) -> str:
        key = raw.strip().lower()
        if key in self._by_key:
            return self._by_key[key]
        base = "p_" + (sanitize_name(raw) or "param")
        name = base
        n = 2
        while name in self._taken:
            name = f"{base}_{n}"
            n += 1
        self._by_key[key] = name
        self._raw[key] = raw.strip()
        self._taken.add(name)
        return name

    def __contains__(self, raw: str) -> bool:
        return raw.strip().lower() in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def items(self) -> list[tuple[str, str]]:
        """(raw reference, parameter name) pairs in first-seen order."""
        return [(self._raw[k], v) for k, v in self._by_key.items()]

    def mapping(self) -> dict[str, str]:
        """Lowercased raw reference -> parameter name, for normalize_brackets."""
        return dict(self._by_key)
