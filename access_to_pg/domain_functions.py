"""
Access domain aggregate functions -> correlated PostgreSQL subqueries.

    DLookUp("[Name]", "Customers", "[ID]=" & [CustomerID])
    -> (SELECT name FROM app.customers WHERE id=p_customerid LIMIT 1)

The criteria argument is a small expression language of its own: Access
builds a SQL string by concatenating literal fragments with field values
using '&'. It is split on '&' (quote-aware); literal fragments are spliced
in as SQL text with their [brackets] naming columns of the domain table, and
every other fragment is an expression whose [brackets] become parameters of
the enclosing unit (or outer columns, for query units).

Run after normalizer.normalize_literals, so literals arrive single-quoted;
double-quoted literals are still accepted for direct calls.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from access_to_pg.access_functions import FUNCTION_MAP
from access_to_pg.errors import ConversionError, CriteriaError
from access_to_pg.normalizer import ParamRegistry, normalize_literals, qualify, quote_ident
from access_to_pg.scanner import (
    has_unterminated_delimiter,
    is_literal,
    rewrite_calls,
    segments,
    split_on_concat,
    sub_outside_strings,
    unquote_literal,
)

log = logging.getLogger("access_to_pg.domain_functions")

MAX_ITERATIONS = 20

KNOWN_DOMAIN_FUNCTIONS = ("dlookup", "dfirst", "dlast", "dcount", "dsum", "davg", "dmin", "dmax")

# Delimiters Access code wraps around a concatenated value: '...' & [X] & '...'
_VALUE_DELIMITERS = ("'", "#")

_DOMAIN_SHAPE = re.compile(r"^D[A-Z][A-Za-z]*$")
_SIMPLE_FIELD = re.compile(r"^\[?([^\[\]]+?)\]?$")


def _is_domain_call(name: str, args: list[str]) -> bool:
    """Known domain function, or a D<Name>(field, "Domain", ...) call shaped like one."""
    if name.lower() in KNOWN_DOMAIN_FUNCTIONS:
        return True
    if name.lower().rstrip("$") in FUNCTION_MAP:
        return False
    return bool(_DOMAIN_SHAPE.match(name)) and 2 <= len(args) <= 3 and is_literal(args[1])


def _brackets_to(text: str, render) -> str:
    """Replace every [ref] outside literals with render(ref)."""
    out = []
    for kind, chunk in segments(text):
        if kind == "bracket" and chunk.endswith("]"):
            chunk = render(chunk[1:-1])
        out.append(chunk)
    return "".join(out)


def _booleans(text: str) -> str:
    text = sub_outside_strings(r"\bTrue\b", "true", text, flags=re.IGNORECASE, quotes="'")
    return sub_outside_strings(r"\bFalse\b", "false", text, flags=re.IGNORECASE, quotes="'")


def _column(ref: str) -> str:
    return quote_ident(ref)


def _value_ref(ref: str, params: Optional[ParamRegistry]) -> str:
    """Outside a criteria literal, [ref] is a value from the enclosing row."""
    if params is None:
        return quote_ident(ref)
    return params.add(ref)


def _strip_value_delimiters(pieces: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """'name=''' & [X] & '''' -> name= & p_x: drop the quotes Access wraps around a value."""
    out = [list(p) for p in pieces]
    for i in range(1, len(out) - 1):
        prev, cur, nxt = out[i - 1], out[i], out[i + 1]
        if cur[0] != "value" or prev[0] != "literal" or nxt[0] != "literal":
            continue
        for d in _VALUE_DELIMITERS:
            if prev[1].endswith(d) and nxt[1].startswith(d) and prev[1].count(d) % 2 == 1:
                prev[1] = prev[1][:-1]
                nxt[1] = nxt[1][1:]
                break
    return [(k, t) for k, t in out]


def translate_criteria(criteria: Optional[str], params: Optional[ParamRegistry] = None) -> str:
    """Translate a domain-function criteria argument into a WHERE condition.

    Empty criteria mean no filter ("true"). Criteria that cannot be parsed
    (unterminated literal or bracket, unbalanced parens) raise CriteriaError
    instead of degrading to an unfiltered subquery.
    """
    if criteria is None or not criteria.strip():
        return "true"
    c = criteria.strip()
    if has_unterminated_delimiter(c):
        raise CriteriaError(f"unparseable criteria: {c}")

    parts = [c] if is_literal(c) else split_on_concat(c)
    raw: list[tuple[str, str]] = []
    for part in parts:
        if not part:
            continue
        if not is_literal(part):
            raw.append(("value", part))
        elif raw and raw[-1][0] == "literal":
            # "[Order " & "Date]=1": adjacent literals are one run of SQL text.
            raw[-1] = ("literal", raw[-1][1] + unquote_literal(part))
        else:
            raw.append(("literal", unquote_literal(part)))

    pieces: list[tuple[str, str]] = []
    for kind, fragment in raw:
        if kind == "literal":
            if fragment.count("[") != fragment.count("]"):
                raise CriteriaError(f"unbalanced brackets in criteria fragment: {fragment}")
            fragment = normalize_literals(fragment)
            fragment = _brackets_to(fragment, _column)
        else:
            fragment = normalize_literals(fragment)
            fragment = _brackets_to(fragment, lambda ref: _value_ref(ref, params))
        pieces.append((kind, _booleans(fragment)))

    pieces = _strip_value_delimiters(pieces)
    sql = ""
    prev_kind = None
    for kind, text in pieces:
        # Two adjacent expressions are string concatenation, not SQL splicing.
        if kind == "value" and prev_kind == "value":
            sql += " || "
        sql += text
        prev_kind = kind
    return sql.strip() or "true"


def _unwrap_name_arg(arg: str, what: str) -> str:
    if not is_literal(arg):
        raise ConversionError(f"domain function {what} must be a string literal, got {arg!r}")
    return unquote_literal(arg).strip()


def _field_expr(field: str) -> str:
    if field == "*":
        return "*"
    m = _SIMPLE_FIELD.match(field)
    if m and "[" not in m.group(1):
        return quote_ident(m.group(1))
    return _brackets_to(field, _column)


def translate_domain_call(
    name: str,
    args: list[str],
    schema: str,
    params: Optional[ParamRegistry] = None,
) -> str:
    """One domain call -> subquery text. Unknown domain functions render an inline marker."""
    fn = name.lower()
    if fn not in KNOWN_DOMAIN_FUNCTIONS:
        log.warning("Unknown domain function %s", name)
        return f"NULL /* unknown domain function: {name} */"
    if len(args) < 2:
        raise ConversionError(f"{name} needs at least a field and a domain")

    field = _field_expr(_unwrap_name_arg(args[0], "field"))
    table = qualify(schema, _unwrap_name_arg(args[1], "domain").strip("[]"))
    where = translate_criteria(args[2] if len(args) > 2 else None, params)

    if fn in ("dlookup", "dfirst"):
        return f"(SELECT {field} FROM {table} WHERE {where} LIMIT 1)"
    if fn == "dlast":
        return f"(SELECT {field} FROM {table} WHERE {where} ORDER BY ctid DESC LIMIT 1)"
    if fn == "dcount":
        return f"(SELECT COUNT({field}) FROM {table} WHERE {where})"
    if fn == "dsum":
        return f"(SELECT COALESCE(SUM({field}), 0) FROM {table} WHERE {where})"
    agg = {"davg": "AVG", "dmin": "MIN", "dmax": "MAX"}[fn]
    return f"(SELECT {agg}({field}) FROM {table} WHERE {where})"


def translate_domain_functions(
    text: str,
    schema: str,
    params: Optional[ParamRegistry] = None,
    warnings: Optional[list[str]] = None,
) -> str:
    """Rewrite every domain call in *text*; nested calls resolve innermost first.

    *params* collects criteria references as unit parameters. Pass None for
    query units, where those references are columns of the outer query.
    """
    def handler(name: str, args: list[str]) -> Optional[str]:
        if not _is_domain_call(name, args):
            return None
        if name.lower() not in KNOWN_DOMAIN_FUNCTIONS and warnings is not None:
            warnings.append(f"unknown domain function {name} left as NULL marker")
        return translate_domain_call(name, args, schema, params)

    for _ in range(MAX_ITERATIONS):
        rewritten = rewrite_calls(text, handler)
        if rewritten == text:
            return text
        text = rewritten
    if warnings is not None:
        warnings.append(f"domain function translation did not settle after {MAX_ITERATIONS} passes")
    return text
