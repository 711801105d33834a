"""
Access built-in scalar functions -> PostgreSQL expressions.

Calls are located with scanner.rewrite_calls (balanced, quote-aware), so
arguments may hold nested calls, '' escaped literals and [Bracket] refs.
Arguments are rewritten innermost first within a sweep; sweeps repeat until
the text stops changing or MAX_ITERATIONS is reached.

A call that cannot be translated (unknown arity, unbalanced parens) is left in
place untouched; it fails at execution time and is reported as a conversion
error, never dropped.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from access_to_pg.scanner import rewrite_calls, unquote_literal

log = logging.getLogger("access_to_pg.access_functions")

MAX_ITERATIONS = 20

# Access named/pattern formats -> to_char patterns.
FORMAT_MAP = {
    "general date": "YYYY-MM-DD HH24:MI:SS",
    "long date": "FMDay, FMMonth DD, YYYY",
    "medium date": "DD-Mon-YY",
    "short date": "MM/DD/YYYY",
    "long time": "HH24:MI:SS",
    "medium time": "HH:MI AM",
    "short time": "HH24:MI",
    "mm/dd/yyyy": "MM/DD/YYYY",
    "dd/mm/yyyy": "DD/MM/YYYY",
    "yyyy-mm-dd": "YYYY-MM-DD",
    "general number": "9999999999D99",
    "currency": "L9G999G999D99",
    "fixed": "9999999999D99",
    "standard": "9G999G999D99",
    "percent": "999D99%",
    "#,##0": "FM9G999G990",
    "#,##0.00": "FM9G999G990D00",
    "0": "FM0",
    "0.00": "FM0D00",
    "0%": "FM0%",
    "0.00%": "FM0D00%",
}

# DateAdd/DatePart interval codes.
INTERVAL_UNITS = {
    "yyyy": "year", "q": "month", "m": "month", "y": "day", "d": "day",
    "w": "day", "ww": "week", "h": "hour", "n": "minute", "s": "second",
}
DATE_PARTS = {
    "yyyy": "YEAR", "q": "QUARTER", "m": "MONTH", "y": "DOY", "d": "DAY",
    "w": "DOW", "ww": "WEEK", "h": "HOUR", "n": "MINUTE", "s": "SECOND",
}


def _interval_code(arg: str) -> str:
    return unquote_literal(arg).strip().lower()


def _case_when(args: list[str]) -> str:
    else_part = args[2] if len(args) > 2 else "NULL"
    return f"CASE WHEN {args[0]} THEN {args[1]} ELSE {else_part} END"


def _switch(args: list[str]) -> str:
    whens = "".join(f" WHEN {args[i]} THEN {args[i + 1]}" for i in range(0, len(args) - 1, 2))
    return f"CASE{whens} END"


def _choose(args: list[str]) -> str:
    whens = "".join(f" WHEN {i} THEN {arg}" for i, arg in enumerate(args[1:], start=1))
    return f"CASE {args[0]}{whens} END"


def _mid(args: list[str]) -> str:
    if len(args) >= 3:
        return f"SUBSTRING({args[0]} FROM {args[1]} FOR {args[2]})"
    return f"SUBSTRING({args[0]} FROM {args[1]})"


def _instr(args: list[str]) -> str:
    if len(args) >= 3:
        return f"(POSITION({args[2]} IN SUBSTRING({args[1]} FROM {args[0]})) + {args[0]} - 1)"
    return f"POSITION({args[1]} IN {args[0]})"


def _strconv(args: list[str]) -> str:
    mode = args[1].strip()
    if mode in ("1", "vbUpperCase"):
        return f"UPPER({args[0]})"
    if mode in ("2", "vbLowerCase"):
        return f"LOWER({args[0]})"
    if mode in ("3", "vbProperCase"):
        return f"INITCAP({args[0]})"
    return f"({args[0]})"


def _date_add(args: list[str]) -> str:
    code = _interval_code(args[0])
    unit = INTERVAL_UNITS.get(code, "day")
    amount = f"({args[1]}) * 3" if code == "q" else args[1]
    return f"({args[2]} + ({amount}) * INTERVAL '1 {unit}')"


def _date_diff(args: list[str]) -> str:
    code = _interval_code(args[0])
    start, end = args[1], args[2]
    if code == "m":
        return (
            f"(EXTRACT(YEAR FROM {end}::date) * 12 + EXTRACT(MONTH FROM {end}::date)"
            f" - EXTRACT(YEAR FROM {start}::date) * 12 - EXTRACT(MONTH FROM {start}::date))::integer"
        )
    if code == "yyyy":
        return f"(EXTRACT(YEAR FROM {end}::date) - EXTRACT(YEAR FROM {start}::date))::integer"
    if code == "q":
        return (
            f"((EXTRACT(YEAR FROM {end}::date) * 4 + EXTRACT(QUARTER FROM {end}::date))"
            f" - (EXTRACT(YEAR FROM {start}::date) * 4 + EXTRACT(QUARTER FROM {start}::date)))::integer"
        )
    if code == "ww":
        return f"(({end}::date - {start}::date) / 7)"
    seconds = {"h": 3600, "n": 60, "s": 1}.get(code)
    if seconds:
        div = f" / {seconds}" if seconds > 1 else ""
        return f"(EXTRACT(EPOCH FROM {end}::timestamp - {start}::timestamp){div})::integer"
    return f"({end}::date - {start}::date)"


def _date_part(args: list[str]) -> str:
    part = DATE_PARTS.get(_interval_code(args[0]), "DAY")
    if part == "DOW":
        return f"(EXTRACT(DOW FROM {args[1]})::integer + 1)"
    return f"EXTRACT({part} FROM {args[1]})::integer"


def _format(args: list[str]) -> str:
    if len(args) < 2:
        return f"({args[0]})::text"
    fmt = unquote_literal(args[1])
    pattern = FORMAT_MAP.get(fmt.lower(), fmt).replace("'", "''")
    return f"to_char({args[0]}, '{pattern}')"


def _cast(pg_type: str) -> Callable[[list[str]], str]:
    return lambda args: f"({args[0]})::{pg_type}"


def _call(pg_name: str) -> Callable[[list[str]], str]:
    return lambda args: f"{pg_name}({', '.join(args)})"


def _extract(field: str) -> Callable[[list[str]], str]:
    return lambda args: f"EXTRACT({field} FROM {args[0]})::integer"


# name (lowercase, no $ suffix) -> (minimum argument count, transform)
FUNCTION_MAP: dict[str, tuple[int, Callable[[list[str]], str]]] = {
    # null handling / tests
    "nz": (1, lambda a: f"COALESCE({a[0]}, {a[1] if len(a) > 1 else chr(39) * 2})"),
    "isnull": (1, lambda a: f"({a[0]} IS NULL)"),
    "isempty": (1, lambda a: f"({a[0]} IS NULL)"),
    "isdate": (1, lambda a: f"({a[0]}::text ~ '^\\d{{4}}-\\d{{2}}-\\d{{2}}')"),
    "isnumeric": (1, lambda a: f"({a[0]}::text ~ '^-?[0-9]+(\\.[0-9]+)?$')"),
    # conditional
    "iif": (2, _case_when),
    "switch": (2, _switch),
    "choose": (2, _choose),
    # strings
    "len": (1, lambda a: f"LENGTH({a[0]})"),
    "mid": (2, _mid),
    "left": (2, _call("LEFT")),
    "right": (2, _call("RIGHT")),
    "trim": (1, _call("TRIM")),
    "ltrim": (1, _call("LTRIM")),
    "rtrim": (1, _call("RTRIM")),
    "instr": (2, _instr),
    "instrrev": (2, lambda a: f"(LENGTH({a[0]}) - POSITION(REVERSE({a[1]}) IN REVERSE({a[0]})) + 1)"),
    "ucase": (1, _call("UPPER")),
    "lcase": (1, _call("LOWER")),
    "replace": (3, lambda a: f"REPLACE({a[0]}, {a[1]}, {a[2]})"),
    "space": (1, lambda a: f"REPEAT(' ', {a[0]})"),
    "string": (2, lambda a: f"REPEAT({a[1]}, {a[0]})"),
    "strreverse": (1, _call("REVERSE")),
    "strconv": (2, _strconv),
    "asc": (1, _call("ASCII")),
    "chr": (1, _call("CHR")),
    "str": (1, _cast("text")),
    # conversion
    "cstr": (1, _cast("text")),
    "cint": (1, _cast("integer")),
    "clng": (1, _cast("bigint")),
    "cdbl": (1, _cast("double precision")),
    "csng": (1, _cast("real")),
    "cdec": (1, _cast("numeric")),
    "ccur": (1, _cast("numeric(19,4)")),
    "cbool": (1, _cast("boolean")),
    "cdate": (1, _cast("date")),
    "cvdate": (1, _cast("date")),
    "val": (1, _cast("numeric")),
    "datevalue": (1, _cast("date")),
    "timevalue": (1, _cast("time")),
    # dates
    "dateserial": (3, _call("make_date")),
    "timeserial": (3, _call("make_time")),
    "dateadd": (3, _date_add),
    "datediff": (3, _date_diff),
    "datepart": (2, _date_part),
    "year": (1, _extract("YEAR")),
    "month": (1, _extract("MONTH")),
    "day": (1, _extract("DAY")),
    "hour": (1, _extract("HOUR")),
    "minute": (1, _extract("MINUTE")),
    "second": (1, _extract("SECOND")),
    "weekday": (1, lambda a: f"(EXTRACT(DOW FROM {a[0]})::integer + 1)"),
    "monthname": (1, lambda a: f"to_char(make_date(2000, {a[0]}, 1), 'FMMonth')"),
    "weekdayname": (1, lambda a: f"to_char(make_date(2000, 1, {a[0]} + 1), 'FMDay')"),
    "format": (1, _format),
    # math
    "int": (1, _call("FLOOR")),
    "fix": (1, _call("TRUNC")),
    "abs": (1, _call("ABS")),
    "round": (1, _call("ROUND")),
    "sgn": (1, _call("SIGN")),
    "sqr": (1, _call("SQRT")),
    "log": (1, _call("LN")),
    "exp": (1, _call("EXP")),
    # aggregates; the DDL emitter creates first_agg/last_agg when used
    "first": (1, _call("first_agg")),
    "last": (1, _call("last_agg")),
}


def translate_call(name: str, args: list[str]) -> Optional[str]:
    """Translate one call, or None if *name* is not an Access built-in (or arity is short)."""
    entry = FUNCTION_MAP.get(name.lower().rstrip("$"))
    if entry is None:
        return None
    min_args, transform = entry
    if len(args) < min_args:
        log.debug("Leaving %s() with %d argument(s) untranslated", name, len(args))
        return None
    return transform(args)


def translate_access_functions(text: str, warnings: Optional[list[str]] = None) -> str:
    """Rewrite every Access built-in call in *text*, iterating to a fixed point."""
    for _ in range(MAX_ITERATIONS):
        rewritten = rewrite_calls(text, translate_call)
        if rewritten == text:
            return text
        text = rewritten
    msg = f"function translation did not settle after {MAX_ITERATIONS} passes"
    log.warning(msg)
    if warnings is not None:
        warnings.append(msg)
    return text
