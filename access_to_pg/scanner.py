"""
Delimiter-aware scanning for Access SQL and expression text.

Everything here walks the text once, left to right, treating three kinds of
region as opaque:

    '...'  and  "..."   string literals ('' / "" are escaped quotes)
    [...]               bracketed identifiers (no nesting in Access)
    (...)               balanced groups, parsed recursively

The translators use these helpers to extract call arguments and to restrict
regex rewrites to plain code, so a '&' or 'True' inside a literal or inside
[Field Name] is never touched.
"""
from __future__ import annotations

import re
from typing import Callable, Iterator, Optional

QUOTES = ("'", '"')

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\$?")


class _Unbalanced(Exception):
    pass


def _skip_string(text: str, i: int) -> int:
    """Index just past the literal starting at text[i]. Raises _Unbalanced if unterminated."""
    quote = text[i]
    n = len(text)
    i += 1
    while i < n:
        if text[i] == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    raise _Unbalanced


def _skip_bracket(text: str, i: int) -> int:
    end = text.find("]", i + 1)
    if end < 0:
        raise _Unbalanced
    return end + 1


def _skip_opaque(text: str, i: int) -> int:
    """Lenient skip: an unterminated literal or bracket runs to end of text."""
    try:
        if text[i] in QUOTES:
            return _skip_string(text, i)
        return _skip_bracket(text, i)
    except _Unbalanced:
        return len(text)


def _parse_group(text: str, i: int) -> int:
    """Consume a group body starting just after '('; return the index of its ')'."""
    n = len(text)
    while i < n:
        c = text[i]
        if c in QUOTES:
            i = _skip_string(text, i)
        elif c == "[":
            i = _skip_bracket(text, i)
        elif c == "(":
            i = _parse_group(text, i + 1) + 1
        elif c == ")":
            return i
        else:
            i += 1
    raise _Unbalanced


def find_closing_paren(text: str, open_pos: int) -> Optional[int]:
    """Return index of the ')' matching the '(' at open_pos, or None if unbalanced."""
    if open_pos < 0 or open_pos >= len(text) or text[open_pos] != "(":
        return None
    try:
        return _parse_group(text, open_pos + 1)
    except _Unbalanced:
        return None


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on *sep* at depth 0, outside literals and brackets. Parts are stripped."""
    parts: list[str] = []
    depth = 0
    start = 0
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c in QUOTES or c == "[":
            i = _skip_opaque(text, i)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        elif c == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
        i += 1
    parts.append(text[start:].strip())
    return parts


def split_on_concat(text: str) -> list[str]:
    """Split an Access string expression on its '&' concatenation operator."""
    return split_top_level(text, "&")


def has_unterminated_delimiter(text: str) -> bool:
    """True if *text* has an unterminated literal or bracket, or unbalanced parens."""
    depth = 0
    i = 0
    n = len(text)
    try:
        while i < n:
            c = text[i]
            if c in QUOTES:
                i = _skip_string(text, i)
                continue
            if c == "[":
                i = _skip_bracket(text, i)
                continue
            if c == "(":
                depth += 1
            elif c == ")":
                depth -= 1
                if depth < 0:
                    return True
            i += 1
    except _Unbalanced:
        return True
    return depth != 0


def segments(text: str, quotes: str = "'\"") -> Iterator[tuple[str, str]]:
    """Yield (kind, chunk) with kind in {"code", "string", "bracket"}; chunks concatenate to text.

    *quotes* lists the characters that open string literals. Once Access "..."
    literals have been rewritten, pass "'" so double-quoted identifiers stay code.
    """
    i = 0
    start = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c in quotes or c == "[":
            if i > start:
                yield "code", text[start:i]
            end = _skip_opaque(text, i)
            yield ("bracket" if c == "[" else "string"), text[i:end]
            i = start = end
            continue
        i += 1
    if start < n:
        yield "code", text[start:]


def sub_outside_strings(
    pattern: str,
    repl,
    text: str,
    flags: int = 0,
    include_brackets: bool = False,
    quotes: str = "'\"",
) -> str:
    """Run re.sub only on code outside string literals (and, by default, outside [brackets])."""
    compiled = re.compile(pattern, flags)
    out = []
    for kind, chunk in segments(text, quotes):
        if kind == "code" or (kind == "bracket" and include_brackets):
            chunk = compiled.sub(repl, chunk)
        out.append(chunk)
    return "".join(out)


def unquote_literal(token: str) -> str:
    """Content of a '...' or "..." literal with doubled quotes collapsed."""
    token = token.strip()
    if len(token) >= 2 and token[0] in QUOTES and token[-1] == token[0]:
        q = token[0]
        return token[1:-1].replace(q + q, q)
    return token


def is_literal(token: str) -> bool:
    """True if the whole (stripped) token is exactly one string literal."""
    token = token.strip()
    if not token or token[0] not in QUOTES:
        return False
    try:
        return _skip_string(token, 0) == len(token)
    except _Unbalanced:
        return False


def sql_literal(value: str) -> str:
    """Single-quoted PostgreSQL literal."""
    return "'" + value.replace("'", "''") + "'"


def rewrite_calls(text: str, handler: Callable[[str, list[str]], Optional[str]]) -> str:
    """Rewrite every NAME(args) call in one left-to-right sweep, innermost first.

    *handler(name, args)* receives the already-rewritten, top-level-split
    arguments and returns the replacement text, or None to keep the call as is.
    Qualified calls (schema.fn, Forms!x) and calls with unbalanced parens are
    left alone.
    """
    out: list[str] = []
    copy_from = 0
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c in QUOTES or c == "[":
            i = _skip_opaque(text, i)
            continue
        if not (c.isalpha() or c == "_"):
            i += 1
            continue
        m = _IDENT.match(text, i)
        name = m.group(0)
        j = m.end()
        prev = text[i - 1] if i > 0 else ""
        while j < n and text[j] in " \t":
            j += 1
        if j < n and text[j] == "(" and prev not in (".", "!", ":"):
            close = find_closing_paren(text, j)
            if close is not None:
                inner = rewrite_calls(text[j + 1:close], handler)
                args = split_top_level(inner) if inner.strip() else []
                replacement = handler(name, args)
                out.append(text[copy_from:i])
                if replacement is None:
                    out.append(text[i:j + 1] + inner + ")")
                else:
                    out.append(replacement)
                i = copy_from = close + 1
                continue
        i = m.end()
    out.append(text[copy_from:])
    return "".join(out)


def iter_bracket_refs(text: str, quotes: str = "'\"") -> Iterator[tuple[int, int, str]]:
    """Yield (start, end, inner) for each [bracket] outside string literals."""
    pos = 0
    for kind, chunk in segments(text, quotes):
        if kind == "bracket" and chunk.endswith("]"):
            yield pos, pos + len(chunk), chunk[1:-1]
        pos += len(chunk)
