"""
Resolve references to other screens' controls and to session variables.

Access queries and computed controls read UI state directly:

    Forms![Order Entry]![CustomerID]     another form's control
    Form![Total] / Me!Total / Parent!X   the owning (or parent) form's control
    TempVars![CurrentUser]               a session variable

In PostgreSQL that state lives in shared.form_control_state, one row per
(session_id, table_name, column_name). Each reference becomes a scalar
subquery against that table filtered by the caller's app.session_id, so
concurrent sessions never see each other's values.

Resolution is read-only with respect to the bindings and idempotent: the
emitted subquery contains none of the patterns matched here.
"""
from __future__ import annotations

import logging
import re
from typing import Callable, Optional

from access_to_pg.catalog import ControlBinding, ControlBindings
from access_to_pg.normalizer import sanitize_name
from access_to_pg.scanner import segments, sql_literal

log = logging.getLogger("access_to_pg.references")

STATE_TABLE = "shared.form_control_state"
TEMPVARS_TABLE = "_tempvars"

_NAME = r"(?:\[([^\]]+)\]|(\w+))"
_QUOTED = r"[\"']([^\"']+)[\"']"

_TEMPVARS_BANG = re.compile(r"(?<![\w.])\[?TempVars\]?\s*!\s*" + _NAME, re.IGNORECASE)
_TEMPVARS_CALL = re.compile(
    r"(?<![\w.])TempVars\s*(?:\.\s*Item\s*)?\(\s*" + _QUOTED + r"\s*\)", re.IGNORECASE
)
_FORMS_BANG = re.compile(
    r"(?<![\w.])\[?Forms\]?\s*!\s*" + _NAME + r"\s*[!.]\s*" + _NAME + r"(?:\s*\.\s*Value\b)?",
    re.IGNORECASE,
)
_FORMS_CALL = re.compile(
    r"(?<![\w.])Forms\s*\(\s*" + _QUOTED + r"\s*\)\s*(?:\.\s*Controls\s*)?\(\s*" + _QUOTED + r"\s*\)",
    re.IGNORECASE,
)
_SELF_BANG = re.compile(r"(?<![\w.])\[?(Form|Me|Parent)\]?\s*!\s*" + _NAME, re.IGNORECASE)
_ME_DOT = re.compile(r"(?<![\w.])Me\s*\.\s*(\w+)", re.IGNORECASE)


def state_subquery(table: str, column: str) -> str:
    """Scalar subquery reading one bound value for the current session."""
    return (
        f"(SELECT value FROM {STATE_TABLE}"
        " WHERE session_id = current_setting('app.session_id', true)"
        f" AND table_name = {sql_literal(table)} AND column_name = {sql_literal(column)})"
    )


def _literal_spans(text: str) -> list[tuple[int, int]]:
    spans = []
    pos = 0
    for kind, chunk in segments(text):
        if kind == "string":
            spans.append((pos, pos + len(chunk)))
        pos += len(chunk)
    return spans


def _sub_code(pattern: re.Pattern, repl: Callable[[re.Match], str], text: str) -> str:
    """pattern.sub restricted to matches that start outside string literals."""
    spans = _literal_spans(text)

    def guarded(m: re.Match) -> str:
        if any(s <= m.start() < e for s, e in spans):
            return m.group(0)
        return repl(m)

    return pattern.sub(guarded, text)


def _name(m: re.Match, bracket_group: int) -> str:
    return m.group(bracket_group) or m.group(bracket_group + 1)


class ReferenceResolver:
    """Rewrites form/session references for one translation unit.

    *owner* is the form or report the unit belongs to (computed controls);
    it keys self references and is the fallback scope for Forms! lookups.
    After resolve(), *referenced* lists (table, column) state entries in
    first-seen order and *warnings* explains every fallback taken.
    """

    def __init__(self, bindings: Optional[ControlBindings] = None, owner: Optional[str] = None):
        self.bindings = bindings or ControlBindings()
        self.owner = owner
        self.referenced: list[tuple[str, str]] = []
        self.warnings: list[str] = []

    def _use(self, table: str, column: str) -> str:
        entry = (table, column)
        if entry not in self.referenced:
            self.referenced.append(entry)
        return state_subquery(table, column)

    def _bound(self, scope: Optional[str], control: str) -> Optional[ControlBinding]:
        b = self.bindings.lookup(scope, control)
        if b is None and self.owner:
            b = self.bindings.lookup(self.owner, control)
        if b is None:
            candidates = self.bindings.for_control(control)
            if len(candidates) == 1:
                b = candidates[0]
        return b

    def form_control(self, scope: Optional[str], control: str, label: str) -> str:
        b = self._bound(scope, control)
        if b is not None:
            return self._use(sanitize_name(b.table), sanitize_name(b.column))
        if scope:
            self.warnings.append(
                f"no control binding for {label}; reading state for {sanitize_name(scope)}.{sanitize_name(control)}"
            )
            return self._use(sanitize_name(scope), sanitize_name(control))
        self.warnings.append(f"unresolved control reference {label}")
        log.warning("Unresolved control reference %s", label)
        return f"NULL /* UNRESOLVED control reference: {sanitize_name(control)} */"

    def tempvar(self, name: str) -> str:
        return self._use(TEMPVARS_TABLE, sanitize_name(name))

    def resolve(self, text: str) -> str:
        text = _sub_code(_TEMPVARS_CALL, lambda m: self.tempvar(m.group(1)), text)
        text = _sub_code(_TEMPVARS_BANG, lambda m: self.tempvar(_name(m, 1)), text)
        text = _sub_code(
            _FORMS_CALL,
            lambda m: self.form_control(m.group(1), m.group(2), f"Forms({m.group(1)})({m.group(2)})"),
            text,
        )
        text = _sub_code(
            _FORMS_BANG,
            lambda m: self.form_control(_name(m, 1), _name(m, 3), f"Forms!{_name(m, 1)}!{_name(m, 3)}"),
            text,
        )
        text = _sub_code(_SELF_BANG, self._self_ref, text)
        if self.owner:
            text = _sub_code(_ME_DOT, lambda m: self.form_control(self.owner, m.group(1), f"Me.{m.group(1)}"), text)
        return text

    def _self_ref(self, m: re.Match) -> str:
        keyword = m.group(1).lower()
        control = _name(m, 2)
        label = f"{m.group(1)}!{control}"
        if keyword == "parent":
            # The parent form is not known here; only an unambiguous binding helps.
            b = self.bindings.for_control(control)
            if len(b) == 1:
                return self._use(sanitize_name(b[0].table), sanitize_name(b[0].column))
            self.warnings.append(f"unresolved control reference {label}")
            return f"NULL /* UNRESOLVED control reference: {sanitize_name(control)} */"
        if keyword == "me" and not self.owner:
            return m.group(0)
        return self.form_control(self.owner, control, label)

