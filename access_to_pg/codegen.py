"""
generate_code(intents): procedure intent trees -> Python event handlers.

Each procedure becomes `def <procedure>(app):` calling the runtime facade
(app.open_object, app.alert, app.set_control, ...). Every IntentType has
exactly one renderer; a missing one is an import-time error.

    mechanical  fixed template
    assisted    snippet from the assistant, or a PENDING marker without one
    gap         never rendered; a marker comment with the gap id, or the
                recorded decision when the gap has been resolved
"""
from __future__ import annotations

import keyword
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from access_to_pg.assistant import AUDIT_TAG
from access_to_pg.errors import AssistantError, AssistantUnavailable
from access_to_pg.intents import (
    IntentNode,
    IntentType,
    Procedure,
    default_gap_question,
)
from access_to_pg.normalizer import sanitize_name

log = logging.getLogger("access_to_pg.codegen")

INDENT = "    "


@dataclass
class CodeGenResult:
    rendered_source: str
    unresolved_gaps: list[dict] = field(default_factory=list)
    assisted: list[str] = field(default_factory=list)      # "<procedure>:<intent type>"
    pending_assisted: list[str] = field(default_factory=list)

    @property
    def ai_assisted(self) -> bool:
        return bool(self.assisted)

    def to_dict(self) -> dict:
        return {
            "rendered_source": self.rendered_source,
            "unresolved_gaps": self.unresolved_gaps,
            "ai_assisted": self.ai_assisted,
            "assisted": self.assisted,
            "pending_assisted": self.pending_assisted,
        }


@dataclass
class _Context:
    procedure: str
    gateway: object = None
    schema_context: str = ""
    result: CodeGenResult = field(default_factory=lambda: CodeGenResult(""))


def _one_line(value) -> str:
    return " ".join(str(value or "").split())


def _literal(value):
    """VBA value text -> Python literal (True/False/numbers/strings)."""
    if isinstance(value, str):
        v = value.strip()
        if v.lower() in ("true", "false"):
            return v.lower() == "true"
        try:
            return int(v)
        except ValueError:
            pass
    return value


def _py_name(name, default: str) -> str:
    """Access name -> Python identifier; digit-leading names and keywords get a prefix."""
    var = sanitize_name(str(name or "")) or default
    if not var.isidentifier() or keyword.iskeyword(var):
        var = f"{default}_{var}"
    return var


def _indent(lines: list[str]) -> list[str]:
    return [INDENT + line if line else line for line in lines]


def _block(lines: list[str]) -> list[str]:
    """Indented block that is never syntactically empty."""
    if not any(line.strip() and not line.strip().startswith("#") for line in lines):
        lines = lines + ["pass"]
    return _indent(lines)


def render_nodes(nodes: Iterable[IntentNode], ctx: _Context) -> list[str]:
    lines: list[str] = []
    for node in nodes:
        lines.extend(RENDERERS[node.type](node, ctx))
    return lines


# ---- Mechanical ----

def _open_form(node, ctx):
    return [f'app.open_object("form", {node.get("form")!r})']


def _open_form_filtered(node, ctx):
    return [f'app.open_object("form", {node.get("form")!r}, filter={node.get("filter")!r})']


def _open_report(node, ctx):
    return [f'app.open_object("report", {node.get("report")!r})']


def _close_form(node, ctx):
    return [f'app.close_object("form", {node.get("form")!r})']


def _close_current(node, ctx):
    return ['app.close_object("current", None)']


def _goto_record(node, ctx):
    position = str(node.get("position") or "next").lower()
    if position.startswith("ac"):
        position = position[2:]             # acNext -> next
    return [f"app.navigate({position!r})"]


def _new_record(node, ctx):
    return ['app.navigate("new")']


def _requery(node, ctx):
    return ["app.requery()"]


def _save_record(node, ctx):
    return ["app.save_record()"]


def _delete_record(node, ctx):
    return ["app.delete_record()"]


def _validate_required(node, ctx):
    return [
        f'if app.field({node.get("field")!r}) in (None, ""):',
        f'{INDENT}app.alert({node.get("message")!r})',
        f"{INDENT}return",
    ]


def _validate_condition(node, ctx):
    return [
        f'if app.evaluate({node.get("condition")!r}):',
        f'{INDENT}app.alert({node.get("message")!r})',
        f"{INDENT}return",
    ]


def _show_message(node, ctx):
    return [f'app.alert({node.get("message")!r})']


def _set_control_visible(node, ctx):
    return [f'app.set_control({node.get("control")!r}, visible={_literal(node.get("value", False))!r})']


def _set_control_enabled(node, ctx):
    return [f'app.set_control({node.get("control")!r}, enabled={_literal(node.get("value", False))!r})']


def _set_control_value(node, ctx):
    return [f'app.set_control({node.get("control")!r}, value={_literal(node.get("value"))!r})']


def _set_filter(node, ctx):
    return [f'app.set_form(filter={node.get("filter")!r}, filter_on=True)']


def _set_record_source(node, ctx):
    return [f'app.set_form(record_source={node.get("record_source")!r})']


def _read_field(node, ctx):
    var = _py_name(node.get("field"), "value")
    return [f'{var} = app.field({node.get("field")!r})']


def _write_field(node, ctx):
    return [f'app.set_field({node.get("field")!r}, {_literal(node.get("value"))!r})']


def _set_tempvar(node, ctx):
    return [f'app.set_session_var({node.get("name")!r}, {_literal(node.get("value"))!r})']


# ---- Structural ----

def _branch(node, ctx):
    lines = [f'if app.evaluate({node.get("condition")!r}):']
    lines += _block(render_nodes(node.then, ctx))
    if node.else_:
        lines.append("else:")
        lines += _block(render_nodes(node.else_, ctx))
    return lines


def _confirm_action(node, ctx):
    lines = [f'if app.confirm({node.get("message")!r}):']
    lines += _block(render_nodes(node.then, ctx))
    if node.else_:
        lines.append("else:")
        lines += _block(render_nodes(node.else_, ctx))
    return lines


def _loop(node, ctx):
    description = node.get("description") or node.get("vba_line") or "loop"
    lines = [f"for _item in app.iterate({_one_line(description)!r}):"]
    lines += _block(render_nodes(node.children, ctx))
    return lines


def _error_handler(node, ctx):
    label = node.get("label") or ctx.procedure
    lines = ["try:"]
    lines += _block(render_nodes(node.children, ctx))
    lines.append("except Exception as exc:")
    lines.append(f"{INDENT}app.log_error(str(exc), {label!r})")
    return lines


# ---- Assisted ----

def _assisted(node, ctx):
    tag = f"{ctx.procedure}:{node.type.value}"
    detail = _one_line(node.get("vba_line") or node.get("sql") or node.get("table") or "")
    gateway = ctx.gateway
    if gateway is not None and getattr(gateway, "available", False):
        try:
            snippet = gateway.generate_snippet(node.to_dict(), ctx.procedure, ctx.schema_context)
        except AssistantUnavailable as e:
            log.warning("  %s: assistant unavailable (%s)", tag, e)
        except AssistantError as e:
            log.error("  %s: snippet generation failed: %s", tag, e)
        else:
            ctx.result.assisted.append(tag)
            return [f"# {AUDIT_TAG}: {node.type.value} {detail}".rstrip()] + snippet.splitlines()
    ctx.result.pending_assisted.append(tag)
    return [f"# PENDING {node.type.value}: {detail}".rstrip()]


# ---- Gaps ----

def _gap(node, ctx):
    if node.resolution:
        lines = [f"# RESOLVED {node.gap_id}: {_one_line(node.resolution.get('answer'))}"]
        notes = _one_line(node.resolution.get("custom_notes"))
        if notes:
            lines.append(f"# {notes}")
        return lines
    question, _ = default_gap_question(node)
    ctx.result.unresolved_gaps.append({
        "gap_id": node.gap_id,
        "type": node.type_name,
        "question": node.get("question") or question,
    })
    return [f"# UNRESOLVED {node.gap_id}: {_one_line(node.get('vba_line') or node.get('reason'))}"]


RENDERERS: dict[IntentType, Callable[[IntentNode, _Context], list[str]]] = {
    IntentType.OPEN_FORM: _open_form,
    IntentType.OPEN_FORM_FILTERED: _open_form_filtered,
    IntentType.OPEN_REPORT: _open_report,
    IntentType.CLOSE_FORM: _close_form,
    IntentType.CLOSE_CURRENT: _close_current,
    IntentType.GOTO_RECORD: _goto_record,
    IntentType.NEW_RECORD: _new_record,
    IntentType.REQUERY: _requery,
    IntentType.SAVE_RECORD: _save_record,
    IntentType.DELETE_RECORD: _delete_record,
    IntentType.VALIDATE_REQUIRED: _validate_required,
    IntentType.VALIDATE_CONDITION: _validate_condition,
    IntentType.SHOW_MESSAGE: _show_message,
    IntentType.CONFIRM_ACTION: _confirm_action,
    IntentType.SET_CONTROL_VISIBLE: _set_control_visible,
    IntentType.SET_CONTROL_ENABLED: _set_control_enabled,
    IntentType.SET_CONTROL_VALUE: _set_control_value,
    IntentType.SET_FILTER: _set_filter,
    IntentType.SET_RECORD_SOURCE: _set_record_source,
    IntentType.READ_FIELD: _read_field,
    IntentType.WRITE_FIELD: _write_field,
    IntentType.SET_TEMPVAR: _set_tempvar,
    IntentType.DLOOKUP: _assisted,
    IntentType.DCOUNT: _assisted,
    IntentType.DSUM: _assisted,
    IntentType.RUN_SQL: _assisted,
    IntentType.BRANCH: _branch,
    IntentType.LOOP: _loop,
    IntentType.ERROR_HANDLER: _error_handler,
    IntentType.GAP: _gap,
}

_missing = set(IntentType) - set(RENDERERS)
if _missing:
    raise RuntimeError(f"no renderer for intent type(s): {sorted(t.value for t in _missing)}")


def render_procedure(proc: Procedure, ctx: _Context) -> list[str]:
    lines = [f"def {_py_name(proc.name, 'handler')}(app):"]
    if proc.trigger:
        lines.append(f'{INDENT}"""{_one_line(proc.trigger)} handler for {_one_line(proc.name)}."""')
    lines += _block(render_nodes(proc.intents, ctx))
    return lines


def generate_code(
    procedures: Iterable[Procedure],
    gateway=None,
    context: str = "",
    module_name: Optional[str] = None,
) -> CodeGenResult:
    """Render every procedure; gaps are reported, never guessed."""
    result = CodeGenResult("")
    out = [f'"""Event handlers for {module_name}."""' if module_name else '"""Event handlers."""', ""]
    for proc in procedures:
        ctx = _Context(proc.name, gateway, context, result)
        out.append("")
        out.extend(render_procedure(proc, ctx))
        out.append("")
    result.rendered_source = "\n".join(out).rstrip() + "\n"
    log.info("Generated %d handler line(s): %d assisted, %d pending, %d unresolved gap(s)",
             len(out), len(result.assisted), len(result.pending_assisted), len(result.unresolved_gaps))
    return result
