"""
Procedure intents: the closed vocabulary, the intent tree and its classification.

An intent tree is built from the JSON the extractor returns. Every node type
is an IntentType member; anything else becomes a gap node that keeps the
name it arrived with. Classification is a pure function of the tree:

    leaf            fixed lookup in STATIC_CLASSIFICATION
    structural      worst classification among then/else/children
                    (an empty child list is mechanical)

Nodes are frozen. Assigning gap ids or attaching a gap resolution returns a
rebuilt tree, so a procedure loaded from disk is never half-updated.
"""
from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional

log = logging.getLogger("access_to_pg.intents")


class IntentType(str, Enum):
    OPEN_FORM = "open-form"
    OPEN_FORM_FILTERED = "open-form-filtered"
    OPEN_REPORT = "open-report"
    CLOSE_FORM = "close-form"
    CLOSE_CURRENT = "close-current"
    GOTO_RECORD = "goto-record"
    NEW_RECORD = "new-record"
    REQUERY = "requery"
    SAVE_RECORD = "save-record"
    DELETE_RECORD = "delete-record"
    VALIDATE_REQUIRED = "validate-required"
    VALIDATE_CONDITION = "validate-condition"
    SHOW_MESSAGE = "show-message"
    CONFIRM_ACTION = "confirm-action"
    SET_CONTROL_VISIBLE = "set-control-visible"
    SET_CONTROL_ENABLED = "set-control-enabled"
    SET_CONTROL_VALUE = "set-control-value"
    SET_FILTER = "set-filter"
    SET_RECORD_SOURCE = "set-record-source"
    READ_FIELD = "read-field"
    WRITE_FIELD = "write-field"
    SET_TEMPVAR = "set-tempvar"
    DLOOKUP = "dlookup"
    DCOUNT = "dcount"
    DSUM = "dsum"
    RUN_SQL = "run-sql"
    BRANCH = "branch"
    LOOP = "loop"
    ERROR_HANDLER = "error-handler"
    GAP = "gap"


class Classification(str, Enum):
    MECHANICAL = "mechanical"
    ASSISTED = "assisted"
    GAP = "gap"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {Classification.MECHANICAL: 0, Classification.ASSISTED: 1, Classification.GAP: 2}


# Shown to the extraction assistant, one line per type.
VOCABULARY: dict[IntentType, str] = {
    IntentType.OPEN_FORM: 'DoCmd.OpenForm "X" -> {"form"}',
    IntentType.OPEN_FORM_FILTERED: 'DoCmd.OpenForm "X", , , "filter" -> {"form", "filter"}',
    IntentType.OPEN_REPORT: 'DoCmd.OpenReport "X" -> {"report"}',
    IntentType.CLOSE_FORM: 'DoCmd.Close acForm, "X" -> {"form"}',
    IntentType.CLOSE_CURRENT: "DoCmd.Close with no arguments",
    IntentType.GOTO_RECORD: 'DoCmd.GoToRecord , , acNext/acPrevious/acFirst/acLast -> {"position"}',
    IntentType.NEW_RECORD: "DoCmd.GoToRecord , , acNewRec",
    IntentType.REQUERY: "Me.Requery",
    IntentType.SAVE_RECORD: "DoCmd.RunCommand acCmdSaveRecord",
    IntentType.DELETE_RECORD: "DoCmd.RunCommand acCmdDeleteRecord",
    IntentType.VALIDATE_REQUIRED: 'If IsNull(Me.Field) Then MsgBox ... Exit Sub -> {"field", "message"}',
    IntentType.VALIDATE_CONDITION: 'If condition Then MsgBox ... Exit Sub -> {"condition", "message"}',
    IntentType.SHOW_MESSAGE: 'MsgBox "Info" -> {"message"}',
    IntentType.CONFIRM_ACTION: 'If MsgBox(..., vbYesNo) = vbYes -> {"message", "then", "else"}',
    IntentType.SET_CONTROL_VISIBLE: 'Me.Control.Visible = False -> {"control", "value"}',
    IntentType.SET_CONTROL_ENABLED: 'Me.Control.Enabled = False -> {"control", "value"}',
    IntentType.SET_CONTROL_VALUE: 'Me.Control = value -> {"control", "value"}',
    IntentType.SET_FILTER: 'Me.Filter = "..." / Me.FilterOn -> {"filter"}',
    IntentType.SET_RECORD_SOURCE: 'Me.RecordSource = "..." -> {"record_source"}',
    IntentType.READ_FIELD: 'Me.txtField / Me!FieldName -> {"field"}',
    IntentType.WRITE_FIELD: 'Me.txtField = value -> {"field", "value"}',
    IntentType.SET_TEMPVAR: 'TempVars!VarName = value -> {"name", "value"}',
    IntentType.DLOOKUP: 'DLookup(...) -> {"field", "table", "criteria"}',
    IntentType.DCOUNT: 'DCount(...) -> {"field", "table", "criteria"}',
    IntentType.DSUM: 'DSum(...) -> {"field", "table", "criteria"}',
    IntentType.RUN_SQL: 'DoCmd.RunSQL / CurrentDb.Execute -> {"sql"}',
    IntentType.BRANCH: 'If/ElseIf/Else -> {"condition", "then", "else"}',
    IntentType.LOOP: 'For/Do While -> {"description", "children"}',
    IntentType.ERROR_HANDLER: 'On Error GoTo/Resume -> {"label", "children"}',
    IntentType.GAP: 'Unmappable pattern -> {"vba_line", "reason"}',
}

STRUCTURAL = frozenset({
    IntentType.BRANCH,
    IntentType.LOOP,
    IntentType.ERROR_HANDLER,
    IntentType.CONFIRM_ACTION,
})

STATIC_CLASSIFICATION: dict[IntentType, Classification] = {
    **{t: Classification.MECHANICAL for t in (
        IntentType.OPEN_FORM, IntentType.OPEN_FORM_FILTERED, IntentType.OPEN_REPORT,
        IntentType.CLOSE_FORM, IntentType.CLOSE_CURRENT,
        IntentType.GOTO_RECORD, IntentType.NEW_RECORD,
        IntentType.REQUERY, IntentType.SAVE_RECORD, IntentType.DELETE_RECORD,
        IntentType.VALIDATE_REQUIRED, IntentType.VALIDATE_CONDITION,
        IntentType.SHOW_MESSAGE,
        IntentType.SET_CONTROL_VISIBLE, IntentType.SET_CONTROL_ENABLED, IntentType.SET_CONTROL_VALUE,
        IntentType.SET_FILTER, IntentType.SET_RECORD_SOURCE,
        IntentType.READ_FIELD, IntentType.WRITE_FIELD, IntentType.SET_TEMPVAR,
    )},
    **{t: Classification.ASSISTED for t in (
        IntentType.DLOOKUP, IntentType.DCOUNT, IntentType.DSUM, IntentType.RUN_SQL,
    )},
    IntentType.GAP: Classification.GAP,
}

_unclassified = set(IntentType) - set(STATIC_CLASSIFICATION) - STRUCTURAL
if _unclassified or STRUCTURAL & set(STATIC_CLASSIFICATION):
    raise RuntimeError(f"intent types without exactly one classification rule: {sorted(_unclassified)}")
if set(VOCABULARY) != set(IntentType):
    raise RuntimeError("VOCABULARY must describe every IntentType")

# Keys of the raw JSON that are tree structure or derived, not attributes.
_TREE_KEYS = frozenset({"type", "then", "else", "children", "classification", "gap_id",
                        "resolution", "source_type", "mapping", "warning"})

DEFAULT_GAP_SUGGESTIONS = ("Implement equivalent functionality", "Skip this functionality")


# -----------------------------------------------------------------------------
# Tree
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class IntentNode:
    type: IntentType
    attrs: dict = field(default_factory=dict)
    then: tuple["IntentNode", ...] = ()
    else_: tuple["IntentNode", ...] = ()
    children: tuple["IntentNode", ...] = ()
    classification: Classification = Classification.MECHANICAL
    gap_id: Optional[str] = None
    source_type: Optional[str] = None       # original type name of an unknown intent
    resolution: Optional[dict] = None

    @property
    def is_structural(self) -> bool:
        return self.type in STRUCTURAL

    @property
    def child_lists(self) -> tuple[tuple["IntentNode", ...], ...]:
        return self.then, self.else_, self.children

    @property
    def all_children(self) -> tuple["IntentNode", ...]:
        return self.then + self.else_ + self.children

    @property
    def type_name(self) -> str:
        return self.source_type or self.type.value

    def get(self, key: str, default=None):
        return self.attrs.get(key, default)

    def to_dict(self) -> dict:
        d = {"type": self.type.value}
        d.update(self.attrs)
        if self.source_type:
            d["source_type"] = self.source_type
        if self.then:
            d["then"] = [n.to_dict() for n in self.then]
        if self.else_:
            d["else"] = [n.to_dict() for n in self.else_]
        if self.children:
            d["children"] = [n.to_dict() for n in self.children]
        d["classification"] = self.classification.value
        if self.gap_id is not None:
            d["gap_id"] = self.gap_id
        if self.resolution is not None:
            d["resolution"] = dict(self.resolution)
        return d


def classify(node: IntentNode) -> Classification:
    """Classification of *node* from its type and, for structural nodes, its subtree."""
    if node.type in STRUCTURAL:
        worst = Classification.MECHANICAL
        for child in node.all_children:
            c = classify(child)
            if c.rank > worst.rank:
                worst = c
        return worst
    return STATIC_CLASSIFICATION[node.type]


def build_node(raw: dict) -> IntentNode:
    """Raw intent JSON -> classified IntentNode (unknown types become gaps)."""
    if not isinstance(raw, dict):
        return IntentNode(IntentType.GAP, {"reason": f"Malformed intent: {raw!r}"},
                          classification=Classification.GAP)
    attrs = {k: v for k, v in raw.items() if k not in _TREE_KEYS}
    type_name = raw.get("type")
    source_type = raw.get("source_type")
    try:
        itype = IntentType(type_name)
    except ValueError:
        itype = IntentType.GAP
        source_type = type_name or "(missing)"
        attrs.setdefault("reason", f"Unknown intent type: {source_type}")

    then = else_ = children = ()
    if itype in STRUCTURAL:
        then = tuple(build_node(n) for n in raw.get("then") or [])
        else_ = tuple(build_node(n) for n in raw.get("else") or [])
        children = tuple(build_node(n) for n in raw.get("children") or [])

    node = IntentNode(
        type=itype,
        attrs=attrs,
        then=then,
        else_=else_,
        children=children,
        gap_id=raw.get("gap_id") if itype is IntentType.GAP else None,
        source_type=source_type,
        resolution=raw.get("resolution"),
    )
    return replace(node, classification=classify(node))


def walk(nodes: Iterable[IntentNode]) -> Iterator[IntentNode]:
    """Depth-first, document order: node, then its then/else/children lists."""
    for node in nodes:
        yield node
        for lst in node.child_lists:
            yield from walk(lst)


def map_tree(nodes: Iterable[IntentNode], fn: Callable[[IntentNode], IntentNode]) -> tuple[IntentNode, ...]:
    """Rebuild a tree bottom-up, applying *fn* to every node in document order."""
    out = []
    for node in nodes:
        node = fn(node)
        if node.then or node.else_ or node.children:
            node = replace(
                node,
                then=map_tree(node.then, fn),
                else_=map_tree(node.else_, fn),
                children=map_tree(node.children, fn),
            )
        out.append(node)
    return tuple(out)


def assign_gap_ids(procedure: str, nodes: Iterable[IntentNode]) -> tuple[IntentNode, ...]:
    """Number unnumbered gap leaves '<procedure>:<n>' in depth-first order.

    Gaps that already carry an id (loaded from a saved tree) keep it; new
    numbers skip ids already in use.
    """
    nodes = tuple(nodes)
    taken = {n.gap_id for n in walk(nodes) if n.type is IntentType.GAP and n.gap_id}
    counter = itertools.count()

    def number(node: IntentNode) -> IntentNode:
        if node.type is not IntentType.GAP or node.gap_id:
            return node
        gap_id = f"{procedure}:{next(counter)}"
        while gap_id in taken:
            gap_id = f"{procedure}:{next(counter)}"
        taken.add(gap_id)
        return replace(node, gap_id=gap_id)

    return map_tree(nodes, number)


# -----------------------------------------------------------------------------
# Procedures
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Procedure:
    name: str
    trigger: Optional[str] = None
    intents: tuple[IntentNode, ...] = ()

    @property
    def stats(self) -> dict:
        counts = {c.value: 0 for c in Classification}
        for node in walk(self.intents):
            counts[node.classification.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    @property
    def classification(self) -> Classification:
        worst = Classification.MECHANICAL
        for node in self.intents:
            if node.classification.rank > worst.rank:
                worst = node.classification
        return worst

    def gaps(self) -> list[IntentNode]:
        return [n for n in walk(self.intents) if n.type is IntentType.GAP]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "trigger": self.trigger,
            "intents": [n.to_dict() for n in self.intents],
            "stats": self.stats,
        }


def build_procedure(raw: dict) -> Procedure:
    name = raw.get("name") or "(unnamed)"
    nodes = tuple(build_node(n) for n in raw.get("intents") or [])
    return Procedure(name, raw.get("trigger") or None, assign_gap_ids(name, nodes))


@dataclass
class ModuleIntents:
    """Every procedure of one module, plus gaps the extractor reported outside any procedure."""
    module_name: str
    procedures: list[Procedure] = field(default_factory=list)
    module_gaps: list[dict] = field(default_factory=list)
    validation: dict = field(default_factory=dict)
    assisted: bool = False

    @classmethod
    def from_dict(cls, data: dict, module_name: Optional[str] = None) -> "ModuleIntents":
        return cls(
            module_name=module_name or data.get("module") or "(module)",
            procedures=[build_procedure(p) for p in data.get("procedures") or [] if isinstance(p, dict)],
            module_gaps=[g for g in data.get("gaps") or [] if isinstance(g, dict)],
            validation=data.get("validation") or validate_intents(data),
            assisted=bool(data.get("assisted")),
        )

    def to_dict(self) -> dict:
        return {
            "module": self.module_name,
            "procedures": [p.to_dict() for p in self.procedures],
            "gaps": list(self.module_gaps),
            "validation": self.validation,
            "assisted": self.assisted,
        }

    @property
    def stats(self) -> dict:
        total = {c.value: 0 for c in Classification}
        for proc in self.procedures:
            for k in total:
                total[k] += proc.stats[k]
        total["total"] = sum(total.values())
        return total


def validate_intents(result) -> dict:
    """Structural check of raw extraction JSON -> {valid, unknown, warnings}."""
    if not isinstance(result, dict):
        return {"valid": False, "unknown": [], "warnings": ["Result is not an object"]}
    if not isinstance(result.get("procedures"), list):
        return {"valid": False, "unknown": [], "warnings": ["Missing procedures array"]}

    known = {t.value for t in IntentType}
    unknown: list[str] = []
    warnings: list[str] = []

    def check(intents: list, proc: str) -> None:
        for intent in intents:
            if not isinstance(intent, dict) or not intent.get("type"):
                warnings.append(f'Intent in "{proc}" missing type')
                continue
            if intent["type"] not in known and intent["type"] not in unknown:
                unknown.append(intent["type"])
            for key in ("then", "else", "children"):
                if isinstance(intent.get(key), list):
                    check(intent[key], proc)

    for proc in result["procedures"]:
        if not isinstance(proc, dict):
            warnings.append("Procedure is not an object")
            continue
        if not proc.get("name"):
            warnings.append("Procedure missing name")
        if not isinstance(proc.get("intents"), list):
            warnings.append(f'Procedure "{proc.get("name") or "?"}" missing intents array')
            continue
        check(proc["intents"], proc.get("name") or "?")
    if "gaps" in result and not isinstance(result["gaps"], list):
        warnings.append("gaps should be an array")

    return {"valid": not warnings and not unknown, "unknown": unknown, "warnings": warnings}


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------

def save_intents(modules: Iterable[ModuleIntents], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"modules": [m.to_dict() for m in modules]}, f, indent=2)
        f.write("\n")


def load_intents(path: str) -> list[ModuleIntents]:
    """Reload saved trees; gap ids and resolutions come back exactly as stored."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict) and "modules" not in data:
        data = {"modules": [data]}
    return [ModuleIntents.from_dict(m) for m in data.get("modules") or []]


# -----------------------------------------------------------------------------
# Gaps
# -----------------------------------------------------------------------------

def default_gap_question(node: IntentNode) -> tuple[str, list[str]]:
    line = node.get("vba_line") or node.get("reason") or node.type_name
    return (f'This procedure does: "{line}". How should this work in the new app?',
            list(DEFAULT_GAP_SUGGESTIONS))


def collect_gaps(procedures: Iterable[Procedure], include_resolved: bool = False) -> list[dict]:
    gaps = []
    for proc in procedures:
        for node in proc.gaps():
            if node.resolution and not include_resolved:
                continue
            question, suggestions = default_gap_question(node)
            gaps.append({
                "gap_id": node.gap_id,
                "procedure": proc.name,
                "type": node.type_name,
                "vba_line": node.get("vba_line"),
                "reason": node.get("reason"),
                "question": node.get("question") or question,
                "suggestions": node.get("suggestions") or suggestions,
                "resolved": node.resolution is not None,
            })
    return gaps


def apply_gap_questions(procedures: list[Procedure], questions: dict[str, dict]) -> list[Procedure]:
    """Attach refined {question, suggestions} by gap id."""
    def attach(node: IntentNode) -> IntentNode:
        q = questions.get(node.gap_id or "")
        if node.type is not IntentType.GAP or not q:
            return node
        attrs = dict(node.attrs)
        if q.get("question"):
            attrs["question"] = q["question"]
        if q.get("suggestions"):
            attrs["suggestions"] = list(q["suggestions"])
        return replace(node, attrs=attrs)

    return [replace(p, intents=map_tree(p.intents, attach)) for p in procedures]


def resolve_gap(procedures: list[Procedure], gap_id: str, answer: str, notes: str = "") -> list[Procedure]:
    """Attach a decision to the one gap node with *gap_id*; KeyError if there is none."""
    found = []

    def attach(node: IntentNode) -> IntentNode:
        if node.type is IntentType.GAP and node.gap_id == gap_id:
            found.append(node)
            return replace(node, resolution={"answer": answer, "custom_notes": notes})
        return node

    out = [replace(p, intents=map_tree(p.intents, attach)) for p in procedures]
    if not found:
        raise KeyError(gap_id)
    log.info("Resolved gap %s", gap_id)
    return out


_DOMAIN_MENTION = re.compile(r"\b(?:dlookup|dcount|dsum)\b", re.IGNORECASE)
_OPENFORM_MENTION = re.compile(r"\bopenform\b", re.IGNORECASE)
_RUNSQL_MENTION = re.compile(r"\brunsql\b", re.IGNORECASE)
_QUOTED_NAME = re.compile(r"[\"'](\w[\w ]*?)[\"']")
_SQL_TARGET = re.compile(r"(?:INSERT\s+INTO|UPDATE|DELETE\s+FROM)\s+[\[\"']?(\w[\w ]*?)[\]\"']?\s", re.IGNORECASE)


def _auto_resolution(node: IntentNode, graph) -> Optional[dict]:
    line = node.get("vba_line") or ""
    mention = f"{node.get('reason') or ''} {line}"

    def table_exists(name: str) -> bool:
        return graph.object_exists("table", name) or graph.object_exists("query", name)

    if _DOMAIN_MENTION.search(mention):
        for m in _QUOTED_NAME.finditer(line):
            if table_exists(m.group(1)):
                return {"answer": f"Look up the value in {m.group(1)} with app.lookup",
                        "custom_notes": "Auto-resolved: table exists in database"}
    if _OPENFORM_MENTION.search(mention):
        m = _QUOTED_NAME.search(line)
        if m and graph.object_exists("form", m.group(1)):
            return {"answer": f"Open form {m.group(1)} with app.open_object",
                    "custom_notes": "Auto-resolved: form exists in database"}
    if _RUNSQL_MENTION.search(mention):
        m = _SQL_TARGET.search(line + " ")
        if m and table_exists(m.group(1)):
            return {"answer": f"Run the statement against {m.group(1)} with app.execute",
                    "custom_notes": "Auto-resolved: table exists in database"}
    return None


def auto_resolve_gaps(procedures: list[Procedure], graph) -> tuple[list[Procedure], list[str]]:
    """Resolve unresolved gaps whose line targets an object the dependency graph has."""
    resolved: list[str] = []

    def attempt(node: IntentNode) -> IntentNode:
        if node.type is not IntentType.GAP or node.resolution:
            return node
        resolution = _auto_resolution(node, graph)
        if resolution is None:
            return node
        resolved.append(node.gap_id or "")
        return replace(node, resolution={**resolution, "resolved_by": "auto"})

    out = [replace(p, intents=map_tree(p.intents, attempt)) for p in procedures]
    if resolved:
        log.info("Auto-resolved %d gap(s)", len(resolved))
    return out, resolved
