"""
translate(unit): one Access query or computed-control expression -> PostgreSQL DDL.

Pipeline (each stage is a pure text function):

    PARAMETERS clause   declared parameters registered first, clause removed
    literals            "..." -> '...'
    references          Forms!/Form!/Me!/TempVars! -> session state subqueries
    domain functions    DLookUp/DCount/... -> correlated subqueries
    parameters          expression units: [field] -> p_field
    access functions    IIf/Nz/Mid/DateAdd/... -> PostgreSQL expressions
    lexical             brackets, operators, dates, LIKE, TOP
    schema prefix       relations and user function calls qualified
    DDL                 view / function wrapper with typed parameters

The result depends only on the unit, the catalog snapshot and the control
bindings, so translating the same input twice gives byte-identical DDL.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Optional

from access_to_pg.access_functions import translate_access_functions
from access_to_pg.catalog import ControlBindings, SchemaCatalog
from access_to_pg.ddl import (
    Param,
    QueryKind,
    build_expression_function,
    build_query_statements,
    custom_aggregate_statements,
    detect_query_kind,
    infer_param_types,
    infer_return_type,
    map_param_type,
)
from access_to_pg.domain_functions import translate_domain_functions
from access_to_pg.errors import ConversionError
from access_to_pg.normalizer import (
    ParamRegistry,
    add_function_prefix,
    add_schema_prefix,
    normalize_lexical,
    normalize_literals,
    sanitize_name,
)
from access_to_pg.references import ReferenceResolver
from access_to_pg.scanner import iter_bracket_refs, split_top_level

log = logging.getLogger("access_to_pg.converter")

UNIT_KINDS = ("query", "expression")

_PARAMETERS_CLAUSE = re.compile(r"^\s*PARAMETERS\s+([^;]+);\s*", re.IGNORECASE)
_PARAM_DECL = re.compile(r"^\s*(\[[^\]]*\](?:\s*[!.]\s*\[[^\]]*\])*|\S+)\s*(\w*)")


@dataclass(frozen=True)
class TranslationUnit:
    name: str
    source: str
    schema: str = "public"
    kind: str = "query"
    owner: Optional[str] = None             # form/report a computed control belongs to
    record_source: Optional[str] = None     # owner's record source, for parameter types
    parameters: tuple = ()                  # ((name, access_type), ...) from DAO
    query_type: Optional[int] = None        # DAO QueryDef.Type

    @property
    def pg_name(self) -> str:
        return sanitize_name(self.name)

    @classmethod
    def from_dict(cls, data: dict, schema: str) -> "TranslationUnit":
        kind = data.get("kind", "query")
        if kind not in UNIT_KINDS:
            raise ValueError(f"{data.get('name')}: unknown unit kind {kind!r}")
        params = []
        for p in data.get("parameters") or []:
            if isinstance(p, dict):
                params.append((p["name"], p.get("type")))
            else:
                params.append((p[0], p[1] if len(p) > 1 else None))
        return cls(
            name=data["name"],
            source=data.get("sql") or data.get("expression") or "",
            schema=data.get("schema") or schema,
            kind=kind,
            owner=data.get("owner"),
            record_source=data.get("record_source"),
            parameters=tuple(params),
            query_type=data.get("query_type"),
        )


@dataclass
class TranslationResult:
    unit: TranslationUnit
    statements: list[str]
    params: list[Param]
    return_type: Optional[str]
    object_kind: str                        # view | function
    body: str
    query_kind: Optional[QueryKind] = None
    warnings: list[str] = field(default_factory=list)
    state_refs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ddl(self) -> str:
        return ";\n\n".join(self.statements) + ";\n"


def expression_unit(
    owner: str,
    control: str,
    expression: str,
    schema: str,
    record_source: Optional[str] = None,
) -> TranslationUnit:
    """Unit for a computed control: function <owner>_calc_<control>."""
    name = f"{sanitize_name(owner)}_calc_{sanitize_name(control)}"
    return TranslationUnit(name, expression, schema, "expression", owner, record_source)


def parse_parameters_clause(text: str) -> tuple[str, list[tuple[str, Optional[str]]]]:
    """Split 'PARAMETERS [a] Long, [b] Text (255); SELECT ...' into body and declarations."""
    m = _PARAMETERS_CLAUSE.match(text)
    if not m:
        return text, []
    declared = []
    for item in split_top_level(m.group(1)):
        d = _PARAM_DECL.match(item)
        if not d or not d.group(1):
            continue
        declared.append((d.group(1), d.group(2) or None))
    return text[m.end():], declared


def _register_declared(
    registry: ParamRegistry,
    declared: list[tuple[str, Optional[str]]],
    types: dict[str, str],
) -> None:
    for raw, access_type in declared:
        bare = raw.replace("[", "").replace("]", "")
        # Forms!f!c, TempVars!x and T.C declarations are references, resolved elsewhere.
        if "!" in bare or "." in bare:
            continue
        pg = registry.add(raw.strip().strip("[]"))
        types.setdefault(pg, map_param_type(access_type))


def _collect_field_params(text: str, registry: ParamRegistry, declared_only: bool = False) -> str:
    """[field] -> p_field. Expression units take every field from the caller;
    query units only rewrite declared parameters and leave columns alone.
    """
    out = []
    last = 0
    for start, end, inner in iter_bracket_refs(text, quotes="'"):
        if declared_only and inner not in registry:
            continue
        out.append(text[last:start])
        out.append(registry.add(inner))
        last = end
    out.append(text[last:])
    return "".join(out)


def translate(
    unit: TranslationUnit,
    catalog: Optional[SchemaCatalog] = None,
    bindings: Optional[ControlBindings] = None,
) -> TranslationResult:
    """Translate one unit; raises ConversionError (with unit name and warnings) on failure."""
    if unit.kind not in UNIT_KINDS:
        raise ConversionError(f"unknown unit kind {unit.kind!r}", unit=unit.name)
    warnings: list[str] = []
    try:
        return _translate(unit, catalog, bindings, warnings)
    except ConversionError as e:
        if not e.unit:
            e.unit = unit.name
        e.warnings = warnings + e.warnings
        raise


def _translate(
    unit: TranslationUnit,
    catalog: Optional[SchemaCatalog],
    bindings: Optional[ControlBindings],
    warnings: list[str],
) -> TranslationResult:
    text = unit.source.strip()
    if not text:
        raise ConversionError("empty definition")
    schema = unit.schema

    registry = ParamRegistry()
    declared_types: dict[str, str] = {}
    text, declared = parse_parameters_clause(text)
    _register_declared(registry, list(unit.parameters) + declared, declared_types)

    text = text.strip().rstrip(";").rstrip()
    is_expression = unit.kind == "expression"
    if is_expression and text.startswith("="):
        text = text[1:].strip()

    text = normalize_literals(text)
    resolver = ReferenceResolver(bindings, owner=unit.owner)
    text = resolver.resolve(text)
    warnings.extend(resolver.warnings)

    if is_expression:
        text = translate_domain_functions(text, schema, registry, warnings)
        text = _collect_field_params(text, registry)
    else:
        text = _collect_field_params(text, registry, declared_only=True)
        text = translate_domain_functions(text, schema, None, warnings)

    text = translate_access_functions(text, warnings)
    text = normalize_lexical(text, registry.mapping(), warnings)
    if not is_expression:
        text = add_schema_prefix(text, schema)
    body = add_function_prefix(text, schema)

    params = [Param(raw, pg, declared_types.get(pg, "text")) for raw, pg in registry.items()]
    params = infer_param_types(params, body, catalog, unit.record_source, schema)

    if is_expression:
        return_type = infer_return_type(body)
        statements = custom_aggregate_statements(body)
        statements.append(build_expression_function(schema, unit.pg_name, body, params, return_type))
        result = TranslationResult(unit, statements, params, return_type, "function", body)
    else:
        kind = detect_query_kind(body, unit.query_type)
        statements, object_kind = build_query_statements(
            schema, unit.pg_name, body, kind, params, catalog, warnings
        )
        if object_kind == "view":
            return_type = None
        elif kind is QueryKind.SELECT or kind is QueryKind.UNION:
            return_type = "table"
        else:
            return_type = "integer"
        result = TranslationResult(unit, statements, params, return_type, object_kind, body, kind)

    result.warnings = warnings
    result.state_refs = list(resolver.referenced)
    log.debug("Translated %s -> %s (%d param(s), %d warning(s))",
              unit.name, result.object_kind, len(params), len(warnings))
    return result


# -----------------------------------------------------------------------------
# Definition files
# -----------------------------------------------------------------------------

def load_units(path: str, schema: str) -> list[TranslationUnit]:
    """Units from a JSON definitions file or a directory of .sql files (sorted by name)."""
    if os.path.isdir(path):
        units = []
        for fname in sorted(os.listdir(path)):
            if not fname.lower().endswith(".sql"):
                continue
            with open(os.path.join(path, fname), encoding="utf-8") as f:
                units.append(TranslationUnit(os.path.splitext(fname)[0], f.read(), schema))
        return units
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("units") or data.get("queries") or []
    return [TranslationUnit.from_dict(item, schema) for item in data]
