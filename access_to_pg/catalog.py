"""
Read-only snapshots the translators consult: the target schema catalog
(relations, columns, types, functions) and the control-to-column bindings
written by the form editor.

Both are plain in-memory objects. They are loaded from PostgreSQL once per
batch (load_catalog / load_control_bindings) or from a JSON snapshot, and are
never written back by the translation pipeline.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from access_to_pg.normalizer import sanitize_name

log = logging.getLogger("access_to_pg.catalog")


# ---- Schema catalog ----

@dataclass
class SchemaCatalog:
    schema: str
    # relation -> {column: data_type}, columns in ordinal order
    relations: dict[str, dict[str, str]] = field(default_factory=dict)
    views: set[str] = field(default_factory=set)
    # function name -> ["(p_x integer) -> text", ...]
    functions: dict[str, list[str]] = field(default_factory=dict)

    def has_relation(self, name: str) -> bool:
        return sanitize_name(name) in self.relations

    def has_function(self, name: str) -> bool:
        return sanitize_name(name) in self.functions

    def columns(self, relation: str) -> dict[str, str]:
        return self.relations.get(sanitize_name(relation), {})

    def column_type(self, relation: Optional[str], column: str) -> Optional[str]:
        if not relation:
            return None
        return self.columns(relation).get(sanitize_name(column))

    def find_column_type(self, column: str) -> Optional[str]:
        """Type of *column* in the first relation (by name) that has it."""
        col = sanitize_name(column)
        for rel in sorted(self.relations):
            t = self.relations[rel].get(col)
            if t:
                return t
        return None

    def describe(self) -> str:
        """Schema listing used as assistant context."""
        lines = [f"Schema: {self.schema}", "", "Tables and views:"]
        for rel in sorted(self.relations):
            kind = " (view)" if rel in self.views else ""
            cols = ", ".join(f"{c} {t}" for c, t in self.relations[rel].items())
            lines.append(f"  {rel}{kind}: {cols}")
        if self.functions:
            lines.append("")
            lines.append("Functions:")
            for name in sorted(self.functions):
                for sig in self.functions[name]:
                    lines.append(f"  {name}{sig}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "schema": self.schema,
            "relations": self.relations,
            "views": sorted(self.views),
            "functions": self.functions,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SchemaCatalog":
        return cls(
            schema=data.get("schema", "public"),
            relations={
                sanitize_name(rel): {sanitize_name(c): t for c, t in cols.items()}
                for rel, cols in (data.get("relations") or {}).items()
            },
            views={sanitize_name(v) for v in data.get("views") or []},
            functions={sanitize_name(k): list(v) for k, v in (data.get("functions") or {}).items()},
        )


def load_catalog(pg_conn, schema: str) -> SchemaCatalog:
    """Snapshot tables, views, columns and functions of *schema* from PostgreSQL."""
    t0 = time.time()
    catalog = SchemaCatalog(schema=schema)
    with pg_conn.cursor() as cur:
        cur.execute("""
            SELECT table_name, column_name, data_type
              FROM information_schema.columns
             WHERE table_schema = %s
             ORDER BY table_name, ordinal_position
        """, (schema,))
        for table_name, column_name, data_type in cur.fetchall():
            catalog.relations.setdefault(table_name.lower(), {})[column_name.lower()] = data_type
        cur.execute("""
            SELECT table_name FROM information_schema.views WHERE table_schema = %s
        """, (schema,))
        catalog.views = {r[0].lower() for r in cur.fetchall()}
        cur.execute("""
            SELECT p.proname,
                   pg_catalog.pg_get_function_identity_arguments(p.oid),
                   pg_catalog.pg_get_function_result(p.oid)
              FROM pg_catalog.pg_proc p
              JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
             WHERE n.nspname = %s
             ORDER BY 1, 2
        """, (schema,))
        for name, args, result in cur.fetchall():
            catalog.functions.setdefault(name.lower(), []).append(f"({args}) -> {result}")
    # A transaction was opened by the reads; do not leave it idle.
    pg_conn.rollback()
    log.info("Catalog %s: %d relation(s) (%d view(s)), %d function(s) in %.2fs",
             schema, len(catalog.relations), len(catalog.views), len(catalog.functions),
             time.time() - t0)
    return catalog


# ---- Control-to-column bindings ----

@dataclass(frozen=True)
class ControlBinding:
    scope: str      # form/report name
    control: str    # control name
    table: str
    column: str


class ControlBindings:
    """(scope, control) -> (table, column) lookups, case- and spacing-insensitive."""

    def __init__(self, bindings: Iterable[ControlBinding] = ()):
        self._by_key: dict[tuple[str, str], ControlBinding] = {}
        self._by_control: dict[str, list[ControlBinding]] = {}
        for b in bindings:
            key = (sanitize_name(b.scope), sanitize_name(b.control))
            if key in self._by_key:
                continue
            self._by_key[key] = b
            self._by_control.setdefault(key[1], []).append(b)

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self):
        return iter(self._by_key.values())

    def lookup(self, scope: Optional[str], control: str) -> Optional[ControlBinding]:
        if not scope:
            return None
        return self._by_key.get((sanitize_name(scope), sanitize_name(control)))

    def for_control(self, control: str) -> list[ControlBinding]:
        return list(self._by_control.get(sanitize_name(control), []))

    def describe(self) -> str:
        return "\n".join(
            f"  {b.scope}.{b.control} -> {b.table}.{b.column}"
            for b in sorted(self._by_key.values(), key=lambda b: (b.scope, b.control))
        )

    @classmethod
    def from_mapping(cls, mapping: dict) -> "ControlBindings":
        """From {"form.control": {"table": t, "column": c}} as stored in JSON snapshots."""
        bindings = []
        for key, target in (mapping or {}).items():
            scope, _, control = key.rpartition(".")
            if not scope or not target:
                continue
            bindings.append(ControlBinding(scope, control, target["table"], target["column"]))
        return cls(bindings)


def load_control_bindings(pg_conn, database_id: Optional[str] = None) -> ControlBindings:
    """Read shared.control_column_map (written by the form editor on save)."""
    sql = """
        SELECT form_name, control_name, table_name, column_name
          FROM shared.control_column_map
    """
    params: tuple = ()
    if database_id:
        sql += " WHERE database_id = %s"
        params = (database_id,)
    sql += " ORDER BY form_name, control_name"
    with pg_conn.cursor() as cur:
        cur.execute(sql, params)
        rows = cur.fetchall()
    pg_conn.rollback()
    log.info("Loaded %d control binding(s)", len(rows))
    return ControlBindings(ControlBinding(*row) for row in rows)


def load_snapshot(path: str) -> tuple[SchemaCatalog, ControlBindings]:
    """Catalog and bindings from a JSON file: {"catalog": {...}, "bindings": {...}}."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    catalog = SchemaCatalog.from_dict(data.get("catalog") or {})
    bindings = ControlBindings.from_mapping(data.get("bindings") or {})
    return catalog, bindings
