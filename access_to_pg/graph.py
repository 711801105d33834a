"""
Read-only view of the dependency graph (shared._nodes / shared._edges).

The graph is populated by the import/editor layer; here it only answers
"does object X exist" and "what does X reference" for gap auto-resolution
and for ordering hints in reports.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from access_to_pg.normalizer import sanitize_name

log = logging.getLogger("access_to_pg.graph")

NODE_TYPES = ("table", "column", "query", "form", "report", "control", "procedure", "module")
EDGE_TYPES = ("contains", "references", "bound_to", "serves")


@dataclass(frozen=True)
class GraphNode:
    node_type: str
    name: str
    database_id: Optional[str] = None


@dataclass(frozen=True)
class GraphEdge:
    source: GraphNode
    target: GraphNode
    rel_type: str


@dataclass
class DependencyGraph:
    nodes: set[GraphNode] = field(default_factory=set)
    edges: list[GraphEdge] = field(default_factory=list)

    def _key(self, node_type: str, name: str) -> tuple[str, str]:
        return node_type.lower(), sanitize_name(name)

    def add_node(self, node_type: str, name: str, database_id: Optional[str] = None) -> GraphNode:
        node = GraphNode(node_type.lower(), name, database_id)
        self.nodes.add(node)
        return node

    def add_edge(self, source: GraphNode, target: GraphNode, rel_type: str) -> GraphEdge:
        if rel_type not in EDGE_TYPES:
            raise ValueError(f"unknown edge type: {rel_type}")
        self.nodes.update((source, target))
        edge = GraphEdge(source, target, rel_type)
        if edge not in self.edges:
            self.edges.append(edge)
        return edge

    def find(self, node_type: str, name: str) -> Optional[GraphNode]:
        key = self._key(node_type, name)
        for node in self.nodes:
            if self._key(node.node_type, node.name) == key:
                return node
        return None

    def object_exists(self, node_type: str, name: str) -> bool:
        """True when a node of *node_type* named *name* (case/spacing-insensitive) exists."""
        return self.find(node_type, name) is not None

    def names(self, node_type: str) -> list[str]:
        return sorted(n.name for n in self.nodes if n.node_type == node_type.lower())

    @classmethod
    def from_dict(cls, data: dict) -> "DependencyGraph":
        """From {"nodes": [{"type", "name"}], "edges": [{"from": [type, name], "to": [...], "rel"}]}."""
        graph = cls()
        for n in data.get("nodes") or []:
            graph.add_node(n["type"], n["name"], n.get("database_id"))
        for e in data.get("edges") or []:
            src = graph.find(*e["from"]) or graph.add_node(*e["from"])
            dst = graph.find(*e["to"]) or graph.add_node(*e["to"])
            graph.add_edge(src, dst, e.get("rel", "references"))
        return graph

    @classmethod
    def from_names(cls, **names: Iterable[str]) -> "DependencyGraph":
        """from_names(table=[...], form=[...]): structural nodes only."""
        graph = cls()
        for node_type, values in names.items():
            for name in values:
                graph.add_node(node_type, name)
        return graph


def load_graph(pg_conn, database_id: Optional[str] = None) -> DependencyGraph:
    """Snapshot structural nodes and their edges for one database."""
    graph = DependencyGraph()
    by_id: dict = {}
    with pg_conn.cursor() as cur:
        sql = "SELECT id, node_type, name, database_id FROM shared._nodes WHERE node_type <> 'intent'"
        params: tuple = ()
        if database_id:
            sql += " AND database_id = %s"
            params = (database_id,)
        cur.execute(sql, params)
        for node_id, node_type, name, db in cur.fetchall():
            by_id[node_id] = graph.add_node(node_type, name, db)
        cur.execute("SELECT from_id, to_id, rel_type FROM shared._edges")
        for from_id, to_id, rel_type in cur.fetchall():
            if from_id in by_id and to_id in by_id and rel_type in EDGE_TYPES:
                graph.add_edge(by_id[from_id], by_id[to_id], rel_type)
    pg_conn.rollback()
    log.info("Dependency graph: %d node(s), %d edge(s)", len(graph.nodes), len(graph.edges))
    return graph
