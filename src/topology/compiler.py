"""Compile a topology tree plus its expansion state into a diagram IR.

The IR is renderer agnostic: a flat list of nodes and edges with style names
and, for expand affordances, the NodeKey a click should expand. Labels and
ids in the IR are already sanitized for flowchart-style DSLs (Mermaid first
of all), so a serializer only has to lay them out.

Sanitization is deterministic but not injective: ``a.b_c`` and ``a_b.c`` map
to the same id. Distinct tables whose keys collide after sanitization share a
diagram node; this is an accepted limitation for real-world schema names.
"""
from dataclasses import dataclass
from typing import AbstractSet, Dict, List, Optional, Tuple
import re

from .model import Direction, RelationshipNode

_ID_RE = re.compile(r"[^A-Za-z0-9_]")

# Characters with meaning inside flowchart labels, mapped to HTML entities.
_LABEL_ESCAPES = {
    '"': "&quot;",
    "'": "&apos;",
    "<": "&lt;",
    ">": "&gt;",
    "|": "&#124;",
    "{": "&#123;",
    "}": "&#125;",
    "[": "&#91;",
    "]": "&#93;",
    "(": "&#40;",
    ")": "&#41;",
}
_LABEL_TABLE = str.maketrans(_LABEL_ESCAPES)

EXPAND_PREFIX = "expand_"

STYLE_FOCUS = "focus"
STYLE_TABLE = "table"
STYLE_INCOMING = "incoming"
STYLE_EXPAND = "expand"
STYLE_OUTGOING = "outgoing"


def sanitize_id(value: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_]`` with ``_``."""
    return _ID_RE.sub("_", value)


def sanitize_label(value: str) -> str:
    """Escape quotes, brackets, braces, parentheses and pipes as HTML entities."""
    return (value or "").translate(_LABEL_TABLE)


@dataclass(frozen=True)
class NodeSpec:
    """A diagram node. Table nodes carry ``key``; expand affordances carry
    ``expand_key``, the NodeKey a click on them should expand."""
    node_id: str
    key: Optional[str]
    title: str
    subtitle: str = ""
    style: str = STYLE_TABLE
    expandable: bool = False
    expand_key: Optional[str] = None


@dataclass(frozen=True)
class EdgeSpec:
    source_id: str
    target_id: str
    label: str = ""
    style: str = STYLE_OUTGOING
    constraint_name: str = ""


@dataclass(frozen=True)
class DiagramIR:
    nodes: Tuple[NodeSpec, ...] = ()
    edges: Tuple[EdgeSpec, ...] = ()

    def expand_targets(self) -> Dict[str, str]:
        """Map expand-affordance node ids to the NodeKey they expand."""
        return {n.node_id: n.expand_key for n in self.nodes if n.expandable}

    def table_nodes(self) -> Tuple[NodeSpec, ...]:
        return tuple(n for n in self.nodes if not n.expandable)

    def node(self, node_id: str) -> Optional[NodeSpec]:
        for n in self.nodes:
            if n.node_id == node_id:
                return n
        return None


class _Compiler:

    def __init__(self, root: RelationshipNode, expanded: AbstractSet[str], loading: AbstractSet[str]):
        self.root = root
        self.expanded = expanded
        self.loading = loading
        self.nodes: List[NodeSpec] = []
        self.edges: List[EdgeSpec] = []
        self.visited = {root.table}
        self.seen_edges = set()
        self.affordances = set()

    def run(self) -> DiagramIR:
        root = self.root
        self.nodes.append(NodeSpec(
            node_id=sanitize_id(root.table),
            key=root.table,
            title=sanitize_label(root.name),
            subtitle=sanitize_label(root.schema),
            style=STYLE_FOCUS,
        ))
        self._walk(root)
        return DiagramIR(nodes=tuple(self.nodes), edges=tuple(self.edges))

    def _walk(self, node: RelationshipNode) -> None:
        for rel in node.relationships:
            far_key = rel.far_key
            far_id = sanitize_id(far_key)
            incoming = rel.direction == Direction.INCOMING

            if far_key not in self.visited:
                self.nodes.append(NodeSpec(
                    node_id=far_id,
                    key=far_key,
                    title=sanitize_label(rel.far_table),
                    subtitle=sanitize_label(rel.far_schema),
                    style=STYLE_INCOMING if incoming else STYLE_TABLE,
                ))
            self.visited.add(far_key)

            # The same foreign key shows up again from the far side once that
            # table is expanded; draw it once.
            edge_identity = (rel.constraint_name, rel.source_key, rel.target_key)
            if edge_identity not in self.seen_edges:
                self.seen_edges.add(edge_identity)
                self.edges.append(EdgeSpec(
                    source_id=sanitize_id(rel.source_key),
                    target_id=sanitize_id(rel.target_key),
                    label=f"{sanitize_label(rel.source_column)} → {sanitize_label(rel.target_column)}",
                    style=STYLE_INCOMING if incoming else STYLE_OUTGOING,
                    constraint_name=rel.constraint_name,
                ))

            if (rel.has_more
                    and far_key not in self.expanded
                    and far_key not in self.loading
                    and far_key != self.root.table
                    and far_key not in self.affordances):
                self.affordances.add(far_key)
                expand_id = EXPAND_PREFIX + far_id
                self.nodes.append(NodeSpec(
                    node_id=expand_id,
                    key=None,
                    title="+",
                    style=STYLE_EXPAND,
                    expandable=True,
                    expand_key=far_key,
                ))
                self.edges.append(EdgeSpec(source_id=far_id, target_id=expand_id, style=STYLE_EXPAND))

            # An expanded table can be materialized more than once (a later
            # fetch may reach it again, cut short by its depth); walk every copy
            # so content merged under any of them stays on the diagram.
            if rel.children is not None and far_key in self.expanded:
                self._walk(rel.children)


def compile_diagram(root: RelationshipNode, expanded: AbstractSet[str] = frozenset(),
                    loading: AbstractSet[str] = frozenset()) -> DiagramIR:
    """Compile ``root`` into a :class:`DiagramIR` for the given expansion state.

    Each table appears at most once; the walk descends into a relationship's
    children whenever its far-side table is expanded. The materialized tree is
    finite (fetches are depth bounded), so cyclic foreign keys terminate.
    """
    return _Compiler(root, expanded, loading).run()
