"""Relationship topology data model.

A topology is a tree of ``RelationshipNode`` objects. Each node lists the
foreign-key relationships known for one table; a relationship may carry the
far-side table's own node in ``children`` once that table has been expanded.

Both types are frozen: updates go through ``dataclasses.replace`` so that any
previously captured tree stays valid after a merge.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple, Union
import logging

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Relationship direction relative to the node it was fetched for."""
    INCOMING = "incoming"   # another table references this one
    OUTGOING = "outgoing"   # this table references another one


def make_key(schema: str, table: str) -> str:
    """Return the canonical NodeKey ``schema.table``."""
    return f"{schema}.{table}"


def split_key(key: str) -> Tuple[str, str]:
    """Split a NodeKey into ``(schema, table)`` at the first dot."""
    schema, sep, table = key.partition(".")
    if not sep or not schema or not table:
        raise ValueError(f"Not a schema-qualified table key: {key!r}")
    return schema, table


@dataclass(frozen=True)
class Relationship:
    """One foreign key seen from the node it was fetched for."""
    direction: Direction
    constraint_name: str
    source_schema: str
    source_table: str
    source_column: str
    target_schema: str
    target_table: str
    target_column: str
    has_more: bool = False
    children: Optional["RelationshipNode"] = None

    @property
    def source_key(self) -> str:
        return make_key(self.source_schema, self.source_table)

    @property
    def target_key(self) -> str:
        return make_key(self.target_schema, self.target_table)

    @property
    def far_schema(self) -> str:
        return self.target_schema if self.direction == Direction.OUTGOING else self.source_schema

    @property
    def far_table(self) -> str:
        return self.target_table if self.direction == Direction.OUTGOING else self.source_table

    @property
    def far_key(self) -> str:
        """Key of the table on the other side of the relationship."""
        return make_key(self.far_schema, self.far_table)

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.constraint_name, self.direction.value)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relationship":
        try:
            direction = Direction(data["direction"])
            children = data.get("children")
            return cls(
                direction=direction,
                constraint_name=str(data["constraintName"]),
                source_schema=str(data["sourceSchema"]),
                source_table=str(data["sourceTable"]),
                source_column=str(data.get("sourceColumn") or ""),
                target_schema=str(data["targetSchema"]),
                target_table=str(data["targetTable"]),
                target_column=str(data.get("targetColumn") or ""),
                has_more=bool(data.get("hasMore", False)),
                children=RelationshipNode.from_dict(children) if children else None,
            )
        except KeyError as e:
            raise ValueError(f"Relationship is missing field {e.args[0]!r}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "constraintName": self.constraint_name,
            "sourceSchema": self.source_schema,
            "sourceTable": self.source_table,
            "sourceColumn": self.source_column,
            "targetSchema": self.target_schema,
            "targetTable": self.target_table,
            "targetColumn": self.target_column,
            "hasMore": self.has_more,
            "children": self.children.to_dict() if self.children is not None else None,
        }


@dataclass(frozen=True)
class RelationshipNode:
    """A table plus its directly known relationships."""
    table: str
    schema: str
    name: str
    relationships: Tuple[Relationship, ...] = field(default_factory=tuple)

    @classmethod
    def create(cls, schema: str, name: str, relationships: Iterable[Relationship] = ()) -> "RelationshipNode":
        return cls(table=make_key(schema, name), schema=schema, name=name,
                   relationships=unique_relationships(relationships, make_key(schema, name)))

    def with_relationships(self, relationships: Iterable[Relationship]) -> "RelationshipNode":
        return replace(self, relationships=tuple(relationships))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelationshipNode":
        """Build a node from the camelCase wire shape returned by a fetcher.

        ``schema``/``name`` may be missing on truncated nodes; they are then
        recovered from the ``table`` key.
        """
        if not isinstance(data, dict) or "table" not in data:
            raise ValueError("Relationship node must be a mapping with a 'table' key")
        key = str(data["table"])
        schema = data.get("schema")
        name = data.get("name")
        if not schema or not name:
            schema, name = split_key(key)
        rels = [Relationship.from_dict(r) for r in (data.get("relationships") or [])]
        return cls(table=key, schema=str(schema), name=str(name),
                   relationships=unique_relationships(rels, key))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "schema": self.schema,
            "name": self.name,
            "relationships": [r.to_dict() for r in self.relationships],
        }


def unique_relationships(relationships: Iterable[Relationship], key: str = "") -> Tuple[Relationship, ...]:
    """Drop relationships repeating an earlier ``(constraint_name, direction)`` pair."""
    seen = set()
    out = []
    for rel in relationships:
        if rel.identity in seen:
            logger.warning("Dropping duplicate relationship %s (%s) on %s",
                           rel.constraint_name, rel.direction.value, key or "<node>")
            continue
        seen.add(rel.identity)
        out.append(rel)
    return tuple(out)


def key_of(node: Union[RelationshipNode, str]) -> str:
    """Return the NodeKey of a node (strings are taken to be keys already)."""
    if isinstance(node, RelationshipNode):
        return node.table
    return str(node)


def same_key(a: Union[RelationshipNode, str], b: Union[RelationshipNode, str]) -> bool:
    return key_of(a) == key_of(b)


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one relationship fetch: ``data`` on success, ``error`` otherwise."""
    success: bool
    data: Optional[RelationshipNode] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: RelationshipNode) -> "FetchResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "FetchResult":
        return cls(success=False, error=error)

    @classmethod
    def coerce(cls, value: Any) -> "FetchResult":
        """Accept a ``FetchResult`` or the ``{success, data, error}`` mapping shape."""
        if isinstance(value, FetchResult):
            return value
        if isinstance(value, dict):
            if value.get("success"):
                data = value.get("data")
                if isinstance(data, dict):
                    data = RelationshipNode.from_dict(data)
                if isinstance(data, RelationshipNode):
                    return cls.ok(data)
                return cls.failure("Relationship fetch returned no data")
            return cls.failure(str(value.get("error") or "Failed to load table relationships"))
        raise TypeError(f"Unsupported fetch result: {type(value).__name__}")
