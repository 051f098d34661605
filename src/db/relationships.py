"""Fetch bounded-depth foreign key relationship trees with SQLAlchemy's inspector.

``fetch_table_relationships`` is the fetch contract used by the topology view:
it never raises, failures come back as ``FetchResult(success=False, ...)``.

Foreign keys are reflected once per engine into a ``ForeignKeyIndex`` (cached
like other metadata) so that incoming references, which the inspector only
exposes from the referencing side, can be looked up per table.
"""
from dataclasses import dataclass, replace
from functools import partial
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from db.metadata import _SCHEMA_SCAN_TIMEOUT, _call_with_timeout, cached, list_schemas
from topology.model import Direction, FetchResult, Relationship, RelationshipNode, make_key

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 3

TableId = Tuple[str, str]


@dataclass(frozen=True)
class ForeignKey:
    """One reflected foreign key constraint."""
    name: str
    schema: str
    table: str
    columns: Tuple[str, ...]
    referred_schema: str
    referred_table: str
    referred_columns: Tuple[str, ...]


class ForeignKeyIndex:
    """Foreign keys of a set of schemas, indexed by referencing and referenced table."""

    def __init__(self, foreign_keys: Iterable[ForeignKey] = (), tables: Iterable[TableId] = ()):
        self._outgoing: Dict[TableId, List[ForeignKey]] = {}
        self._incoming: Dict[TableId, List[ForeignKey]] = {}
        self._tables: Set[TableId] = set(tables)
        for fk in foreign_keys:
            self.add(fk)

    def add(self, fk: ForeignKey) -> None:
        self._outgoing.setdefault((fk.schema, fk.table), []).append(fk)
        self._incoming.setdefault((fk.referred_schema, fk.referred_table), []).append(fk)
        self._tables.add((fk.schema, fk.table))

    def outgoing(self, schema: str, table: str) -> List[ForeignKey]:
        return sorted(self._outgoing.get((schema, table), []),
                      key=lambda fk: (fk.referred_schema, fk.referred_table, fk.name))

    def incoming(self, schema: str, table: str) -> List[ForeignKey]:
        return sorted(self._incoming.get((schema, table), []),
                      key=lambda fk: (fk.schema, fk.table, fk.name))

    def add_table(self, schema: str, table: str) -> None:
        self._tables.add((schema, table))

    def has_table(self, schema: str, table: str) -> bool:
        return (schema, table) in self._tables

    def has_relationships(self, schema: str, table: str) -> bool:
        return bool(self._outgoing.get((schema, table)) or self._incoming.get((schema, table)))


def _constraint_name(fk: dict, table: str) -> str:
    # SQLite (and some MySQL setups) report unnamed constraints
    name = fk.get("name")
    if name:
        return str(name)
    cols = "_".join(fk.get("constrained_columns") or [])
    return f"fk_{table}_{cols}_{fk.get('referred_table')}"


def reflect_foreign_keys(engine, schemas: Optional[Iterable[str]] = None) -> ForeignKeyIndex:
    """Reflect all foreign keys of ``schemas`` (default: every user schema)."""
    inspector = inspect(engine)
    index = ForeignKeyIndex()
    for schema in (list(schemas) if schemas is not None else list_schemas(engine)):
        tables = _call_with_timeout(lambda: inspector.get_table_names(schema=schema)) or []
        for t in tables:
            index.add_table(schema, t)
        try:
            by_table = _call_with_timeout(lambda: inspector.get_multi_foreign_keys(schema=schema),
                                          timeout=_SCHEMA_SCAN_TIMEOUT) or {}
        except NotImplementedError:
            by_table = {}
            for t in tables:
                by_table[(schema, t)] = _call_with_timeout(
                    lambda: inspector.get_foreign_keys(t, schema=schema)) or []
        for (tbl_schema, table), fks in by_table.items():
            tbl_schema = tbl_schema or schema
            index.add_table(tbl_schema, table)
            for fk in fks:
                if not fk.get("referred_table"):
                    continue
                index.add(ForeignKey(
                    name=_constraint_name(fk, table),
                    schema=tbl_schema,
                    table=table,
                    columns=tuple(fk.get("constrained_columns") or ()),
                    # an unqualified reference resolves in the referencing table's schema
                    referred_schema=fk.get("referred_schema") or tbl_schema,
                    referred_table=fk["referred_table"],
                    referred_columns=tuple(fk.get("referred_columns") or ()),
                ))
        logger.debug("Reflected foreign keys for schema %s: %d tables", schema, len(by_table))
    return index


def get_foreign_key_index(engine) -> ForeignKeyIndex:
    return cached(engine, "foreign_keys", lambda: reflect_foreign_keys(engine))


def _outgoing_relationship(fk: ForeignKey, has_more: bool) -> Relationship:
    return Relationship(
        direction=Direction.OUTGOING,
        constraint_name=fk.name,
        source_schema=fk.schema,
        source_table=fk.table,
        source_column=", ".join(fk.columns),
        target_schema=fk.referred_schema,
        target_table=fk.referred_table,
        target_column=", ".join(fk.referred_columns),
        has_more=has_more,
    )


def _incoming_relationship(fk: ForeignKey, has_more: bool) -> Relationship:
    # Same orientation as outgoing: source is always the referencing side
    rel = _outgoing_relationship(fk, has_more)
    return replace(rel, direction=Direction.INCOMING)


def build_relationship_tree(index: ForeignKeyIndex, schema: str, table: str, depth: int = DEFAULT_DEPTH,
                            visited: Optional[Set[str]] = None) -> RelationshipNode:
    """Relationship tree around ``schema.table`` down to ``depth`` levels.

    Each branch carries its own copy of the visited set, so a table can appear
    on several branches but never twice on one path. ``has_more`` marks
    relationships whose far-side table takes part in any foreign key.
    """
    key = make_key(schema, table)
    visited = set(visited or ())
    if key in visited or depth <= 0:
        return RelationshipNode.create(schema, table)
    visited.add(key)

    rels = []
    for fk in index.outgoing(schema, table):
        rels.append(_outgoing_relationship(fk, index.has_relationships(fk.referred_schema, fk.referred_table)))
    for fk in index.incoming(schema, table):
        if (fk.schema, fk.table) == (schema, table):
            # self-reference, already listed as outgoing
            continue
        rels.append(_incoming_relationship(fk, index.has_relationships(fk.schema, fk.table)))

    if depth > 1:
        with_children = []
        for rel in rels:
            if rel.far_key in visited:
                with_children.append(rel)
                continue
            child = build_relationship_tree(index, rel.far_schema, rel.far_table, depth - 1, visited)
            with_children.append(replace(rel, children=child))
        rels = with_children

    return RelationshipNode.create(schema, table, rels)


def get_table_relationships(engine, schema: str, table: str, depth: int = DEFAULT_DEPTH) -> RelationshipNode:
    """Fetch the relationship tree for one table. Raises on introspection failure."""
    index = get_foreign_key_index(engine)
    if not index.has_table(schema, table):
        raise LookupError(f"Table {make_key(schema, table)} not found")
    return build_relationship_tree(index, schema, table, depth)


def fetch_table_relationships(engine, schema: str, table: str, depth: int = DEFAULT_DEPTH) -> FetchResult:
    """Fetch contract for the topology view: never raises."""
    try:
        return FetchResult.ok(get_table_relationships(engine, schema, table, depth))
    except LookupError as e:
        return FetchResult.failure(str(e))
    except TimeoutError as e:
        logger.warning("Relationship introspection for %s.%s timed out", schema, table)
        return FetchResult.failure(str(e))
    except SQLAlchemyError as e:
        logger.exception("Relationship introspection for %s.%s failed", schema, table)
        return FetchResult.failure(f"Failed to load table relationships: {e}")
    except Exception as e:
        logger.exception("Unexpected error loading relationships for %s.%s", schema, table)
        return FetchResult.failure(f"An unexpected error occurred while loading table relationships: {e}")


def make_fetcher(engine):
    """Bind ``engine`` into a ``(schema, table, depth) -> FetchResult`` callable."""
    return partial(fetch_table_relationships, engine)
