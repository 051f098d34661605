import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from topology.errors import StaleTargetError
from topology.merge import merge_or_raise, merge_relationships, prune_unexpanded
from topology.model import Direction, Relationship, RelationshipNode, split_key


def _rel(direction, src, tgt, name, has_more=False, children=None):
    s_schema, s_table = split_key(src)
    t_schema, t_table = split_key(tgt)
    return Relationship(direction, name, s_schema, s_table, "id", t_schema, t_table, "id",
                        has_more=has_more, children=children)


def _orders_tree():
    return RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", has_more=True),
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod"),
    ])


def _customers_fetch():
    return RelationshipNode.create("public", "customers", [
        _rel(Direction.OUTGOING, "public.customers", "public.regions", "fk_region"),
    ])


def test_graft_into_leaf_neighbour():
    root = _orders_tree()
    fetched = _customers_fetch()
    new_root, found = merge_relationships(root, "public.customers", fetched)
    assert found
    assert new_root.relationships[0].children is fetched
    # untouched branch is shared, not copied
    assert new_root.relationships[1] is root.relationships[1]
    # input tree unchanged
    assert root.relationships[0].children is None


def test_merge_at_root_replaces_relationships():
    root = _orders_tree()
    fetched = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod"),
    ])
    new_root, found = merge_relationships(root, "public.orders", fetched)
    assert found
    assert new_root.relationships == fetched.relationships
    assert new_root.table == root.table


def test_merge_nested_copies_only_the_path():
    customers = _customers_fetch()
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", children=customers),
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod"),
    ])
    regions = RelationshipNode.create("public", "regions", [
        _rel(Direction.OUTGOING, "public.regions", "public.countries", "fk_country"),
    ])
    new_root = merge_or_raise(root, "public.regions", regions)
    grafted = new_root.relationships[0].children.relationships[0]
    assert grafted.children is regions
    assert new_root.relationships[1] is root.relationships[1]
    assert customers.relationships[0].children is None


def test_miss_returns_same_object():
    root = _orders_tree()
    new_root, found = merge_relationships(root, "public.nowhere", _customers_fetch())
    assert not found
    assert new_root is root
    with pytest.raises(StaleTargetError):
        merge_or_raise(root, "public.nowhere", _customers_fetch())


def test_prune_unexpanded():
    customers = _customers_fetch()
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", children=customers),
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod"),
    ])
    pruned = prune_unexpanded(root, set())
    assert pruned.relationships[0].children is None
    assert pruned.relationships[1] is root.relationships[1]

    kept = prune_unexpanded(root, {"public.customers"})
    assert kept is root
