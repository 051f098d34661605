import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from topology.model import (Direction, FetchResult, Relationship, RelationshipNode,
                            make_key, same_key, split_key, unique_relationships)


def _rel(direction, src, tgt, name, has_more=False, children=None):
    s_schema, s_table = split_key(src)
    t_schema, t_table = split_key(tgt)
    return Relationship(direction, name, s_schema, s_table, "id", t_schema, t_table, "id",
                        has_more=has_more, children=children)


def test_keys():
    assert make_key("public", "orders") == "public.orders"
    assert split_key("public.orders") == ("public", "orders")
    # only the first dot separates schema from table
    assert split_key("public.odd.name") == ("public", "odd.name")
    with pytest.raises(ValueError):
        split_key("orders")
    with pytest.raises(ValueError):
        split_key(".orders")


def test_far_side_depends_on_direction():
    out = _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk1")
    inc = _rel(Direction.INCOMING, "public.orders", "public.customers", "fk1")
    assert out.far_key == "public.customers"
    assert inc.far_key == "public.orders"
    assert out.source_key == inc.source_key == "public.orders"


def test_node_from_wire_shape():
    data = {
        "table": "public.orders",
        "relationships": [{
            "direction": "outgoing",
            "constraintName": "orders_customer_fk",
            "sourceSchema": "public",
            "sourceTable": "orders",
            "sourceColumn": "customer_id",
            "targetSchema": "public",
            "targetTable": "customers",
            "targetColumn": "id",
            "hasMore": True,
            "children": {"table": "public.customers", "relationships": []},
        }],
    }
    node = RelationshipNode.from_dict(data)
    # schema and name recovered from the key
    assert (node.schema, node.name) == ("public", "orders")
    rel = node.relationships[0]
    assert rel.direction is Direction.OUTGOING
    assert rel.has_more is True
    assert rel.children.table == "public.customers"
    assert node.to_dict()["relationships"][0]["constraintName"] == "orders_customer_fk"


def test_from_dict_missing_field():
    with pytest.raises(ValueError):
        Relationship.from_dict({"direction": "outgoing", "sourceSchema": "public"})
    with pytest.raises(ValueError):
        RelationshipNode.from_dict({"relationships": []})


def test_unique_relationships_drops_repeats():
    a = _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk1")
    b = _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk1")
    c = _rel(Direction.INCOMING, "public.orders", "public.customers", "fk1")
    assert unique_relationships([a, b, c]) == (a, c)


def test_same_key_accepts_nodes_and_keys():
    child = RelationshipNode.create("public", "customers")
    assert same_key(child, "public.customers")
    assert same_key("public.customers", child)
    assert not same_key(child, RelationshipNode.create("sales", "customers"))


def test_fetch_result_coerce():
    node = RelationshipNode.create("public", "orders")
    assert FetchResult.coerce(FetchResult.ok(node)).data is node

    ok = FetchResult.coerce({"success": True, "data": {"table": "public.orders", "relationships": []}})
    assert ok.success and ok.data.name == "orders"

    failed = FetchResult.coerce({"success": False, "error": "connection refused"})
    assert not failed.success
    assert failed.error == "connection refused"

    assert not FetchResult.coerce({"success": True, "data": None}).success
    with pytest.raises(TypeError):
        FetchResult.coerce("nope")
