import re
import sys
from pathlib import Path

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from topology.compiler import (STYLE_EXPAND, STYLE_FOCUS, STYLE_INCOMING, compile_diagram,
                               sanitize_id, sanitize_label)
from topology.merge import merge_or_raise
from topology.model import Direction, Relationship, RelationshipNode, split_key


def _rel(direction, src, tgt, name, has_more=False, children=None, src_col="id", tgt_col="id"):
    s_schema, s_table = split_key(src)
    t_schema, t_table = split_key(tgt)
    return Relationship(direction, name, s_schema, s_table, src_col, t_schema, t_table, tgt_col,
                        has_more=has_more, children=children)


def _table_edges(ir):
    return [e for e in ir.edges if e.style != STYLE_EXPAND]


def test_initial_load_nodes_and_edges():
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", src_col="customer_id"),
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod", src_col="product_id"),
    ])
    ir = compile_diagram(root)
    assert [n.node_id for n in ir.nodes] == ["public_orders", "public_customers", "public_products"]
    assert len(ir.edges) == 2
    assert ir.nodes[0].style == STYLE_FOCUS
    assert ir.edges[0].label == "customer_id → id"
    assert (ir.edges[0].source_id, ir.edges[0].target_id) == ("public_orders", "public_customers")


def test_expansion_adds_one_node_and_one_edge():
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", has_more=True),
        _rel(Direction.OUTGOING, "public.orders", "public.products", "fk_prod"),
    ])
    before = compile_diagram(root)
    assert before.expand_targets() == {"expand_public_customers": "public.customers"}

    fetched = RelationshipNode.create("public", "customers", [
        _rel(Direction.OUTGOING, "public.customers", "public.regions", "fk_region"),
        # the same foreign key seen from the customers side
        _rel(Direction.INCOMING, "public.orders", "public.customers", "fk_cust", has_more=True),
    ])
    merged = merge_or_raise(root, "public.customers", fetched)
    after = compile_diagram(merged, expanded=frozenset({"public.customers"}))

    assert len(after.table_nodes()) == len(before.table_nodes()) + 1
    assert len(_table_edges(after)) == len(_table_edges(before)) + 1
    assert after.node("public_regions") is not None
    assert after.expand_targets() == {}
    products_before = [e for e in before.edges if e.target_id == "public_products"]
    products_after = [e for e in after.edges if e.target_id == "public_products"]
    assert products_before == products_after


def test_unexpanded_children_are_not_drawn():
    customers = RelationshipNode.create("public", "customers", [
        _rel(Direction.OUTGOING, "public.customers", "public.regions", "fk_region"),
    ])
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_cust", children=customers),
    ])
    ir = compile_diagram(root)
    assert ir.node("public_regions") is None


def test_cycle_terminates_without_duplicate_nodes():
    inner_b = RelationshipNode.create("s", "b", [_rel(Direction.OUTGOING, "s.b", "s.a", "fk_ba")])
    inner_a = RelationshipNode.create("s", "a", [_rel(Direction.OUTGOING, "s.a", "s.b", "fk_ab",
                                                      children=inner_b)])
    b = RelationshipNode.create("s", "b", [_rel(Direction.OUTGOING, "s.b", "s.a", "fk_ba", children=inner_a)])
    root = RelationshipNode.create("s", "a", [_rel(Direction.OUTGOING, "s.a", "s.b", "fk_ab", children=b)])

    ir = compile_diagram(root, expanded=frozenset({"s.a", "s.b"}))
    ids = [n.node_id for n in ir.nodes]
    assert len(ids) == len(set(ids)) == 2
    assert len(ir.edges) == 2


def test_every_copy_of_an_expanded_table_is_walked():
    # b's fetch reached a again but stopped before c's neighbours; the copy of a
    # under r still holds what was expanded below c
    c_deep = RelationshipNode.create("s", "c", [_rel(Direction.OUTGOING, "s.c", "s.d", "fk_cd")])
    a_deep = RelationshipNode.create("s", "a", [_rel(Direction.OUTGOING, "s.a", "s.c", "fk_ac",
                                                     has_more=True, children=c_deep)])
    a_shallow = RelationshipNode.create("s", "a", [_rel(Direction.OUTGOING, "s.a", "s.c", "fk_ac",
                                                        has_more=True)])
    b = RelationshipNode.create("s", "b", [_rel(Direction.OUTGOING, "s.b", "s.a", "fk_ba",
                                                has_more=True, children=a_shallow)])
    root = RelationshipNode.create("s", "r", [
        _rel(Direction.OUTGOING, "s.r", "s.b", "fk_rb", has_more=True, children=b),
        _rel(Direction.OUTGOING, "s.r", "s.a", "fk_ra", has_more=True, children=a_deep),
    ])

    ir = compile_diagram(root, expanded=frozenset({"s.a", "s.b", "s.c"}))
    ids = [n.node_id for n in ir.table_nodes()]
    assert sorted(ids) == ["s_a", "s_b", "s_c", "s_d", "s_r"]
    assert len(ids) == len(set(ids))
    assert sorted(e.constraint_name for e in _table_edges(ir)) == ["fk_ac", "fk_ba", "fk_cd", "fk_ra", "fk_rb"]
    assert ir.expand_targets() == {}


def test_parallel_foreign_keys_keep_separate_edges():
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.addresses", "fk_billing", src_col="billing_id"),
        _rel(Direction.OUTGOING, "public.orders", "public.addresses", "fk_shipping", src_col="shipping_id"),
    ])
    ir = compile_diagram(root)
    assert len(ir.nodes) == 2
    assert sorted(e.constraint_name for e in ir.edges) == ["fk_billing", "fk_shipping"]


def test_affordances():
    root = RelationshipNode.create("public", "employees", [
        # self reference: never gets an expand node
        _rel(Direction.OUTGOING, "public.employees", "public.employees", "fk_manager", has_more=True),
        _rel(Direction.OUTGOING, "public.employees", "public.departments", "fk_dept", has_more=True),
        _rel(Direction.INCOMING, "public.timesheets", "public.employees", "fk_emp", has_more=True),
        _rel(Direction.INCOMING, "public.timesheets", "public.employees", "fk_approver", has_more=True),
    ])
    ir = compile_diagram(root)
    assert ir.expand_targets() == {
        "expand_public_departments": "public.departments",
        "expand_public_timesheets": "public.timesheets",
    }
    assert ir.node("public_timesheets").style == STYLE_INCOMING
    # affordance nodes carry no table key
    assert all(n.key is None for n in ir.nodes if n.expandable)

    loading = compile_diagram(root, loading=frozenset({"public.departments"}))
    assert "expand_public_departments" not in loading.expand_targets()


def test_no_duplicate_table_keys():
    root = RelationshipNode.create("public", "orders", [
        _rel(Direction.OUTGOING, "public.orders", "public.customers", "fk_a", has_more=True),
        _rel(Direction.INCOMING, "public.customers", "public.orders", "fk_b", has_more=True),
    ])
    ir = compile_diagram(root)
    keys = [n.key for n in ir.nodes if n.key is not None]
    assert len(keys) == len(set(keys)) == 2
    assert len(ir.expand_targets()) == 1


def test_sanitize_id():
    assert sanitize_id("public.order-items") == "public_order_items"
    for raw in ("sales data.Order Items", "ü.ñ", "a;b--c"):
        out = sanitize_id(raw)
        assert re.fullmatch(r"[A-Za-z0-9_]*", out)
        assert sanitize_id(raw) == out


def test_sanitize_label():
    out = sanitize_label('a<b>"c"|[x](y){z}\'')
    for ch in '<>"|[](){}\'':
        assert ch not in out.replace("&#", "").replace(";", "")
    assert sanitize_label("plain_name") == "plain_name"
    assert sanitize_label("x<y") == "x&lt;y"
