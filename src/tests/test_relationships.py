import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from db.metadata import clear_schema_cache
from db.relationships import (ForeignKey, ForeignKeyIndex, build_relationship_tree,
                              fetch_table_relationships, get_foreign_key_index,
                              get_table_relationships, make_fetcher)
from topology.model import Direction

DDL = [
    "CREATE TABLE regions (id INTEGER PRIMARY KEY, name TEXT)",
    "CREATE TABLE customers (id INTEGER PRIMARY KEY, region_id INTEGER REFERENCES regions(id))",
    "CREATE TABLE products (id INTEGER PRIMARY KEY, name TEXT)",
    "CREATE TABLE orders (id INTEGER PRIMARY KEY,"
    " customer_id INTEGER REFERENCES customers(id),"
    " product_id INTEGER REFERENCES products(id))",
    "CREATE TABLE employees (id INTEGER PRIMARY KEY, manager_id INTEGER REFERENCES employees(id))",
    "CREATE TABLE order_lines (order_id INTEGER, line INTEGER, PRIMARY KEY (order_id, line))",
    "CREATE TABLE shipments (id INTEGER PRIMARY KEY, order_id INTEGER, line INTEGER,"
    " CONSTRAINT fk_shipment_line FOREIGN KEY (order_id, line) REFERENCES order_lines(order_id, line))",
    "CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)",
]


@pytest.fixture
def engine():
    # introspection runs in helper threads, so share one connection across threads
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with eng.begin() as conn:
        for stmt in DDL:
            conn.execute(text(stmt))
    clear_schema_cache()
    yield eng
    clear_schema_cache(eng)
    eng.dispose()


def test_index_covers_all_tables(engine):
    index = get_foreign_key_index(engine)
    assert index.has_table("main", "notes")
    assert not index.has_relationships("main", "notes")
    assert [fk.referred_table for fk in index.outgoing("main", "orders")] == ["customers", "products"]
    assert [fk.table for fk in index.incoming("main", "customers")] == ["orders"]
    # cached per engine
    assert get_foreign_key_index(engine) is index


def test_relationships_one_level(engine):
    root = get_table_relationships(engine, "main", "orders", depth=1)
    assert root.table == "main.orders"
    assert [(r.direction, r.far_key) for r in root.relationships] == [
        (Direction.OUTGOING, "main.customers"),
        (Direction.OUTGOING, "main.products"),
    ]
    rel = root.relationships[0]
    assert (rel.source_column, rel.target_column) == ("customer_id", "id")
    assert rel.constraint_name == "fk_orders_customer_id_customers"
    assert rel.has_more
    assert all(r.children is None for r in root.relationships)


def test_incoming_keeps_foreign_key_orientation(engine):
    root = get_table_relationships(engine, "main", "customers", depth=1)
    incoming = [r for r in root.relationships if r.direction == Direction.INCOMING]
    assert len(incoming) == 1
    rel = incoming[0]
    assert rel.source_key == "main.orders"
    assert rel.target_key == "main.customers"
    assert (rel.source_column, rel.target_column) == ("customer_id", "id")
    assert rel.far_key == "main.orders"


def test_nested_children(engine):
    root = get_table_relationships(engine, "main", "orders", depth=2)
    customers = root.relationships[0].children
    assert customers.table == "main.customers"
    assert {r.far_key for r in customers.relationships} == {"main.regions", "main.orders"}
    # depth exhausted below the second level
    assert all(r.children is None for r in customers.relationships)


def test_self_reference_listed_once(engine):
    root = get_table_relationships(engine, "main", "employees", depth=3)
    assert len(root.relationships) == 1
    rel = root.relationships[0]
    assert rel.direction == Direction.OUTGOING
    assert rel.far_key == "main.employees"
    assert rel.children is None


def test_composite_foreign_key(engine):
    root = get_table_relationships(engine, "main", "shipments", depth=1)
    rel = root.relationships[0]
    assert rel.constraint_name == "fk_shipment_line"
    assert rel.source_column == "order_id, line"
    assert rel.target_column == "order_id, line"


def test_fetch_contract(engine):
    fetch = make_fetcher(engine)
    ok = fetch("main", "orders", 3)
    assert ok.success
    assert ok.data.name == "orders"

    missing = fetch_table_relationships(engine, "main", "nope")
    assert not missing.success
    assert "main.nope" in missing.error

    lonely = fetch("main", "notes", 3)
    assert lonely.success
    assert lonely.data.relationships == ()


def test_build_tree_from_index():
    index = ForeignKeyIndex([
        ForeignKey("fk_ab", "s", "a", ("b_id",), "s", "b", ("id",)),
        ForeignKey("fk_ba", "s", "b", ("a_id",), "s", "a", ("id",)),
    ])
    root = build_relationship_tree(index, "s", "a", depth=5)
    # a -> b, and b references a back
    kinds = sorted((r.direction.value, r.constraint_name) for r in root.relationships)
    assert kinds == [("incoming", "fk_ba"), ("outgoing", "fk_ab")]
    # both relationships reach b; b's own relationships point back at a and stop there
    for rel in root.relationships:
        assert rel.children.table == "s.b"
        assert all(r.children is None for r in rel.children.relationships)
