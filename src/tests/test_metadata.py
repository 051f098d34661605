import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from db.metadata import (_call_with_timeout, cached, clear_schema_cache, default_schema,
                         list_schemas, list_tables, parse_table_ref)


@pytest.mark.parametrize("raw, expected", [
    ("orders", ("public", "orders")),
    ("sales.orders", ("sales", "orders")),
    ('"Sales Data"."Order Items"', ("Sales Data", "Order Items")),
    ('"a.b".c', ("a.b", "c")),
    ("  sales.orders ;", ("sales", "orders")),
])
def test_parse_table_ref(raw, expected):
    assert parse_table_ref(raw, fallback_schema="public") == expected


def test_parse_table_ref_without_fallback():
    assert parse_table_ref("orders") == (None, "orders")


def test_parse_table_ref_rejects_empty():
    with pytest.raises(ValueError):
        parse_table_ref("   ")


def test_listing_sqlite():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE b (id INTEGER PRIMARY KEY)"))
        conn.execute(text("CREATE TABLE a (id INTEGER PRIMARY KEY)"))
    assert default_schema(engine) == "main"
    assert list_schemas(engine)[0] == "main"
    assert list_tables(engine, "main") == ["a", "b"]


def test_cache_is_per_engine_and_clearable():
    engine_a, engine_b = object(), object()
    calls = []

    def build(value):
        calls.append(value)
        return value

    assert cached(engine_a, "kind", lambda: build(1)) == 1
    assert cached(engine_a, "kind", lambda: build(2)) == 1
    assert cached(engine_b, "kind", lambda: build(3)) == 3
    clear_schema_cache(engine_a)
    assert cached(engine_a, "kind", lambda: build(4)) == 4
    assert calls == [1, 3, 4]
    clear_schema_cache()


def test_call_with_timeout():
    assert _call_with_timeout(lambda: 42) == 42
    with pytest.raises(KeyError):
        _call_with_timeout(lambda: {}["missing"])
