"""Database metadata helpers: schema/table listing, cached introspection and table references.

Introspection goes through SQLAlchemy's inspector. Calls that may block on a
slow driver are run with a timeout so the UI workers never hang forever, and
expensive results are kept in a short-lived per-engine cache.
"""
from typing import Any, Callable, List, Optional, Tuple
import logging
import threading
import time

import sqlparse
from sqlalchemy import inspect
from sqlparse.sql import Identifier

logger = logging.getLogger(__name__)

# engine key -> kind -> (ts_seconds, value)
_CACHE: dict = {}
_CACHE_TTL = 60  # seconds
_CACHE_LOCK = threading.Lock()

# Timeout for short metadata/inspection operations (seconds)
_INTROSPECTION_TIMEOUT = 5
# Whole-schema foreign key reflection can take a while on large catalogs
_SCHEMA_SCAN_TIMEOUT = 30

_SYSTEM_SCHEMAS = {
    "information_schema",
    "pg_catalog",
    "pg_toast",
    "mysql",
    "performance_schema",
    "sys",
}


def _call_with_timeout(func: Callable[[], Any], timeout: int = _INTROSPECTION_TIMEOUT):
    """Run func() in a background thread and return its result or raise on error/timeout.

    This is a best-effort safeguard to prevent slow/unresponsive DB drivers from blocking
    workers indefinitely during introspection. The caller should handle exceptions and
    treat timeouts as introspection failure.
    """
    result = {"ok": False, "value": None, "error": None}

    def _target():
        try:
            result["value"] = func()
            result["ok"] = True
        except Exception as e:
            result["error"] = e

    thr = threading.Thread(target=_target, daemon=True)
    thr.start()
    thr.join(timeout)
    if result["ok"]:
        return result["value"]
    # If thread finished with error, raise it; otherwise treat as timeout
    if result["error"]:
        raise result["error"]
    raise TimeoutError(f"Operation timed out after {timeout} seconds")


def _engine_key(engine: object) -> str:
    return f"engine:{id(engine)}"


def cached(engine: object, kind: str, builder: Callable[[], Any]) -> Any:
    """Return the cached ``kind`` entry for ``engine``, building it when missing or expired."""
    key = _engine_key(engine)
    with _CACHE_LOCK:
        entry = _CACHE.get(key, {}).get(kind)
        if entry and time.time() - entry[0] < _CACHE_TTL:
            return entry[1]
    value = builder()
    with _CACHE_LOCK:
        _CACHE.setdefault(key, {})[kind] = (time.time(), value)
    return value


def clear_schema_cache(engine: Optional[object] = None) -> None:
    """Invalidate cached metadata.

    If engine is None, clear the entire cache. Otherwise clear entries associated with the given
    engine identity. Call this when a connection is removed or the user asks for a refresh.
    """
    with _CACHE_LOCK:
        if engine is None:
            _CACHE.clear()
        else:
            _CACHE.pop(_engine_key(engine), None)


def default_schema(engine) -> Optional[str]:
    try:
        return inspect(engine).default_schema_name
    except Exception:
        logger.debug("Could not determine default schema", exc_info=True)
        return None


def list_schemas(engine) -> List[str]:
    """User schemas of the connection, default schema first, system schemas skipped."""
    inspector = inspect(engine)
    try:
        names = _call_with_timeout(inspector.get_schema_names) or []
    except Exception:
        logger.debug("Could not fetch schema names", exc_info=True)
        names = []
    default = inspector.default_schema_name
    out = []
    for n in names:
        if n in _SYSTEM_SCHEMAS or n.startswith("pg_temp") or n.startswith("pg_toast"):
            continue
        out.append(n)
    if default:
        if default in out:
            out.remove(default)
        out.insert(0, default)
    return out


def list_tables(engine, schema: Optional[str] = None) -> List[str]:
    inspector = inspect(engine)
    tables = _call_with_timeout(lambda: inspector.get_table_names(schema=schema)) or []
    return sorted(tables)


def _split_schema_table(name: str) -> Tuple[Optional[str], str]:
    """Split a possibly schema-qualified identifier into (schema, table).

    Accepts: schema.table, "schema"."table", or unqualified table. This is a forgiving
    parser that supports quoted identifiers containing dots.
    """
    if '"' in name or '`' in name:
        parts = []
        cur = ''
        inq = False
        for ch in name:
            if ch in '"`':
                inq = not inq
                continue
            if ch == '.' and not inq:
                parts.append(cur)
                cur = ''
            else:
                cur += ch
        parts.append(cur)
        parts = [p for p in parts if p != '']
    else:
        parts = name.split('.', 1)

    if len(parts) == 2:
        return parts[0], parts[1]
    return None, parts[0]


def parse_table_ref(text: str, fallback_schema: Optional[str] = None) -> Tuple[Optional[str], str]:
    """Parse a user-entered table reference into ``(schema, table)``.

    Accepts ``table``, ``schema.table`` and quoted forms such as
    ``"Sales Data"."Order Items"``. The schema defaults to ``fallback_schema``.
    """
    raw = (text or "").strip().rstrip(";").strip()
    if not raw:
        raise ValueError("Empty table reference")

    schema = table = None
    statements = sqlparse.parse(raw)
    if statements:
        tokens = [t for t in statements[0].tokens if not t.is_whitespace]
        if len(tokens) == 1 and isinstance(tokens[0], Identifier):
            ident = tokens[0]
            schema = ident.get_parent_name()
            table = ident.get_real_name()

    if not table:
        # Reserved words (user, order, ...) are not parsed as identifiers
        schema, table = _split_schema_table(raw)
    if not table:
        raise ValueError(f"Not a table reference: {text!r}")
    return schema or fallback_schema, table
