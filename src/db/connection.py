import os
import json
from typing import Dict, Any, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError
from pathlib import Path
import codecs
import logging

from utils.settings import CONFIG_DIR

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = CONFIG_DIR / "connections.json"


def _engine_for_url(url: str) -> Engine:
    """Create an engine; SQLite connections are shared with worker threads."""
    parsed = make_url(url)
    kwargs: Dict[str, Any] = {"future": True}
    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(parsed, **kwargs)


_DRIVERS = {
    "postgresql": ("postgresql+psycopg2", 5432),
    "mysql": ("mysql+pymysql", 3306),
}


def build_connection_url(conn_type: str, host: str | None = None, port: int | None = None,
                         user: str | None = None, password: str | None = None,
                         database: str | None = None) -> str:
    """Build a SQLAlchemy URL string from separate connection fields.

    ``conn_type`` is ``sqlite`` (``database`` is the file path), ``postgresql`` or ``mysql``.
    Raises ValueError for unsupported types or missing required fields.
    """
    conn_type = (conn_type or "").lower()
    if conn_type == "sqlite":
        if not database:
            raise ValueError("For sqlite, a database file path is required")
        return f"sqlite:///{os.path.abspath(database)}"
    if conn_type not in _DRIVERS:
        raise ValueError(f"Unsupported DB type: {conn_type}")
    if not host:
        raise ValueError("Host is required for non-sqlite connections")
    drivername, default_port = _DRIVERS[conn_type]
    url = URL.create(
        drivername=drivername,
        username=user or None,
        password=password or None,
        host=host,
        port=int(port) if port else default_port,
        database=database or None,
    )
    return url.render_as_string(hide_password=False)


def check_connection(url: str) -> None:
    """Open a short-lived connection and run ``SELECT 1``. Raises on failure."""
    engine = _engine_for_url(url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    finally:
        engine.dispose()


def _obfuscate_url(url: str, encode: bool) -> str:
    """rot13 the password part of a URL for storage (obfuscation, not encryption)."""
    try:
        parsed = make_url(url)
        if parsed.password:
            op = codecs.encode if encode else codecs.decode
            parsed = parsed.set(password=op(str(parsed.password), 'rot_13'))
        return parsed.render_as_string(hide_password=False)
    except Exception:
        return url


class ConnectionManager:
    """Manage DB connections (engines) and persist connection configs.

    Configs are ``{"type": "sqlite", "path": ...}`` or ``{"type": "url", "url": ...}``.
    Engines are created lazily in ``get_connection`` so startup never touches the network.
    """

    def __init__(self, config_path: Path | None = None):
        self._engines: Dict[str, Engine] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self.config_path = Path(
            config_path) if config_path else DEFAULT_CONFIG_PATH
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_config()

    def _load_config(self) -> None:
        if not self.config_path.exists():
            return
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            # backup the problematic config file and continue with empty configs
            logger.exception("Could not read connection config %s", self.config_path)
            try:
                bad_path = self.config_path.with_suffix(
                    self.config_path.suffix + ".bak")
                with open(self.config_path, "rb") as fsrc, open(bad_path, "wb") as fdst:
                    fdst.write(fsrc.read())
            except OSError:
                pass
            return
        if not isinstance(data, dict):
            return

        for name, cfg in data.items():
            if not isinstance(cfg, dict):
                continue
            if isinstance(cfg.get('url'), str):
                cfg = dict(cfg, url=_obfuscate_url(cfg['url'], encode=False))
            self._configs[name] = cfg

        logger.debug("Loaded connection configs: %r",
                     list(self._configs.keys()))

    def _save_config(self) -> None:
        to_write: Dict[str, Any] = {}
        for name, cfg in self._configs.items():
            cfg_copy = dict(cfg)
            if isinstance(cfg_copy.get('url'), str):
                cfg_copy['url'] = _obfuscate_url(cfg_copy['url'], encode=True)
            to_write[name] = cfg_copy
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(to_write, f, indent=2)
        except OSError:
            # best-effort; the connection stays usable for this session
            logger.exception("Failed to save connection config %s", self.config_path)

    def _log_engine_url(self, name: str, engine: Engine) -> None:
        """Log the engine's connection URL with password hidden for diagnostics."""
        try:
            safe = engine.url.render_as_string(hide_password=True)
        except Exception:
            safe = '<engine-without-url>'
        logger.debug("Engine for %s created: %s", name, safe)

    def _unique_name(self, name: str) -> str:
        base = name
        idx = 1
        while name in self._engines or name in self._configs:
            name = f"{base} ({idx})"
            idx += 1
        return name

    def add_sqlite_connection(self, path: str) -> str:
        """Add a SQLite connection by file path. Returns a connection name."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"SQLite file not found: {path}")
        name = self._unique_name(f"SQLite: {os.path.basename(path)}")
        engine = _engine_for_url(f"sqlite:///{os.path.abspath(path)}")
        self._engines[name] = engine
        self._log_engine_url(name, engine)
        self._configs[name] = {"type": "sqlite", "path": os.path.abspath(path)}
        self._save_config()
        return name

    def add_connection(self, name: str, url: str, save: bool = True) -> str:
        """Add a connection from a SQLAlchemy URL (``postgresql+psycopg2://...``).

        Returns the (possibly de-duplicated) connection name. Raises ValueError on a malformed URL.
        """
        try:
            engine = _engine_for_url(url)
        except ArgumentError as e:
            raise ValueError(f"Invalid database URL: {e}") from e
        name = self._unique_name(name.strip() or engine.url.render_as_string(hide_password=True))
        self._engines[name] = engine
        self._log_engine_url(name, engine)
        if save:
            self._configs[name] = {"type": "url", "url": url}
            self._save_config()
        return name

    def get_connection(self, name: str) -> Engine:
        """Return the SQLAlchemy Engine for the given connection name, creating it from config if needed."""
        if name not in self._engines:
            cfg = self._configs.get(name)
            if cfg is None:
                raise RuntimeError(f"Connection '{name}' is not available")
            if cfg.get('type') == 'sqlite':
                path = cfg.get('path')
                if not path:
                    raise RuntimeError('Missing sqlite path in config')
                url = f"sqlite:///{os.path.abspath(path)}"
            else:
                url = cfg.get('url')
                if not url:
                    raise RuntimeError(f"Missing URL in config for connection '{name}'")
            engine = _engine_for_url(url)
            self._engines[name] = engine
            self._log_engine_url(name, engine)
        return self._engines[name]

    def list_connections(self) -> list:
        # merge keys from configs and engines to preserve configs without live engine
        return sorted(set(self._configs.keys()) | set(self._engines.keys()))

    def remove_connection(self, name: str) -> Optional[Engine]:
        """Forget a connection; returns the disposed engine (if any) so callers can drop caches."""
        engine = self._engines.pop(name, None)
        if engine is not None:
            engine.dispose()
        if name in self._configs:
            del self._configs[name]
            self._save_config()
        return engine
