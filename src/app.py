from PyQt6.QtWidgets import QApplication
import argparse
import sys

from main_window import MainWindow

import logging
from logging.handlers import RotatingFileHandler

from utils.settings import CONFIG_DIR


def _configure_logging(level=logging.DEBUG):
    """Set up logging for the application.

    - Logs to console via basicConfig
    - Also writes to a rotating file under the config folder's logs directory
    """
    fmt = '%(asctime)s %(levelname)-8s %(name)-20s: %(message)s'
    logging.basicConfig(level=level, format=fmt, force=True)

    for name in ('db.connection', 'db.metadata', 'db.relationships', 'topology', 'ui.topology_view',
                 'main_window'):
        logging.getLogger(name).setLevel(level)
    # SQLAlchemy's own loggers are very chatty at DEBUG
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)

    log_dir = CONFIG_DIR / 'logs'
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'relscope.log'
        handler = RotatingFileHandler(str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt))
        logging.getLogger().addHandler(handler)
        logging.getLogger(__name__).debug("File logging configured: %s", log_file)
    except OSError:
        # file logging is optional; console logging stays active
        logging.getLogger(__name__).exception('Failed to configure file logger')


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="relscope", description="Browse table relationship topologies.")
    parser.add_argument("--url", help="SQLAlchemy database URL to open for this session (not saved)")
    parser.add_argument("--table", help="table to show on start, as table or schema.table (needs --url)")
    parser.add_argument("--quiet", action="store_true", help="log INFO and above only")
    # Qt consumes its own options from sys.argv
    args, _ = parser.parse_known_args(argv)
    if args.table and not args.url:
        parser.error("--table requires --url")
    return args


def _open_from_args(window: MainWindow, args) -> None:
    from db.metadata import default_schema, parse_table_ref

    log = logging.getLogger(__name__)
    try:
        name = window.conn_mgr.add_connection("command line", args.url, save=False)
    except ValueError as e:
        log.error("Cannot open %s: %s", args.url, e)
        return
    window.conn_tree.setCurrentItem(window._add_connection_item(name))
    if not args.table:
        return
    engine = window.conn_mgr.get_connection(name)
    try:
        schema, table = parse_table_ref(args.table, fallback_schema=default_schema(engine) or "main")
    except ValueError as e:
        log.error("Invalid --table value: %s", e)
        return
    window.open_topology(name, schema, table)


def main():
    args = _parse_args(sys.argv[1:])
    _configure_logging(logging.INFO if args.quiet else logging.DEBUG)
    app = QApplication(sys.argv)
    app.setApplicationName("RelScope")
    window = MainWindow()
    if args.url:
        _open_from_args(window, args)
    window.show()
    sys.exit(app.exec())


if __name__ == "__main__":
    main()
