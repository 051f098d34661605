from PyQt6.QtWidgets import (
    QMainWindow,
    QWidget,
    QHBoxLayout,
    QFileDialog,
    QMessageBox,
    QTreeWidget,
    QTreeWidgetItem,
    QSplitter,
    QTabWidget,
    QDialog,
    QStyle,
    QMenu,
    QInputDialog,
    QLabel,
    QTabBar,
)
from PyQt6.QtGui import QAction, QDesktopServices
from PyQt6.QtCore import Qt, QUrl, QByteArray
import traceback
import logging
import os

from db.connection import ConnectionManager
from db.metadata import clear_schema_cache, default_schema, list_schemas, list_tables, parse_table_ref
from topology.model import make_key
from ui.connection_dialog import ConnectionDialog
from ui.topology_view import TopologyWidget
from utils.settings import CONFIG_DIR, load_app_state, load_topology_settings, save_app_state
from utils.worker import WorkerPool

logger = logging.getLogger(__name__)

# placeholder child so unloaded nodes show an expand arrow
_PLACEHOLDER = ("placeholder", None)


class MainWindow(QMainWindow):
    def __init__(self, conn_mgr: ConnectionManager | None = None):
        super().__init__()
        self.setWindowTitle("RelScope")
        self.resize(1100, 720)

        self.conn_mgr = conn_mgr or ConnectionManager()
        self.topology_settings = load_topology_settings()

        self._init_actions()
        self._init_ui()
        self._restore_app_state()

    def _init_actions(self):
        menubar = self.menuBar()
        file_menu = menubar.addMenu("File")

        open_sqlite_action = QAction("Open SQLite Database", self)
        open_sqlite_action.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogOpenButton))
        open_sqlite_action.triggered.connect(self.open_sqlite_db)
        file_menu.addAction(open_sqlite_action)

        new_conn_action = QAction("New Connection...", self)
        new_conn_action.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DriveNetIcon))
        new_conn_action.triggered.connect(self.open_new_connection_dialog)
        file_menu.addAction(new_conn_action)

        open_table_action = QAction("Open Table...", self)
        open_table_action.setShortcut("Ctrl+T")
        open_table_action.triggered.connect(self.open_table_prompt)
        file_menu.addAction(open_table_action)

        file_menu.addSeparator()
        exit_action = QAction("Exit", self)
        exit_action.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogCloseButton))
        exit_action.triggered.connect(self.close)
        file_menu.addAction(exit_action)

        view_menu = menubar.addMenu("View")
        topology_action = QAction("Show Topology", self)
        topology_action.setShortcut("Ctrl+G")
        topology_action.triggered.connect(self.show_topology_for_selected)
        view_menu.addAction(topology_action)

        refresh_action = QAction("Refresh Schema", self)
        refresh_action.setShortcut("F5")
        refresh_action.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_BrowserReload))
        refresh_action.triggered.connect(self.refresh_selected_connection)
        view_menu.addAction(refresh_action)

        settings_menu = menubar.addMenu("Settings")
        open_config_action = QAction("Open Config Folder", self)
        open_config_action.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DirOpenIcon))
        open_config_action.setToolTip("Open the application's configuration directory")
        open_config_action.triggered.connect(self.open_config_folder)
        settings_menu.addAction(open_config_action)

    def _init_ui(self):
        central = QWidget()
        self.setCentralWidget(central)
        layout = QHBoxLayout(central)

        # Left: connections -> schemas -> tables
        self.conn_tree = QTreeWidget()
        self.conn_tree.setMaximumWidth(360)
        self.conn_tree.setColumnCount(1)
        self.conn_tree.setHeaderHidden(True)
        self.conn_tree.itemDoubleClicked.connect(self.on_left_item_double_clicked)
        self.conn_tree.itemExpanded.connect(self._on_item_expanded)
        self.conn_tree.setContextMenuPolicy(Qt.ContextMenuPolicy.CustomContextMenu)
        self.conn_tree.customContextMenuRequested.connect(self._show_tree_context_menu)

        for name in self.conn_mgr.list_connections():
            self._add_connection_item(name)

        # Right: topology tabs
        self.topology_tabs = QTabWidget()
        self.topology_tabs.setTabsClosable(True)
        self.topology_tabs.tabCloseRequested.connect(self._on_topology_tab_close_requested)

        self._empty_hint = QLabel("Double-click a table (or use File > Open Table...) to show its topology.")
        self._empty_hint.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self._empty_hint.setStyleSheet("color: #888888;")

        splitter = QSplitter(Qt.Orientation.Horizontal)
        splitter.addWidget(self.conn_tree)
        splitter.addWidget(self.topology_tabs)
        splitter.setStretchFactor(1, 1)
        layout.addWidget(splitter)

        self.topology_tabs.addTab(self._empty_hint, "Start")
        self.topology_tabs.tabBar().setTabButton(0, QTabBar.ButtonPosition.RightSide, None)

    # -- connection tree -------------------------------------------------

    def _add_connection_item(self, name: str) -> QTreeWidgetItem:
        """Add a top-level connection node; schemas are loaded on first expand."""
        root = QTreeWidgetItem(self.conn_tree, [name])
        root.setData(0, Qt.ItemDataRole.UserRole, ("connection", name))
        root.setIcon(0, self.style().standardIcon(QStyle.StandardPixmap.SP_DriveNetIcon))
        placeholder = QTreeWidgetItem(root, ["Loading..."])
        placeholder.setData(0, Qt.ItemDataRole.UserRole, _PLACEHOLDER)
        return root

    def _on_item_expanded(self, item: QTreeWidgetItem):
        if item.childCount() != 1:
            return
        if item.child(0).data(0, Qt.ItemDataRole.UserRole) != _PLACEHOLDER:
            return
        data = item.data(0, Qt.ItemDataRole.UserRole)
        if data and data[0] == "connection":
            self._load_schemas_for_connection(item, data[1])
        elif data and data[0] == "schema":
            self._load_tables_for_schema(item, data[1], data[2])

    def _error_item(self, parent: QTreeWidgetItem, text: str) -> None:
        err = QTreeWidgetItem(parent, [text])
        err.setData(0, Qt.ItemDataRole.UserRole, ("error", None))
        err.setIcon(0, self.style().standardIcon(QStyle.StandardPixmap.SP_MessageBoxCritical))

    def _load_schemas_for_connection(self, root_item: QTreeWidgetItem, connection_name: str):
        """(Re)load schema children for a connection node."""
        root_item.takeChildren()
        try:
            engine = self.conn_mgr.get_connection(connection_name)
            schemas = list_schemas(engine)
            if not schemas:
                schemas = [default_schema(engine) or "main"]
        except Exception as e:
            logger.exception("Failed to load schemas for connection: %s", connection_name)
            self._error_item(root_item, f"<failed to load schemas: {e}>")
            return
        logger.debug("Schemas for %s: %r", connection_name, schemas)
        for schema in schemas:
            item = QTreeWidgetItem(root_item, [schema])
            item.setData(0, Qt.ItemDataRole.UserRole, ("schema", connection_name, schema))
            item.setIcon(0, self.style().standardIcon(QStyle.StandardPixmap.SP_DirIcon))
            placeholder = QTreeWidgetItem(item, ["Loading..."])
            placeholder.setData(0, Qt.ItemDataRole.UserRole, _PLACEHOLDER)
        # a single schema is opened right away
        if len(schemas) == 1:
            root_item.child(0).setExpanded(True)

    def _load_tables_for_schema(self, schema_item: QTreeWidgetItem, connection_name: str, schema: str):
        schema_item.takeChildren()
        try:
            engine = self.conn_mgr.get_connection(connection_name)
            tables = list_tables(engine, schema)
        except Exception as e:
            logger.exception("Failed to load tables for %s schema %s", connection_name, schema)
            self._error_item(schema_item, f"<failed to load tables: {e}>")
            return
        if not tables:
            logger.debug("No tables returned for %s (schema=%r)", connection_name, schema)
        for t in tables:
            child = QTreeWidgetItem(schema_item, [t])
            child.setData(0, Qt.ItemDataRole.UserRole, ("table", connection_name, schema, t))
            child.setIcon(0, self.style().standardIcon(QStyle.StandardPixmap.SP_FileIcon))

    def find_connection_item(self, connection_name: str) -> QTreeWidgetItem | None:
        for i in range(self.conn_tree.topLevelItemCount()):
            item = self.conn_tree.topLevelItem(i)
            data = item.data(0, Qt.ItemDataRole.UserRole)
            if data and data[1] == connection_name:
                return item
        return None

    def _selected_connection_name(self) -> str | None:
        item = self.conn_tree.currentItem()
        if item:
            data = item.data(0, Qt.ItemDataRole.UserRole)
            if data and data[0] in ("connection", "schema", "table"):
                return data[1]
        # fallback to first connection if exists
        if self.conn_tree.topLevelItemCount() > 0:
            data = self.conn_tree.topLevelItem(0).data(0, Qt.ItemDataRole.UserRole)
            return data[1] if data else None
        return None

    def on_left_item_double_clicked(self, item: QTreeWidgetItem, column: int):
        """Double-click on a table opens its topology; other nodes just toggle."""
        data = item.data(0, Qt.ItemDataRole.UserRole)
        if data and data[0] == "table":
            _, conn_name, schema, table = data
            self.open_topology(conn_name, schema, table)

    def _show_tree_context_menu(self, pos):
        item = self.conn_tree.itemAt(pos)
        if item is None:
            return
        data = item.data(0, Qt.ItemDataRole.UserRole)
        if not data:
            return
        menu = QMenu(self)
        if data[0] == "table":
            _, conn_name, schema, table = data
            act = menu.addAction("Show Topology")
            act.triggered.connect(lambda: self.open_topology(conn_name, schema, table))
        elif data[0] == "connection":
            conn_name = data[1]
            refresh = menu.addAction("Refresh")
            refresh.triggered.connect(lambda: self._refresh_connection(conn_name))
            remove = menu.addAction("Remove Connection")
            remove.triggered.connect(lambda: self._delete_connection_item(conn_name, item))
        else:
            return
        menu.exec(self.conn_tree.viewport().mapToGlobal(pos))

    def _refresh_connection(self, connection_name: str):
        try:
            engine = self.conn_mgr.get_connection(connection_name)
        except Exception as e:
            QMessageBox.critical(self, "Refresh failed", str(e))
            return
        clear_schema_cache(engine)
        item = self.find_connection_item(connection_name)
        if item is not None:
            self._load_schemas_for_connection(item, connection_name)
            item.setExpanded(True)

    def refresh_selected_connection(self):
        name = self._selected_connection_name()
        if name is not None:
            self._refresh_connection(name)

    def _delete_connection_item(self, connection_name: str, tree_item: QTreeWidgetItem | None = None):
        resp = QMessageBox.question(self, "Remove connection", f"Remove connection '{connection_name}'?",
                                    QMessageBox.StandardButton.Yes | QMessageBox.StandardButton.No)
        if resp != QMessageBox.StandardButton.Yes:
            return
        # close topology tabs of this connection first
        for i in reversed(range(self.topology_tabs.count())):
            w = self.topology_tabs.widget(i)
            if isinstance(w, TopologyWidget) and w.property("connection_name") == connection_name:
                self._on_topology_tab_close_requested(i)
        engine = self.conn_mgr.remove_connection(connection_name)
        if engine is not None:
            clear_schema_cache(engine)
        if tree_item is not None:
            idx = self.conn_tree.indexOfTopLevelItem(tree_item)
            if idx >= 0:
                self.conn_tree.takeTopLevelItem(idx)

    # -- connections -----------------------------------------------------

    def _show_error(self, title: str, e: Exception):
        dlg = QMessageBox(self)
        dlg.setIcon(QMessageBox.Icon.Critical)
        dlg.setWindowTitle(title)
        dlg.setText(str(e))
        dlg.setDetailedText(traceback.format_exc())
        dlg.exec()

    def open_sqlite_db(self):
        path, _ = QFileDialog.getOpenFileName(self, "Select SQLite database file", "",
                                              "SQLite Files (*.db *.sqlite *.sqlite3);;All Files (*)")
        if not path:
            return
        try:
            name = self.conn_mgr.add_sqlite_connection(path)
        except Exception as e:
            self._show_error("Error", e)
            return
        item = self._add_connection_item(name)
        self.conn_tree.setCurrentItem(item)
        item.setExpanded(True)

    def open_new_connection_dialog(self):
        dlg = ConnectionDialog(self)
        if dlg.exec() != QDialog.DialogCode.Accepted:
            return
        data = dlg.get_data()
        try:
            added = self.conn_mgr.add_connection(data.get("name") or "", data["url"])
        except Exception as e:
            self._show_error("Connection error", e)
            return
        item = self._add_connection_item(added)
        self.conn_tree.setCurrentItem(item)

    # -- topology tabs ---------------------------------------------------

    def open_topology(self, connection_name: str, schema: str, table: str) -> TopologyWidget | None:
        """Open (or focus) the topology tab for ``schema.table`` on a connection."""
        title = f"{connection_name}/{make_key(schema, table)}"
        for i in range(self.topology_tabs.count()):
            w = self.topology_tabs.widget(i)
            if isinstance(w, TopologyWidget) and self.topology_tabs.tabToolTip(i) == title:
                self.topology_tabs.setCurrentIndex(i)
                return w
        try:
            engine = self.conn_mgr.get_connection(connection_name)
        except Exception as e:
            self._show_error("Connection error", e)
            return None
        widget = TopologyWidget(engine, schema, table, settings=self.topology_settings)
        widget.setProperty("connection_name", connection_name)
        widget.focus_requested.connect(
            lambda s, t, conn=connection_name: self.open_topology(conn, s, t))
        idx = self.topology_tabs.addTab(widget, make_key(schema, table))
        self.topology_tabs.setTabToolTip(idx, title)
        self.topology_tabs.setCurrentIndex(idx)
        logger.debug("Opened topology tab %s", title)
        widget.start()
        return widget

    def show_topology_for_selected(self):
        item = self.conn_tree.currentItem()
        data = item.data(0, Qt.ItemDataRole.UserRole) if item else None
        if data and data[0] == "table":
            _, conn_name, schema, table = data
            self.open_topology(conn_name, schema, table)
            return
        self.open_table_prompt()

    def open_table_prompt(self):
        """Ask for a (possibly schema-qualified) table name on the selected connection."""
        conn_name = self._selected_connection_name()
        if conn_name is None:
            QMessageBox.information(self, "No connection", "Add a connection first.")
            return
        text, ok = QInputDialog.getText(self, "Open Table",
                                        f"Table on {conn_name} (table, schema.table or \"schema\".\"table\"):")
        if not ok or not text.strip():
            return
        try:
            engine = self.conn_mgr.get_connection(conn_name)
            fallback = default_schema(engine)
            if fallback is None:
                schemas = list_schemas(engine)
                fallback = schemas[0] if schemas else "public"
            schema, table = parse_table_ref(text, fallback_schema=fallback)
        except ValueError as e:
            QMessageBox.warning(self, "Invalid table", str(e))
            return
        except Exception as e:
            self._show_error("Connection error", e)
            return
        self.open_topology(conn_name, schema, table)

    def _on_topology_tab_close_requested(self, index: int):
        if index < 0 or index >= self.topology_tabs.count():
            return
        widget = self.topology_tabs.widget(index)
        if widget is self._empty_hint:
            return
        self.topology_tabs.removeTab(index)
        if isinstance(widget, TopologyWidget):
            widget.dispose()
        if widget is not None:
            widget.deleteLater()

    # -- misc ------------------------------------------------------------

    def open_config_folder(self):
        """Open the user configuration directory in the OS file manager."""
        path = CONFIG_DIR
        path.mkdir(parents=True, exist_ok=True)
        if os.name == "nt":
            try:
                os.startfile(str(path))
                return
            except OSError:
                # fallback to QDesktopServices
                pass
        if not QDesktopServices.openUrl(QUrl.fromLocalFile(str(path))):
            QMessageBox.critical(self, "Open folder error", f"Failed to open config folder: {path}")

    def _restore_app_state(self):
        """Restore window geometry and the last selected connection."""
        state = load_app_state()
        geometry = state.get("geometry")
        if isinstance(geometry, str):
            self.restoreGeometry(QByteArray.fromHex(geometry.encode("ascii")))
        last = state.get("last_connection")
        if isinstance(last, str):
            item = self.find_connection_item(last)
            if item is not None:
                self.conn_tree.setCurrentItem(item)

    def closeEvent(self, event):
        """Tear down open topology sessions and save window state."""
        for i in range(self.topology_tabs.count()):
            w = self.topology_tabs.widget(i)
            if isinstance(w, TopologyWidget):
                w.dispose()
        WorkerPool.wait_for_running()
        state = {"geometry": bytes(self.saveGeometry().toHex()).decode("ascii")}
        last = self._selected_connection_name()
        if last:
            state["last_connection"] = last
        try:
            save_app_state(state)
        except OSError:
            # do not block exit
            logger.exception("Failed to save app state")
        super().closeEvent(event)
