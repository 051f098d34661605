from PyQt6.QtWidgets import (
    QWidget,
    QVBoxLayout,
    QHBoxLayout,
    QLabel,
    QPushButton,
    QStackedWidget,
    QGraphicsView,
    QGraphicsScene,
    QFileDialog,
    QMessageBox,
    QStyle,
)
from PyQt6.QtSvg import QSvgRenderer
from PyQt6.QtSvgWidgets import QGraphicsSvgItem
from PyQt6.QtCore import Qt, QByteArray, QRectF, QTimer, pyqtSignal
from PyQt6.QtGui import QGuiApplication, QPainter
import logging

from db.relationships import make_fetcher
from topology.controller import SessionState, TopologySession
from topology.errors import FetchError, RenderError
from topology.mermaid import to_mermaid
from topology.model import FetchResult, make_key, split_key
from topology.render import RenderTracker, SvgHitMap, normalize_svg_size, render_svg
from topology.viewport import Viewport
from utils.settings import load_topology_settings
from utils.worker import WorkerPool

logger = logging.getLogger(__name__)

# Pointer travel (pixels) below which a press/release pair counts as a click
_CLICK_SLOP = 4

LEGEND_TEXT = ("Blue: focus table  |  Green: tables referencing it  |  "
               "Scroll to zoom, drag to pan  |  Click \"+\" to expand")


class DiagramView(QGraphicsView):
    """Shows one rendered SVG and turns wheel/drag/click input into viewport and node events.

    The zoom/pan numbers live in a ``Viewport``; this view only applies them as the
    SVG item's transform. Clicks are reported as diagram node ids resolved through
    the ``SvgHitMap`` of the current SVG.
    """

    node_clicked = pyqtSignal(str)
    node_double_clicked = pyqtSignal(str)
    zoom_changed = pyqtSignal(int)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.viewport_state = Viewport()
        self._scene = QGraphicsScene(self)
        self._scene.setSceneRect(QRectF(-100000, -100000, 200000, 200000))
        self.setScene(self._scene)
        self.setRenderHint(QPainter.RenderHint.Antialiasing)
        self.setRenderHint(QPainter.RenderHint.SmoothPixmapTransform)
        self.setHorizontalScrollBarPolicy(Qt.ScrollBarPolicy.ScrollBarAlwaysOff)
        self.setVerticalScrollBarPolicy(Qt.ScrollBarPolicy.ScrollBarAlwaysOff)
        self.setDragMode(QGraphicsView.DragMode.NoDrag)
        self.setMouseTracking(True)
        self.centerOn(0, 0)

        self._renderer = QSvgRenderer(self)
        self._item = None
        self._hit_map = SvgHitMap(())
        self._press_pos = None

    # -- content ---------------------------------------------------------

    def set_svg(self, svg: str, hit_map: SvgHitMap) -> bool:
        """Replace the displayed SVG. Zoom and pan are kept."""
        if not self._renderer.load(QByteArray(svg.encode("utf-8"))):
            logger.warning("Qt could not load the rendered SVG")
            return False
        if self._item is None:
            self._item = QGraphicsSvgItem()
            self._item.setSharedRenderer(self._renderer)
            self._scene.addItem(self._item)
        else:
            # picks up the new default size
            self._item.setSharedRenderer(self._renderer)
        self._hit_map = hit_map
        self.apply_viewport()
        return True

    def clear(self) -> None:
        if self._item is not None:
            self._scene.removeItem(self._item)
            self._item = None
        self._hit_map = SvgHitMap(())

    def apply_viewport(self) -> None:
        if self._item is None:
            return
        rect = self._item.boundingRect()
        zoom = self.viewport_state.zoom
        pan_x, pan_y = self.viewport_state.pan
        self._item.setTransformOriginPoint(rect.center())
        self._item.setScale(zoom)
        self._item.setPos(-rect.width() / 2 + pan_x, -rect.height() / 2 + pan_y)
        self.centerOn(0, 0)
        self.zoom_changed.emit(self.viewport_state.zoom_percent)

    def reset_view(self) -> None:
        self.viewport_state.reset()
        self.apply_viewport()

    # -- hit testing -----------------------------------------------------

    def node_at(self, view_pos) -> str | None:
        """Diagram node id under a point in view coordinates."""
        if self._item is None:
            return None
        local = self._item.mapFromScene(self.mapToScene(view_pos))
        rect = self._item.boundingRect()
        box = self._renderer.viewBoxF()
        if rect.width() <= 0 or rect.height() <= 0:
            return None
        x = box.x() + local.x() * box.width() / rect.width()
        y = box.y() + local.y() * box.height() / rect.height()
        return self._hit_map.hit_test(x, y)

    # -- input -----------------------------------------------------------

    def wheelEvent(self, event):
        # Qt reports wheel-away-from-user as positive; that zooms in
        delta = event.angleDelta().y()
        if delta == 0:
            return
        self.viewport_state.on_wheel(-delta)
        self.apply_viewport()
        event.accept()

    def mousePressEvent(self, event):
        if event.button() == Qt.MouseButton.LeftButton:
            pos = event.position()
            self._press_pos = pos
            self.viewport_state.on_drag_start(pos.x(), pos.y())
            self.viewport().setCursor(Qt.CursorShape.ClosedHandCursor)
            event.accept()
            return
        super().mousePressEvent(event)

    def mouseMoveEvent(self, event):
        pos = event.position()
        if self.viewport_state.on_drag_move(pos.x(), pos.y()):
            self.apply_viewport()
            return
        node_id = self.node_at(pos.toPoint())
        shape = Qt.CursorShape.PointingHandCursor if node_id else Qt.CursorShape.ArrowCursor
        self.viewport().setCursor(shape)

    def mouseReleaseEvent(self, event):
        if event.button() != Qt.MouseButton.LeftButton:
            super().mouseReleaseEvent(event)
            return
        self.viewport_state.on_drag_end()
        self.viewport().setCursor(Qt.CursorShape.ArrowCursor)
        pos = event.position()
        press, self._press_pos = self._press_pos, None
        if press is not None and (pos - press).manhattanLength() <= _CLICK_SLOP:
            node_id = self.node_at(pos.toPoint())
            if node_id:
                self.node_clicked.emit(node_id)
        event.accept()

    def mouseDoubleClickEvent(self, event):
        node_id = self.node_at(event.position().toPoint())
        if node_id:
            self.node_double_clicked.emit(node_id)
        event.accept()

    def leaveEvent(self, event):
        # a drag never survives the pointer leaving the view
        self.viewport_state.on_drag_end()
        self._press_pos = None
        super().leaveEvent(event)


class TopologyWidget(QWidget):
    """Tab content showing the relationship topology around one table.

    Owns a ``TopologySession`` for its lifetime. Fetches and Mermaid renders
    run in worker threads; every result is checked against the disposal flag and
    renders also against the session revision they were compiled from.

    Emits focus_requested(schema, table) when a table node is double-clicked.
    """

    focus_requested = pyqtSignal(str, str)

    def __init__(self, engine, schema: str, table: str, settings: dict | None = None, fetcher=None,
                 parent=None):
        super().__init__(parent)
        self.settings = settings or load_topology_settings()
        self._pool = WorkerPool()
        self._disposed = False

        self.session = TopologySession(
            schema, table,
            fetcher if fetcher is not None else make_fetcher(engine),
            submit=self._submit,
            initial_depth=self.settings["initial_depth"],
            expand_depth=self.settings["expand_depth"],
        )
        self.session.add_listener(self._on_session_changed)

        # last diagram handed to the renderer, and the one displayed
        self._renders = RenderTracker()
        self._shown_ir = None
        self._mermaid_source = ""
        self._svg = ""
        self._render_error = None

        self._render_timer = QTimer(self)
        self._render_timer.setSingleShot(True)
        self._render_timer.timeout.connect(self._render_now)

        self._init_ui(schema, table)
        self._sync_ui()

    # -- ui --------------------------------------------------------------

    def _init_ui(self, schema: str, table: str):
        layout = QVBoxLayout(self)
        layout.setContentsMargins(4, 4, 4, 4)

        header = QHBoxLayout()
        self.title_label = QLabel(f"Table Topology: {make_key(schema, table)}")
        self.title_label.setStyleSheet("font-weight: bold;")
        header.addWidget(self.title_label)
        self.status_label = QLabel("")
        header.addWidget(self.status_label, 1)

        self.retry_btn = QPushButton("Retry")
        self.retry_btn.setToolTip("Fetch the relationships that failed to load again")
        self.retry_btn.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_BrowserReload))
        self.retry_btn.clicked.connect(self.retry_fetch)
        header.addWidget(self.retry_btn)

        self.retry_render_btn = QPushButton("Retry Render")
        self.retry_render_btn.setToolTip("Render the current diagram again")
        self.retry_render_btn.clicked.connect(self.retry_render)
        header.addWidget(self.retry_render_btn)

        self.reset_btn = QPushButton("Reset View")
        self.reset_btn.clicked.connect(self.reset_view)
        header.addWidget(self.reset_btn)

        self.zoom_label = QLabel("100%")
        self.zoom_label.setMinimumWidth(48)
        self.zoom_label.setAlignment(Qt.AlignmentFlag.AlignRight | Qt.AlignmentFlag.AlignVCenter)
        header.addWidget(self.zoom_label)

        self.copy_btn = QPushButton("Copy Mermaid Source")
        self.copy_btn.clicked.connect(self.copy_mermaid_source)
        header.addWidget(self.copy_btn)

        self.save_btn = QPushButton("Save SVG...")
        self.save_btn.setIcon(self.style().standardIcon(QStyle.StandardPixmap.SP_DialogSaveButton))
        self.save_btn.clicked.connect(self.save_svg)
        header.addWidget(self.save_btn)
        layout.addLayout(header)

        self.stack = QStackedWidget()
        self.loading_label = QLabel("Loading table topology...")
        self.loading_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.stack.addWidget(self.loading_label)

        self.error_label = QLabel("")
        self.error_label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.error_label.setWordWrap(True)
        self.error_label.setStyleSheet("color: #f48771;")
        self.stack.addWidget(self.error_label)

        self.view = DiagramView()
        self.view.node_clicked.connect(self._on_node_clicked)
        self.view.node_double_clicked.connect(self._on_node_double_clicked)
        self.view.zoom_changed.connect(lambda pct: self.zoom_label.setText(f"{pct}%"))
        self.stack.addWidget(self.view)
        layout.addWidget(self.stack, 1)

        legend = QLabel(LEGEND_TEXT)
        legend.setStyleSheet("color: #888888; font-size: 11px;")
        layout.addWidget(legend)

    def _sync_ui(self):
        """Reflect session and render state in the panels and buttons."""
        state = self.session.state
        error = self.session.error
        fetch_failed = isinstance(error, FetchError)

        if state == SessionState.FAILED:
            self.error_label.setText(f"Failed to load topology:\n{error}")
            self.stack.setCurrentWidget(self.error_label)
        elif self._shown_ir is None:
            if self._render_error is not None:
                self.error_label.setText(f"Failed to render topology:\n{self._render_error}")
                self.stack.setCurrentWidget(self.error_label)
            else:
                self.stack.setCurrentWidget(self.loading_label)
        else:
            self.stack.setCurrentWidget(self.view)

        if state == SessionState.EXPANDING:
            status = f"Expanding {', '.join(sorted(self.session.loading))}..."
        elif state == SessionState.READY and fetch_failed:
            status = f"Error: {error}"
        elif self._render_error is not None and self._shown_ir is not None:
            status = f"Render failed: {self._render_error}"
        else:
            status = ""
        self.status_label.setText(status)

        self.retry_btn.setVisible(fetch_failed)
        self.retry_render_btn.setVisible(self._render_error is not None)
        has_diagram = self._shown_ir is not None
        self.copy_btn.setEnabled(bool(self._mermaid_source))
        self.save_btn.setEnabled(has_diagram and bool(self._svg))
        self.reset_btn.setEnabled(has_diagram)

    # -- session plumbing ------------------------------------------------

    def _submit(self, fn, on_done):
        if self._disposed:
            return

        def _deliver(result):
            if not self._disposed:
                on_done(result)

        def _failed(exc):
            logger.error("Relationship fetch worker failed: %s", exc)
            _deliver(FetchResult.failure(str(exc)))

        self._pool.start(fn, _deliver, _failed)

    def start(self) -> None:
        """Issue the initial fetch."""
        self.session.load()

    def _on_session_changed(self, session):
        if self._disposed:
            return
        self._schedule_render()
        self._sync_ui()

    # -- rendering -------------------------------------------------------

    def _schedule_render(self):
        if self.session.diagram() is None:
            return
        self._render_timer.start(self.settings["render_debounce_ms"])

    def _render_now(self, force: bool = False):
        if self._disposed:
            return
        ir = self.session.diagram()
        if not self._renders.needs_render(ir, force):
            return
        revision = self.session.revision
        ticket = self._renders.request(ir, revision)
        source = to_mermaid(ir, self.settings["theme"])
        mmdc = self.settings["mmdc_path"]
        timeout = self.settings["render_timeout"]
        logger.debug("Rendering topology %s (revision %d, %d nodes)",
                     self.session.root_key, revision, len(ir.nodes))

        def _job():
            svg = normalize_svg_size(render_svg(source, mmdc, timeout))
            return svg, SvgHitMap.from_svg(svg, [n.node_id for n in ir.nodes])

        self._pool.start(_job,
                         lambda result: self._on_rendered(ticket, ir, source, result),
                         lambda exc: self._on_render_failed(ticket, exc))

    def _on_rendered(self, ticket, ir, source, result):
        if self._disposed:
            return
        if not self._renders.is_current(ticket):
            logger.debug("Dropping stale render (newest is for revision %d)", self._renders.requested_revision)
            return
        svg, hit_map = result
        if not self.view.set_svg(svg, hit_map):
            self._render_error = RenderError("The rendered SVG could not be displayed", source=source)
        else:
            self._render_error = None
            self._shown_ir = ir
            self._mermaid_source = source
            self._svg = svg
        self._sync_ui()

    def _on_render_failed(self, ticket, exc):
        if self._disposed or not self._renders.is_current(ticket):
            return
        if isinstance(exc, RenderError):
            logger.warning("Topology render failed: %s", exc)
            self._render_error = exc
            if exc.source:
                # still useful for pasting into another Mermaid renderer
                self._mermaid_source = exc.source
        else:
            logger.error("Unexpected render failure: %s", exc)
            self._render_error = RenderError(str(exc) or exc.__class__.__name__)
        self._sync_ui()

    # -- actions ---------------------------------------------------------

    def _on_node_clicked(self, node_id: str):
        # the click table comes from the diagram that is on screen
        if self._shown_ir is None:
            return
        key = self._shown_ir.expand_targets().get(node_id)
        if key:
            logger.debug("Expand requested for %s", key)
            self.session.expand_key(key)

    def _on_node_double_clicked(self, node_id: str):
        if self._shown_ir is None:
            return
        node = self._shown_ir.node(node_id)
        if node is None or not node.key or node.key == self.session.root_key:
            return
        schema, table = split_key(node.key)
        self.focus_requested.emit(schema, table)

    def retry_fetch(self):
        self.session.retry()

    def retry_render(self):
        self._render_error = None
        self._sync_ui()
        self._render_now(force=True)

    def reset_view(self):
        self.view.reset_view()

    def copy_mermaid_source(self):
        if self._mermaid_source:
            QGuiApplication.clipboard().setText(self._mermaid_source)

    def save_svg(self):
        if not self._svg:
            return
        default_name = f"{self.session.root_key}.svg"
        path, _ = QFileDialog.getSaveFileName(self, "Save topology as SVG", default_name,
                                              "SVG Files (*.svg);;All Files (*)")
        if not path:
            return
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(self._svg)
        except OSError as e:
            logger.exception("Failed to save SVG to %s", path)
            QMessageBox.critical(self, "Save failed", f"Could not save SVG: {e}")

    # -- teardown --------------------------------------------------------

    def dispose(self) -> None:
        """Tear down: close the session and ignore results still in flight."""
        if self._disposed:
            return
        self._disposed = True
        self._render_timer.stop()
        self._renders.reset()
        self.session.close()
        self.view.clear()
        logger.debug("Disposed topology view for %s (%d workers still running)",
                     self.session.root_key, len(self._pool))

    def closeEvent(self, event):
        self.dispose()
        super().closeEvent(event)
