"""Zoom/pan state for the rendered diagram.

Independent of diagram content: the widget feeds it wheel and pointer events
and applies ``zoom``/``pan`` as a display transform.
"""
from typing import Tuple

MIN_ZOOM = 0.1
MAX_ZOOM = 5.0
ZOOM_OUT_FACTOR = 0.9
ZOOM_IN_FACTOR = 1.1


class Viewport:

    def __init__(self):
        self.zoom = 1.0
        self.pan: Tuple[float, float] = (0.0, 0.0)
        self.dragging = False
        self.drag_anchor: Tuple[float, float] = (0.0, 0.0)

    def on_wheel(self, delta_y: float) -> float:
        """Scale zoom multiplicatively; positive deltas (scrolling down) zoom out."""
        factor = ZOOM_OUT_FACTOR if delta_y > 0 else ZOOM_IN_FACTOR
        self.zoom = min(max(self.zoom * factor, MIN_ZOOM), MAX_ZOOM)
        return self.zoom

    def on_drag_start(self, x: float, y: float) -> None:
        self.dragging = True
        self.drag_anchor = (x - self.pan[0], y - self.pan[1])

    def on_drag_move(self, x: float, y: float) -> bool:
        """Update pan while dragging. Returns True when the pan changed."""
        if not self.dragging:
            return False
        self.pan = (x - self.drag_anchor[0], y - self.drag_anchor[1])
        return True

    def on_drag_end(self) -> None:
        self.dragging = False

    def reset(self) -> None:
        self.zoom = 1.0
        self.pan = (0.0, 0.0)

    @property
    def zoom_percent(self) -> int:
        return int(round(self.zoom * 100))
