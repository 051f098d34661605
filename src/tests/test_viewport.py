import sys
from pathlib import Path
import pytest

# Ensure project src directory is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from topology.viewport import MAX_ZOOM, MIN_ZOOM, Viewport


def test_wheel_down_clamps_at_min_zoom():
    vp = Viewport()
    for _ in range(50):
        vp.on_wheel(120)
    assert vp.zoom == MIN_ZOOM == 0.1
    assert vp.zoom_percent == 10


def test_wheel_up_clamps_at_max_zoom():
    vp = Viewport()
    for _ in range(100):
        vp.on_wheel(-120)
    assert vp.zoom == MAX_ZOOM


def test_single_wheel_steps():
    vp = Viewport()
    assert vp.on_wheel(1) == pytest.approx(0.9)
    vp.reset()
    assert vp.on_wheel(-1) == pytest.approx(1.1)
    vp.reset()
    # zero delta counts as "not scrolling down"
    assert vp.on_wheel(0) == pytest.approx(1.1)


def test_drag_pans_relative_to_anchor():
    vp = Viewport()
    assert not vp.on_drag_move(10, 10)
    vp.on_drag_start(100, 100)
    assert vp.on_drag_move(130, 90)
    assert vp.pan == (30, -10)
    vp.on_drag_end()
    assert not vp.on_drag_move(500, 500)
    assert vp.pan == (30, -10)

    # a second drag continues from the current pan
    vp.on_drag_start(0, 0)
    vp.on_drag_move(5, 5)
    assert vp.pan == (35, -5)


def test_reset_restores_zoom_and_pan():
    vp = Viewport()
    vp.on_wheel(1)
    vp.on_drag_start(0, 0)
    vp.on_drag_move(10, 20)
    vp.reset()
    assert vp.zoom == 1.0
    assert vp.pan == (0.0, 0.0)
