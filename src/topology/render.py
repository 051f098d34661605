"""Render Mermaid source to SVG with the Mermaid CLI and hit-test the result.

The renderer is an external program (``mmdc`` from @mermaid-js/mermaid-cli),
located on PATH or through the ``mmdc_path`` setting, the same way
``db.metadata`` used to look up ``pg_dump``. Nothing here imports Qt: the
hit map works on SVG user coordinates and the widget converts to them.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
import logging
import os
import re
import shutil
import subprocess
import tempfile
import xml.etree.ElementTree as ET

from .errors import RenderError

logger = logging.getLogger(__name__)

DEFAULT_MMDC = "mmdc"
DEFAULT_RENDER_TIMEOUT = 30

_SVG_NS = "http://www.w3.org/2000/svg"
_NODE_ID_RE = re.compile(r"^flowchart-(?P<node>.+)-\d+$")
_TRANSLATE_RE = re.compile(r"translate\(\s*([-+0-9.eE]+)(?:[\s,]+([-+0-9.eE]+))?\s*\)")
_SVG_TAG_RE = re.compile(r"<svg\b[^>]*>", re.IGNORECASE | re.DOTALL)
_VIEWBOX_RE = re.compile(r'viewBox\s*=\s*"([^"]+)"')


def find_mmdc(configured: Optional[str] = None) -> Optional[str]:
    """Resolve the Mermaid CLI executable, or None when it is not installed."""
    candidate = configured or DEFAULT_MMDC
    if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
        return candidate
    return shutil.which(candidate)


def render_svg(source: str, mmdc_path: Optional[str] = None, timeout: int = DEFAULT_RENDER_TIMEOUT) -> str:
    """Compile Mermaid ``source`` to SVG text. Raises ``RenderError`` on any failure."""
    exe = find_mmdc(mmdc_path)
    if not exe:
        raise RenderError(
            f"Mermaid CLI not found ({mmdc_path or DEFAULT_MMDC}). "
            "Install it with 'npm install -g @mermaid-js/mermaid-cli' or set mmdc_path.",
            source=source,
        )
    with tempfile.TemporaryDirectory(prefix="relscope-") as tmp:
        in_path = Path(tmp) / "topology.mmd"
        out_path = Path(tmp) / "topology.svg"
        in_path.write_text(source, encoding="utf-8")
        cmd = [exe, "-q", "-i", str(in_path), "-o", str(out_path), "-b", "transparent"]
        logger.debug("Running Mermaid CLI: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise RenderError(f"Mermaid CLI timed out after {timeout} seconds", source=source) from e
        except OSError as e:
            raise RenderError(f"Failed to start Mermaid CLI: {e}", source=source) from e
        if proc.returncode != 0 or not out_path.exists():
            detail = (proc.stderr or proc.stdout or "").strip().splitlines()
            message = detail[-1] if detail else f"exit code {proc.returncode}"
            raise RenderError(f"Mermaid rejected the diagram: {message}", source=source)
        return out_path.read_text(encoding="utf-8")


def parse_view_box(svg: str) -> Optional[Tuple[float, float, float, float]]:
    """Return ``(x, y, width, height)`` of the root element's viewBox."""
    tag = _SVG_TAG_RE.search(svg or "")
    if not tag:
        return None
    m = _VIEWBOX_RE.search(tag.group(0))
    if not m:
        return None
    try:
        parts = [float(p) for p in re.split(r"[\s,]+", m.group(1).strip())]
    except ValueError:
        return None
    if len(parts) != 4:
        return None
    return parts[0], parts[1], parts[2], parts[3]


def normalize_svg_size(svg: str) -> str:
    """Give the root element absolute width/height taken from its viewBox.

    Mermaid emits ``width="100%"``, which SVG renderers without a layout
    context resolve inconsistently.
    """
    tag = _SVG_TAG_RE.search(svg or "")
    box = parse_view_box(svg)
    if not tag or not box:
        return svg
    head = tag.group(0)
    new_head = re.sub(r'\s(width|height)\s*=\s*"[^"]*"', "", head)
    new_head = re.sub(r"\sstyle\s*=\s*\"[^\"]*max-width[^\"]*\"", "", new_head)
    new_head = new_head[:4] + f' width="{box[2]:g}" height="{box[3]:g}"' + new_head[4:]
    return svg[:tag.start()] + new_head + svg[tag.end():]


@dataclass(frozen=True)
class NodeBox:
    node_id: str
    x: float
    y: float
    width: float
    height: float

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _translate(elem: ET.Element) -> Tuple[float, float]:
    m = _TRANSLATE_RE.search(elem.get("transform") or "")
    if not m:
        return 0.0, 0.0
    return float(m.group(1)), float(m.group(2) or 0.0)


def _shape_bounds(elem: ET.Element) -> Optional[Tuple[float, float, float, float]]:
    """Bounding box of the first rect/polygon/circle/ellipse below ``elem``."""
    for child in elem.iter():
        name = _local(child.tag)
        try:
            if name == "rect" and child.get("width") is not None:
                return (float(child.get("x") or 0), float(child.get("y") or 0),
                        float(child.get("width")), float(child.get("height") or 0))
            if name == "polygon" and child.get("points"):
                nums = [float(v) for v in re.split(r"[\s,]+", child.get("points").strip()) if v]
                xs, ys = nums[0::2], nums[1::2]
                dx, dy = _translate(child)
                return min(xs) + dx, min(ys) + dy, max(xs) - min(xs), max(ys) - min(ys)
            if name == "circle" and child.get("r"):
                r = float(child.get("r"))
                return float(child.get("cx") or 0) - r, float(child.get("cy") or 0) - r, 2 * r, 2 * r
            if name == "ellipse" and child.get("rx"):
                rx, ry = float(child.get("rx")), float(child.get("ry") or child.get("rx"))
                return float(child.get("cx") or 0) - rx, float(child.get("cy") or 0) - ry, 2 * rx, 2 * ry
        except (TypeError, ValueError, IndexError):
            continue
    return None


class SvgHitMap:
    """Resolve points in SVG user coordinates to diagram node ids."""

    def __init__(self, boxes: Iterable[NodeBox]):
        self.boxes: List[NodeBox] = list(boxes)

    @classmethod
    def from_svg(cls, svg: str, node_ids: Iterable[str]) -> "SvgHitMap":
        """Collect bounds of Mermaid flowchart nodes whose id is in ``node_ids``.

        Mermaid tags node groups ``flowchart-<nodeId>-<n>`` (and, in newer
        releases, ``data-id="<nodeId>"``) and positions them with a translate.
        """
        wanted = set(node_ids)
        boxes: List[NodeBox] = []
        try:
            root = ET.fromstring(svg)
        except ET.ParseError as e:
            logger.warning("Could not parse rendered SVG for hit testing: %s", e)
            return cls(boxes)

        def _walk(elem: ET.Element, ox: float, oy: float) -> None:
            tx, ty = _translate(elem)
            ox, oy = ox + tx, oy + ty
            node_id = elem.get("data-id")
            if node_id is None:
                m = _NODE_ID_RE.match(elem.get("id") or "")
                node_id = m.group("node") if m else None
            if node_id in wanted and _local(elem.tag) == "g":
                shape = _shape_bounds(elem)
                if shape is not None:
                    x, y, w, h = shape
                    boxes.append(NodeBox(node_id, x + ox, y + oy, w, h))
                    return
            for child in elem:
                _walk(child, ox, oy)

        _walk(root, 0.0, 0.0)
        return cls(boxes)

    def hit_test(self, x: float, y: float) -> Optional[str]:
        # Later nodes are painted on top.
        for box in reversed(self.boxes):
            if box.contains(x, y):
                return box.node_id
        return None


class RenderTracker:
    """Which render request is current.

    Renders run off the UI thread and can finish in any order. Every request
    gets a ticket; a result is applied only when it carries the newest one, so
    a slow render of an older diagram never replaces a newer picture.
    """

    def __init__(self):
        self._ticket = 0
        self.requested_ir = None
        self.requested_revision = -1

    def needs_render(self, ir, force: bool = False) -> bool:
        # IRs are memoized per session revision: the same object means the
        # same picture, so repeated timer ticks collapse into one render
        if ir is None:
            return False
        return force or ir is not self.requested_ir

    def request(self, ir, revision: int) -> int:
        self._ticket += 1
        self.requested_ir = ir
        self.requested_revision = revision
        return self._ticket

    def is_current(self, ticket: int) -> bool:
        return ticket == self._ticket

    def reset(self) -> None:
        """Forget the last request; results still in flight become stale."""
        self._ticket += 1
        self.requested_ir = None
        self.requested_revision = -1
