"""Error types raised and surfaced by the topology view."""
from typing import Optional


class TopologyError(Exception):
    """Base class for topology failures shown to (or hidden from) the user."""

    kind = "topology"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FetchError(TopologyError):
    """Relationship fetch failed. ``key`` is set when a single-node expansion failed."""

    kind = "fetch"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class RenderError(TopologyError):
    """The external renderer rejected the compiled diagram."""

    kind = "render"

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class StaleTargetError(TopologyError):
    """Merge target is no longer part of the tree. Internal and non-fatal."""

    kind = "stale"

    def __init__(self, key: str):
        super().__init__(f"Node {key!r} is not present in the current tree")
        self.key = key
