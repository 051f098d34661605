"""UI package for RelScope.

This module ensures the `ui` directory is a proper Python package so that
imports such as `from ui.topology_view import TopologyWidget` resolve the
same way in development and when installed.
"""

__all__ = [
    "connection_dialog",
    "topology_view",
]
