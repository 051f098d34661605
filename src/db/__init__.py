"""Database package for RelScope.

Connections, cached metadata introspection and the foreign key relationship
fetcher used by the topology view.
"""

__all__ = [
    "connection",
    "metadata",
    "relationships",
]
