"""Table relationship topology package for RelScope.

Pure-Python core of the topology view: data model, tree merge, diagram
compilation, session state and viewport handling. Nothing in here imports Qt
so it can be exercised directly from the test-suite.
"""

__all__ = [
    "compiler",
    "controller",
    "errors",
    "merge",
    "mermaid",
    "model",
    "render",
    "viewport",
]
