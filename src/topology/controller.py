"""Topology session: fetch orchestration, expansion state and diagram derivation.

A ``TopologySession`` is the single writer of the tree and of the
``expanded``/``loading`` sets. Fetches are handed to a ``submit`` callable so
the owner decides where they run (inline for tests and scripts, a QThread
worker in the GUI); completions must be delivered back on the owner's thread.

State machine::

    IDLE -> LOADING -> READY <-> EXPANDING
               |
               v
             FAILED -> LOADING (retry)

    any -> CLOSED (close)
"""
from enum import Enum
from typing import Callable, List, Optional
import logging

from .compiler import DiagramIR, compile_diagram
from .errors import FetchError, StaleTargetError, TopologyError
from .merge import merge_or_raise, prune_unexpanded
from .model import FetchResult, RelationshipNode, make_key, split_key

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DEPTH = 3
DEFAULT_EXPAND_DEPTH = 3

Fetcher = Callable[[str, str, int], object]
Submit = Callable[[Callable[[], FetchResult], Callable[[FetchResult], None]], None]


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    EXPANDING = "expanding"
    FAILED = "failed"
    CLOSED = "closed"


def run_inline(fn: Callable[[], FetchResult], on_done: Callable[[FetchResult], None]) -> None:
    """Default ``submit``: run the fetch synchronously."""
    on_done(fn())


class TopologySession:
    """Relationship topology around one focus table, for the lifetime of one view."""

    def __init__(self, schema: str, table: str, fetcher: Fetcher, submit: Optional[Submit] = None,
                 initial_depth: int = DEFAULT_INITIAL_DEPTH, expand_depth: int = DEFAULT_EXPAND_DEPTH):
        self.schema = schema
        self.table = table
        self.root_key = make_key(schema, table)
        self.initial_depth = initial_depth
        self.expand_depth = expand_depth
        self._fetcher = fetcher
        self._submit = submit or run_inline

        self.root: Optional[RelationshipNode] = None
        self.expanded = set()
        self.loading = set()
        self.state = SessionState.IDLE
        self.error: Optional[TopologyError] = None
        self.revision = 0

        self._generation = 0
        self._listeners: List[Callable[["TopologySession"], None]] = []
        self._compiled_revision = -1
        self._compiled: Optional[DiagramIR] = None

    # -- observers -------------------------------------------------------

    def add_listener(self, callback: Callable[["TopologySession"], None]) -> None:
        self._listeners.append(callback)

    def _changed(self) -> None:
        self.revision += 1
        for cb in list(self._listeners):
            try:
                cb(self)
            except Exception:
                logger.exception("Topology listener failed")

    # -- fetching --------------------------------------------------------

    def _call_fetcher(self, schema: str, table: str, depth: int) -> FetchResult:
        try:
            return FetchResult.coerce(self._fetcher(schema, table, depth))
        except Exception as e:
            logger.exception("Relationship fetch for %s.%s raised", schema, table)
            return FetchResult.failure(str(e) or e.__class__.__name__)

    def _is_stale(self, generation: int) -> bool:
        if generation != self._generation or self.state == SessionState.CLOSED:
            logger.debug("Dropping fetch result for closed topology session %s", self.root_key)
            return True
        return False

    def load(self) -> bool:
        """Issue the initial fetch. Only valid from IDLE or FAILED."""
        if self.state not in (SessionState.IDLE, SessionState.FAILED):
            logger.debug("Ignoring load of %s in state %s", self.root_key, self.state.value)
            return False
        self.error = None
        self.state = SessionState.LOADING
        self._changed()
        generation = self._generation
        schema, table, depth = self.schema, self.table, self.initial_depth
        logger.debug("Loading topology for %s (depth=%d)", self.root_key, depth)
        self._submit(lambda: self._call_fetcher(schema, table, depth),
                     lambda result: self._on_loaded(generation, result))
        return True

    def _on_loaded(self, generation: int, result: FetchResult) -> None:
        if self._is_stale(generation):
            return
        if result.success and result.data is not None:
            self.root = prune_unexpanded(result.data, self.expanded)
            self.state = SessionState.READY
            logger.debug("Loaded topology for %s: %d relationships", self.root_key, len(self.root.relationships))
        else:
            message = result.error or "Failed to load table relationships"
            logger.warning("Initial topology fetch for %s failed: %s", self.root_key, message)
            self.error = FetchError(message)
            self.state = SessionState.FAILED
        self._changed()

    def request_expand(self, node_key: str, schema: str, table: str) -> bool:
        """Fetch ``node_key``'s relationships and merge them into the tree.

        Returns False without doing anything when the key is already loading
        or the session has no tree to merge into.
        """
        if node_key in self.loading:
            logger.debug("Expansion of %s already in flight", node_key)
            return False
        if self.root is None or self.state not in (SessionState.READY, SessionState.EXPANDING):
            logger.debug("Ignoring expansion of %s in state %s", node_key, self.state.value)
            return False

        self.loading.add(node_key)
        self.state = SessionState.EXPANDING
        # a failure for another table keeps its Retry until that table is retried
        if isinstance(self.error, FetchError) and self.error.key == node_key:
            self.error = None
        self._changed()
        generation = self._generation
        depth = self.expand_depth
        self._submit(lambda: self._call_fetcher(schema, table, depth),
                     lambda result: self._on_expanded(generation, node_key, result))
        return True

    def expand_key(self, node_key: str) -> bool:
        schema, table = split_key(node_key)
        return self.request_expand(node_key, schema, table)

    def _on_expanded(self, generation: int, node_key: str, result: FetchResult) -> None:
        if self._is_stale(generation):
            return
        self.loading.discard(node_key)
        if result.success and result.data is not None:
            fetched = prune_unexpanded(result.data, self.expanded | {node_key})
            try:
                self.root = merge_or_raise(self.root, node_key, fetched)
            except StaleTargetError as e:
                logger.warning("Ignoring expansion result: %s", e)
            else:
                self.expanded.add(node_key)
                logger.debug("Expanded %s: %d relationships", node_key, len(fetched.relationships))
        else:
            message = result.error or f"Failed to load relationships for {node_key}"
            logger.warning("Expansion of %s failed: %s", node_key, message)
            self.error = FetchError(message, key=node_key)
        if not self.loading:
            self.state = SessionState.READY
        self._changed()

    def retry(self) -> bool:
        """Re-issue whichever fetch failed last: the initial load or one expansion."""
        if self.state == SessionState.FAILED:
            return self.load()
        error = self.error
        if isinstance(error, FetchError) and error.key:
            self.error = None
            return self.expand_key(error.key)
        return False

    # -- derived state ---------------------------------------------------

    def diagram(self) -> Optional[DiagramIR]:
        """Diagram IR for the current state, compiled at most once per revision."""
        if self.root is None:
            return None
        if self._compiled_revision != self.revision:
            self._compiled = compile_diagram(self.root, frozenset(self.expanded), frozenset(self.loading))
            self._compiled_revision = self.revision
        return self._compiled

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def close(self) -> None:
        """Tear down: results of fetches still in flight are ignored on arrival."""
        if self.state == SessionState.CLOSED:
            return
        self._generation += 1
        self.state = SessionState.CLOSED
        self._listeners.clear()
        logger.debug("Closed topology session for %s", self.root_key)
