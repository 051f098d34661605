"""Splice freshly fetched relationship lists into an existing topology tree.

The update is persistent: only the nodes on the path from the root to each
match are rebuilt, every other branch is shared with the input tree. A caller
holding the previous root can therefore keep using it, and can cheaply tell
whether anything changed with an identity check.
"""
from dataclasses import replace
from typing import Collection, Tuple
import logging

from .errors import StaleTargetError
from .model import RelationshipNode, same_key

logger = logging.getLogger(__name__)


def merge_relationships(root: RelationshipNode, target_key: str,
                        fetched: RelationshipNode) -> Tuple[RelationshipNode, bool]:
    """Replace the relationship list of every node keyed ``target_key``.

    A node matches when its own ``table`` equals the key. A relationship whose
    far side is ``target_key`` but which has no ``children`` yet (a leaf
    neighbour being expanded for the first time) gets ``fetched`` grafted in
    as its children.

    Returns ``(new_root, found)``. When nothing matches the input root object
    is returned unchanged.
    """
    if same_key(root, target_key):
        return root.with_relationships(fetched.relationships), True

    changed = False
    rels = []
    for rel in root.relationships:
        new_rel = rel
        if same_key(rel.far_key, target_key):
            if rel.children is None:
                new_rel = replace(rel, children=fetched)
            else:
                new_rel = replace(rel, children=rel.children.with_relationships(fetched.relationships))
        elif rel.children is not None:
            child, found = merge_relationships(rel.children, target_key, fetched)
            if found:
                new_rel = replace(rel, children=child)
        if new_rel is not rel:
            changed = True
        rels.append(new_rel)

    if not changed:
        return root, False
    return root.with_relationships(rels), True


def merge_or_raise(root: RelationshipNode, target_key: str, fetched: RelationshipNode) -> RelationshipNode:
    """Like :func:`merge_relationships` but raise ``StaleTargetError`` on a miss."""
    new_root, found = merge_relationships(root, target_key, fetched)
    if not found:
        raise StaleTargetError(target_key)
    return new_root


def prune_unexpanded(node: RelationshipNode, expanded: Collection[str]) -> RelationshipNode:
    """Drop ``children`` from relationships whose far side is not expanded.

    Fetches return several levels at once; only expanded tables keep their
    nested nodes in the session tree.
    """
    changed = False
    rels = []
    for rel in node.relationships:
        new_rel = rel
        if rel.children is not None:
            if rel.far_key in expanded:
                child = prune_unexpanded(rel.children, expanded)
                if child is not rel.children:
                    new_rel = replace(rel, children=child)
            else:
                new_rel = replace(rel, children=None)
        if new_rel is not rel:
            changed = True
        rels.append(new_rel)
    if not changed:
        return node
    return node.with_relationships(rels)
