"""Lineage walks over the parent-pointer table."""

# treeclosure:domain=hierarchy

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from treeclosure.errors import LineageReadError, NodeNotFoundError, StoreError

if TYPE_CHECKING:
    from collections.abc import Callable

    from treeclosure.hierarchy.node_ref import NodeRef
    from treeclosure.hierarchy.store import HierarchyStore

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(frozen=True)
class Lineage:
    """A node, its ancestor chain (nearest first) and its whole subtree."""

    node: NodeRef
    ancestors: tuple[NodeRef, ...]
    descendants: tuple[NodeRef, ...]

    @property
    def root_id(self) -> str:
        """Top of the ancestor chain, or the node itself when it is a root."""
        if self.ancestors:
            return self.ancestors[-1].reference
        return self.node.reference

    @property
    def subtree_ids(self) -> list[str]:
        """The node and every descendant: the ids whose closure rows go stale."""
        return [self.node.reference, *(ref.reference for ref in self.descendants)]


class LineageWalker:
    """Materializes ancestor chains and descendant subtrees from a store.

    Store failures become :class:`LineageReadError`.  Walks only read, so a
    failed walk leaves nothing to undo.
    """

    def __init__(self, store: HierarchyStore) -> None:
        self._store = store

    def _read(self, fn: Callable[[], _T]) -> _T:
        try:
            return fn()
        except StoreError as exc:
            msg = f"Lineage walk failed: {exc}"
            raise LineageReadError(msg) from exc

    def node(self, node_id: str) -> NodeRef:
        """Read *node_id*; raise :class:`NodeNotFoundError` if it is gone."""
        ref = self._read(lambda: self._store.get_node(node_id))
        if ref is None:
            raise NodeNotFoundError(node_id)
        return ref

    def walk(self, node_id: str) -> Lineage:
        node = self.node(node_id)
        ancestors = self.ancestors(node)
        descendants = self.descendants(node)
        logger.debug(
            "Lineage of %s: %d ancestors, %d descendants",
            node_id,
            len(ancestors),
            len(descendants),
        )
        return Lineage(node=node, ancestors=tuple(ancestors), descendants=tuple(descendants))

    def root_of(self, node: NodeRef) -> str:
        ancestors = self.ancestors(node)
        if ancestors:
            return ancestors[-1].reference
        return node.reference

    def ancestors(self, node: NodeRef) -> list[NodeRef]:
        """Parent, grandparent, ... up to the true root.

        A parent id that no longer resolves ends the chain.
        """
        chain: list[NodeRef] = []
        seen = {node.reference}
        current = node
        while current.parent_id is not None:
            parent_id = current.parent_id
            parent = self._read(lambda parent_id=parent_id: self._store.get_node(parent_id))
            if parent is None:
                logger.debug("Parent %s of %s not found", parent_id, current.reference)
                break
            if parent.reference in seen:
                msg = f"Parent pointers loop through '{parent.reference}'"
                raise LineageReadError(msg)
            seen.add(parent.reference)
            chain.append(parent)
            current = parent
        return chain

    def descendants(self, node: NodeRef) -> list[NodeRef]:
        """Every node below *node*, one store round-trip per tree level."""
        found: list[NodeRef] = []
        seen = {node.reference}
        frontier = [node.reference]
        while frontier:
            layer = frontier
            children = self._read(lambda layer=layer: self._store.get_children(layer))
            frontier = []
            for child in children:
                if child.reference in seen:
                    msg = f"Parent pointers loop through '{child.reference}'"
                    raise LineageReadError(msg)
                seen.add(child.reference)
                found.append(child)
                frontier.append(child.reference)
        return found
