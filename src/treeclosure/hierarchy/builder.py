"""Localized transitive closure over one lineage slice of the forest.

Given the ancestor chain of a changed node, its descendant subtree and the
node itself, :class:`ClosureBuilder` computes every closure row that must be
inserted after all rows touching the node or its descendants were deleted.
Rows between two ancestors are left out: they were never deleted and are
still valid.
"""

# treeclosure:domain=hierarchy

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from treeclosure.hierarchy.node_ref import ROOT, NodeRef, ParentRef


@dataclass(frozen=True, order=True)
class HierarchyRow:
    """One closure table row."""

    ancestor_id: str
    descendant_id: str
    generations: int

    def as_tuple(self) -> tuple[str, str, int]:
        return (self.ancestor_id, self.descendant_id, self.generations)


@dataclass
class _Entry:
    """Arena slot: a node's parent reference and its children in the slice."""

    parent: ParentRef
    children: list[str] = field(default_factory=list)


class ClosureBuilder:
    """Compute the closure rows of a lineage slice.

    The adjacency arena is built per instance and discarded with it; nothing
    is shared between builds.
    """

    def __init__(
        self,
        ancestors: Iterable[NodeRef],
        descendants: Iterable[NodeRef],
        node: NodeRef | None = None,
    ) -> None:
        ancestor_list = list(ancestors)
        refs = [*ancestor_list, *descendants]
        if node is not None:
            refs.append(node)
        self._ancestor_ids = frozenset(ref.reference for ref in ancestor_list)
        self._arena: dict[str, _Entry] = {}
        self._roots: list[str] = []
        self._index(refs)

    def _index(self, refs: list[NodeRef]) -> None:
        for ref in refs:
            if ref.reference in self._arena:
                msg = f"Node '{ref.reference}' appears twice in the lineage slice"
                raise ValueError(msg)
            self._arena[ref.reference] = _Entry(parent=ref.parent_reference)

        # Insertion order keeps sibling order stable across builds.
        for ref in refs:
            parent = ref.parent_reference
            if parent is ROOT or parent not in self._arena:
                self._roots.append(ref.reference)
            else:
                self._arena[str(parent)].children.append(ref.reference)

    @property
    def roots(self) -> list[str]:
        """Identities whose parent is absent from the slice."""
        return list(self._roots)

    def build(self) -> set[HierarchyRow]:
        """Return the rows to insert, without ancestor-to-ancestor pairs."""
        rows: set[HierarchyRow] = set()
        for origin in self._origins():
            for descendant, generations in self._reach(origin):
                if origin in self._ancestor_ids and descendant in self._ancestor_ids:
                    continue
                rows.add(HierarchyRow(origin, descendant, generations))
        return rows

    def _origins(self) -> list[str]:
        """Every node reachable from a true root, parents before children."""
        ordered: list[str] = []
        stack = list(reversed(self._roots))
        while stack:
            current = stack.pop()
            ordered.append(current)
            stack.extend(reversed(self._arena[current].children))
        return ordered

    def _reach(self, origin: str) -> list[tuple[str, int]]:
        """``(descendant, depth)`` for *origin* itself and its whole subtree."""
        reached: list[tuple[str, int]] = []
        stack: list[tuple[str, int]] = [(origin, 0)]
        while stack:
            current, depth = stack.pop()
            reached.append((current, depth))
            for child in reversed(self._arena[current].children):
                stack.append((child, depth + 1))
        return reached


def build_hierarchy(
    ancestors: Iterable[NodeRef],
    descendants: Iterable[NodeRef],
    node: NodeRef,
) -> set[HierarchyRow]:
    """Shortcut for ``ClosureBuilder(ancestors, descendants, node).build()``."""
    return ClosureBuilder(ancestors, descendants, node).build()


def build_forest(nodes: Iterable[NodeRef]) -> set[HierarchyRow]:
    """Full closure of a whole forest, used to verify a stored table.

    Nodes caught in a parent-pointer loop are unreachable from any root and
    produce no rows.
    """
    return ClosureBuilder((), nodes).build()
