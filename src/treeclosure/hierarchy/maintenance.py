"""Closure table maintenance: incremental rebuilds, cleanup, cycle checks.

Every parent-pointer mutation goes through :class:`HierarchyMaintainer`:

1. ``propose_parent_change`` rejects cycles before anything is written.
2. The parent pointer is committed.
3. ``rebuild`` deletes the closure rows of the node's subtree and inserts the
   rows computed by :class:`~treeclosure.hierarchy.builder.ClosureBuilder`.

Cycles run under named locks scoped to the affected trees, so two rebuilds
touching overlapping lineages never interleave their delete and insert.
"""

# treeclosure:domain=hierarchy

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from treeclosure.config import HierarchyConfig
from treeclosure.errors import (
    CycleError,
    HierarchyInvariantError,
    LineageReadError,
    LockTimeout,
    NodeExistsError,
    NodeNotFoundError,
    StoreError,
    WriteFailure,
)
from treeclosure.hierarchy.builder import build_forest, build_hierarchy
from treeclosure.hierarchy.walker import Lineage, LineageWalker

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from treeclosure.hierarchy.store import HierarchyStore

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    """Summary of one or more maintenance cycles."""

    nodes_rebuilt: int = 0
    rows_deleted: int = 0
    rows_inserted: int = 0
    orphans_removed: int = 0

    def merge(self, other: RebuildResult) -> None:
        self.nodes_rebuilt += other.nodes_rebuilt
        self.rows_deleted += other.rows_deleted
        self.rows_inserted += other.rows_inserted
        self.orphans_removed += other.orphans_removed


class HierarchyMaintainer:
    """Keeps the closure table in step with the parent-pointer table."""

    def __init__(self, store: HierarchyStore, config: HierarchyConfig | None = None) -> None:
        self._store = store
        self._config = config or HierarchyConfig()
        self._walker = LineageWalker(store)

    @property
    def walker(self) -> LineageWalker:
        return self._walker

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _holding(self, keys: Iterable[str]) -> Iterator[None]:
        acquired: list[str] = []
        try:
            for key in sorted(set(keys)):
                self._store.acquire_lock(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._store.release_lock(key)

    def _lock_keys(self, node_ids: Iterable[str | None]) -> set[str]:
        """Tree lock keys for the current and previous trees of *node_ids*.

        The current tree comes from the parent pointers, the previous one from
        the closure rows still on disk.  A node that does not exist yet locks
        a tree named after itself.
        """
        keys: set[str] = set()
        for node_id in node_ids:
            if node_id is None:
                continue
            try:
                node = self._store.get_node(node_id)
                previous_root = self._store.closure_root(node_id)
            except StoreError as exc:
                msg = f"Cannot resolve tree of '{node_id}': {exc}"
                raise LineageReadError(msg) from exc
            if node is None:
                keys.add(self._config.tree_lock_key(node_id))
            else:
                keys.add(self._config.tree_lock_key(self._walker.root_of(node)))
            if previous_root is not None:
                keys.add(self._config.tree_lock_key(previous_root))
        return keys

    @contextmanager
    def _tree_locks(self, *node_ids: str | None) -> Iterator[None]:
        """Hold the tree locks of *node_ids* for the duration of the block.

        Roots are resolved before locking and checked again once the locks are
        held; if a concurrent move changed them, the wider key set is retried.
        """
        keys = self._lock_keys(node_ids)
        for attempt in range(1, self._config.max_lock_retries + 1):
            with self._holding(keys):
                needed = self._lock_keys(node_ids)
                if needed <= keys:
                    yield
                    return
            logger.warning(
                "Tree of %s moved while locking (attempt %d), retrying",
                ", ".join(n for n in node_ids if n is not None),
                attempt,
            )
            keys |= needed
        key = sorted(keys)[0]
        raise LockTimeout(
            key,
            self._config.lock_timeout,
            reason=f"Tree roots kept changing after {self._config.max_lock_retries} attempts",
        )

    # ------------------------------------------------------------------
    # Maintenance cycles
    # ------------------------------------------------------------------

    def rebuild(self, node_id: str) -> RebuildResult:
        """Recompute the closure rows of *node_id* and its whole subtree."""
        with self._tree_locks(node_id):
            lineage = self._walker.walk(node_id)
            return self._replace_rows(lineage)

    def _replace_rows(self, lineage: Lineage) -> RebuildResult:
        affected = lineage.subtree_ids
        try:
            with self._store.transaction():
                deleted = self._store.delete_hierarchy_rows(affected)
                rows = build_hierarchy(lineage.ancestors, lineage.descendants, lineage.node)
                if not rows:
                    # The node is always part of its own slice; no rows means
                    # the lineage is inconsistent.  Raising rolls back the delete.
                    msg = f"No closure rows computed for existing node '{lineage.node.reference}'"
                    raise HierarchyInvariantError(msg)
                inserted = self._store.bulk_insert_hierarchy_rows(sorted(rows))
        except StoreError as exc:
            msg = (
                f"Rebuild of '{lineage.node.reference}' failed: {exc}. "
                "Run a full rebuild to repair the closure table."
            )
            raise WriteFailure(msg) from exc

        logger.info(
            "Rebuilt %s: %d rows deleted, %d inserted",
            lineage.node.reference,
            deleted,
            inserted,
        )
        return RebuildResult(nodes_rebuilt=1, rows_deleted=deleted, rows_inserted=inserted)

    def rebuild_all(self) -> RebuildResult:
        """Purge orphan rows, then rebuild every tree from its root."""
        with self._holding([self._config.table_lock_key]):
            result = RebuildResult(orphans_removed=self.cleanup())
            try:
                roots = self._store.root_ids()
            except StoreError as exc:
                msg = f"Cannot list roots: {exc}"
                raise LineageReadError(msg) from exc
            for root_id in roots:
                result.merge(self.rebuild(root_id))
        logger.info(
            "Full rebuild: %d trees, %d rows inserted, %d orphan rows removed",
            len(roots),
            result.rows_inserted,
            result.orphans_removed,
        )
        return result

    def cleanup(self) -> int:
        """Delete closure rows that reference nodes which no longer exist."""
        with self._holding([self._config.table_lock_key]):
            try:
                missing = self._store.all_hierarchy_endpoint_ids() - self._store.all_node_ids()
            except StoreError as exc:
                msg = f"Cannot compare closure rows with nodes: {exc}"
                raise LineageReadError(msg) from exc
            if not missing:
                return 0
            try:
                with self._store.transaction():
                    removed = self._store.delete_hierarchy_rows(missing)
            except StoreError as exc:
                msg = f"Cleanup failed: {exc}"
                raise WriteFailure(msg) from exc
        logger.info("Removed %d closure rows for %d missing nodes", removed, len(missing))
        return removed

    # ------------------------------------------------------------------
    # Cycle checks
    # ------------------------------------------------------------------

    def check_cycle(self, node_id: str, proposed_parent_id: str | None) -> None:
        """Raise :class:`CycleError` if *proposed_parent_id* is *node_id* or below it.

        Uses the closure rows already stored, not a fresh walk.
        """
        if proposed_parent_id is None:
            return
        if proposed_parent_id == node_id or self._store.is_ancestor(node_id, proposed_parent_id):
            raise CycleError(node_id, proposed_parent_id)

    def propose_parent_change(self, node_id: str, new_parent_id: str | None) -> None:
        """Validate a parent change without writing anything."""
        if self._store.get_node(node_id) is None:
            raise NodeNotFoundError(node_id)
        self.check_cycle(node_id, new_parent_id)
        if new_parent_id is not None and self._store.get_node(new_parent_id) is None:
            raise NodeNotFoundError(new_parent_id)

    # ------------------------------------------------------------------
    # Application flows
    # ------------------------------------------------------------------

    def add_node(self, node_id: str, parent_id: str | None = None, name: str = "") -> RebuildResult:
        """Insert a node and create its closure rows in one transaction."""
        with self._tree_locks(node_id, parent_id):
            if self._store.get_node(node_id) is not None:
                raise NodeExistsError(node_id)
            self.check_cycle(node_id, parent_id)
            if parent_id is not None and self._store.get_node(parent_id) is None:
                raise NodeNotFoundError(parent_id)
            with self._store.transaction():
                self._store.insert_node(node_id, parent_id, name)
                return self.rebuild(node_id)

    def move_node(self, node_id: str, new_parent_id: str | None) -> bool:
        """Reparent *node_id*; return whether the closure table was rebuilt.

        A rejected move writes nothing.  Setting the current parent again is a
        no-op and does not trigger a rebuild.
        """
        with self._tree_locks(node_id, new_parent_id):
            current = self._walker.node(node_id)
            self.propose_parent_change(node_id, new_parent_id)
            if current.parent_id == new_parent_id:
                logger.debug("Parent of %s unchanged, skipping rebuild", node_id)
                return False
            with self._store.transaction():
                self._store.update_parent(node_id, new_parent_id)
                self.rebuild(node_id)
        return True

    def remove_node(self, node_id: str) -> RebuildResult:
        """Delete a node; its children become roots of their own trees."""
        with self._tree_locks(node_id):
            self._walker.node(node_id)
            result = RebuildResult()
            with self._store.transaction():
                result.rows_deleted += self._store.delete_hierarchy_rows([node_id])
                children = self._store.detach_children(node_id)
                self._store.delete_node(node_id)
                for child_id in children:
                    result.merge(self.rebuild(child_id))
        logger.info("Removed %s, %d children promoted to roots", node_id, len(children))
        return result

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self) -> list[str]:
        """Compare the stored closure table with a full recomputation.

        Returns one message per problem; an empty list means the table is exact.
        """
        expected = {
            (row.ancestor_id, row.descendant_id): row.generations
            for row in build_forest(self._store.all_nodes())
        }
        actual = {
            (row.ancestor_id, row.descendant_id): row.generations
            for row in self._store.all_hierarchy_rows()
        }

        problems: list[str] = []
        for pair in sorted(expected.keys() - actual.keys()):
            problems.append(f"missing: {pair[0]} -> {pair[1]} ({expected[pair]})")
        for pair in sorted(actual.keys() - expected.keys()):
            problems.append(f"unexpected: {pair[0]} -> {pair[1]} ({actual[pair]})")
        for pair in sorted(expected.keys() & actual.keys()):
            if expected[pair] != actual[pair]:
                problems.append(
                    f"wrong depth: {pair[0]} -> {pair[1]} "
                    f"(stored {actual[pair]}, expected {expected[pair]})"
                )
        if problems:
            logger.warning("Closure table has %d problems", len(problems))
        return problems
