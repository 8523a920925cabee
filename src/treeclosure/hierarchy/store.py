"""Backing store for the forest and its closure table.

:class:`HierarchyStore` is the interface the maintenance code consumes;
:class:`SqliteHierarchyStore` implements it on top of a ``sqlite3``
connection.  Named locks come from a process-wide :class:`LockRegistry`.
"""

# treeclosure:domain=hierarchy

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Collection, Iterable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from treeclosure.config import HierarchyConfig
from treeclosure.errors import LockTimeout, StoreError
from treeclosure.hierarchy.builder import HierarchyRow
from treeclosure.hierarchy.node_ref import NodeRef

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

# Keeps every IN (...) list well below SQLITE_MAX_VARIABLE_NUMBER.
_CHUNK_SIZE = 400

_T = TypeVar("_T")


def _chunks(ids: Iterable[str], size: int = _CHUNK_SIZE) -> Iterator[list[str]]:
    batch: list[str] = []
    for node_id in ids:
        batch.append(node_id)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


# ---------------------------------------------------------------------------
# Named locks
# ---------------------------------------------------------------------------


class _NamedLock:
    """An ``RLock`` plus the number of acquire calls still outstanding on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class LockRegistry:
    """Named, re-entrant mutual exclusion shared by every store in a process.

    A key's lock exists only while some thread holds it or waits for it, so
    the registry does not grow with the number of trees ever locked.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _NamedLock] = {}

    def active_keys(self) -> list[str]:
        """Keys currently held or waited for."""
        with self._guard:
            return sorted(self._locks)

    def _checkout(self, key: str) -> _NamedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _NamedLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _NamedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def acquire(self, key: str, timeout: float) -> None:
        """Block until *key* is held by the calling thread.

        Raises :class:`LockTimeout` when *timeout* seconds pass first.
        """
        entry = self._checkout(key)
        if not entry.lock.acquire(timeout=timeout):
            self._checkin(key, entry)
            raise LockTimeout(key, timeout)

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
        if entry is None:
            msg = f"Lock '{key}' is not held"
            raise RuntimeError(msg)
        entry.lock.release()
        self._checkin(key, entry)


_DEFAULT_LOCKS = LockRegistry()


def default_lock_registry() -> LockRegistry:
    """The registry used by stores that are not given one explicitly."""
    return _DEFAULT_LOCKS


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class HierarchyStore(Protocol):
    """Operations the maintenance code needs from the backing store."""

    def get_node(self, node_id: str) -> NodeRef | None: ...

    def get_children(self, parent_ids: Collection[str]) -> list[NodeRef]: ...

    def delete_hierarchy_rows(self, ids: Collection[str]) -> int: ...

    def bulk_insert_hierarchy_rows(self, rows: Iterable[HierarchyRow]) -> int: ...

    def acquire_lock(self, key: str) -> None: ...

    def release_lock(self, key: str) -> None: ...

    def all_node_ids(self) -> set[str]: ...

    def all_hierarchy_endpoint_ids(self) -> set[str]: ...

    def root_ids(self) -> list[str]: ...

    def closure_root(self, node_id: str) -> str | None: ...

    def is_ancestor(self, ancestor_id: str, descendant_id: str) -> bool: ...

    def insert_node(self, node_id: str, parent_id: str | None, name: str = "") -> None: ...

    def update_parent(self, node_id: str, parent_id: str | None) -> None: ...

    def detach_children(self, node_id: str) -> list[str]: ...

    def delete_node(self, node_id: str) -> None: ...

    def all_nodes(self) -> list[NodeRef]: ...

    def all_hierarchy_rows(self) -> set[HierarchyRow]: ...

    def transaction(self) -> Any: ...


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


class SqliteHierarchyStore:
    """:class:`HierarchyStore` backed by a ``sqlite3`` connection.

    Write methods called outside :meth:`transaction` commit immediately.
    Every ``sqlite3.Error`` surfaces as :class:`StoreError`.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: HierarchyConfig | None = None,
        locks: LockRegistry | None = None,
    ) -> None:
        self._conn = conn
        self._config = config or HierarchyConfig()
        self._locks = locks if locks is not None else default_lock_registry()
        # One SQLite transaction per connection: threads sharing this store take
        # turns, and each thread tracks its own nesting depth.
        self._conn_lock = threading.RLock()
        self._local = threading.local()

        cfg = self._config
        self._nodes = cfg.nodes_table
        self._id = cfg.id_column
        self._parent = cfg.parent_column
        self._hierarchy = cfg.hierarchy_table

    @property
    def config(self) -> HierarchyConfig:
        return self._config

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def _run(self, action: str, fn: Callable[[], _T]) -> _T:
        try:
            with self._conn_lock:
                return fn()
        except sqlite3.Error as exc:
            msg = f"Failed to {action}: {exc}"
            raise StoreError(msg) from exc

    def _node_ref(self, row: sqlite3.Row) -> NodeRef:
        return NodeRef.from_row(row, self._id, self._parent)

    # --- transactions and locks ---

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block as one SQLite transaction.

        Nested calls on the same thread join the outermost transaction.  Other
        threads using this store wait until it ends.  Any exception raised in
        the block rolls back every write made inside it.
        """
        if getattr(self._local, "depth", 0):
            yield
            return
        with self._conn_lock:
            self._local.depth = 1
            try:
                with self._conn:
                    yield
            except sqlite3.Error as exc:
                msg = f"Transaction failed: {exc}"
                raise StoreError(msg) from exc
            finally:
                self._local.depth = 0

    def acquire_lock(self, key: str) -> None:
        self._locks.acquire(key, self._config.lock_timeout)

    def release_lock(self, key: str) -> None:
        self._locks.release(key)

    # --- node reads ---

    def get_node(self, node_id: str) -> NodeRef | None:
        row = self._run(
            "read node",
            lambda: self._conn.execute(
                f"SELECT {self._id}, {self._parent} FROM {self._nodes} WHERE {self._id} = ?",
                (node_id,),
            ).fetchone(),
        )
        if row is None:
            return None
        return self._node_ref(row)

    def get_children(self, parent_ids: Collection[str]) -> list[NodeRef]:
        children: list[NodeRef] = []
        for batch in _chunks(parent_ids):
            rows = self._run(
                "read children",
                lambda batch=batch: self._conn.execute(
                    f"SELECT {self._id}, {self._parent} FROM {self._nodes} "
                    f"WHERE {self._parent} IN ({_placeholders(len(batch))}) "
                    f"ORDER BY {self._id}",
                    batch,
                ).fetchall(),
            )
            children.extend(self._node_ref(row) for row in rows)
        return children

    def all_nodes(self) -> list[NodeRef]:
        rows = self._run(
            "read nodes",
            lambda: self._conn.execute(
                f"SELECT {self._id}, {self._parent} FROM {self._nodes} ORDER BY {self._id}"
            ).fetchall(),
        )
        return [self._node_ref(row) for row in rows]

    def all_node_ids(self) -> set[str]:
        rows = self._run(
            "read node ids",
            lambda: self._conn.execute(f"SELECT {self._id} FROM {self._nodes}").fetchall(),
        )
        return {str(row[0]) for row in rows}

    def root_ids(self) -> list[str]:
        """Nodes without a parent, or whose parent no longer exists."""
        rows = self._run(
            "read roots",
            lambda: self._conn.execute(
                f"SELECT n.{self._id} FROM {self._nodes} n "
                f"LEFT JOIN {self._nodes} p ON p.{self._id} = n.{self._parent} "
                f"WHERE n.{self._parent} IS NULL OR p.{self._id} IS NULL "
                f"ORDER BY n.{self._id}"
            ).fetchall(),
        )
        return [str(row[0]) for row in rows]

    # --- node writes ---
    # Outside an open transaction each write commits on its own.

    def insert_node(self, node_id: str, parent_id: str | None, name: str = "") -> None:
        with self.transaction():
            self._run(
                "insert node",
                lambda: self._conn.execute(
                    f"INSERT INTO {self._nodes} ({self._id}, {self._parent}, name) "
                    "VALUES (?, ?, ?)",
                    (node_id, parent_id, name),
                ),
            )

    def update_parent(self, node_id: str, parent_id: str | None) -> None:
        with self.transaction():
            self._run(
                "update parent",
                lambda: self._conn.execute(
                    f"UPDATE {self._nodes} SET {self._parent} = ? WHERE {self._id} = ?",
                    (parent_id, node_id),
                ),
            )

    def detach_children(self, node_id: str) -> list[str]:
        """Turn the children of *node_id* into roots; return their ids."""
        with self.transaction():
            children = [child.reference for child in self.get_children([node_id])]
            if children:
                self._run(
                    "detach children",
                    lambda: self._conn.execute(
                        f"UPDATE {self._nodes} SET {self._parent} = NULL "
                        f"WHERE {self._parent} = ?",
                        (node_id,),
                    ),
                )
        return children

    def delete_node(self, node_id: str) -> None:
        with self.transaction():
            self._run(
                "delete node",
                lambda: self._conn.execute(
                    f"DELETE FROM {self._nodes} WHERE {self._id} = ?", (node_id,)
                ),
            )

    # --- closure table ---

    def delete_hierarchy_rows(self, ids: Collection[str]) -> int:
        """Delete rows whose ancestor or descendant is in *ids*."""
        deleted = 0
        with self.transaction():
            for batch in _chunks(ids):
                marks = _placeholders(len(batch))
                cursor = self._run(
                    "delete hierarchy rows",
                    lambda batch=batch, marks=marks: self._conn.execute(
                        f"DELETE FROM {self._hierarchy} "
                        f"WHERE ancestor_id IN ({marks}) OR descendant_id IN ({marks})",
                        [*batch, *batch],
                    ),
                )
                deleted += cursor.rowcount
        return deleted

    def bulk_insert_hierarchy_rows(self, rows: Iterable[HierarchyRow]) -> int:
        params = [row.as_tuple() for row in rows]
        if not params:
            return 0
        with self.transaction():
            self._run(
                "insert hierarchy rows",
                lambda: self._conn.executemany(
                    f"INSERT INTO {self._hierarchy} (ancestor_id, descendant_id, generations) "
                    "VALUES (?, ?, ?)",
                    params,
                ),
            )
        return len(params)

    def all_hierarchy_endpoint_ids(self) -> set[str]:
        rows = self._run(
            "read hierarchy endpoints",
            lambda: self._conn.execute(
                f"SELECT ancestor_id FROM {self._hierarchy} "
                f"UNION SELECT descendant_id FROM {self._hierarchy}"
            ).fetchall(),
        )
        return {str(row[0]) for row in rows}

    def all_hierarchy_rows(self) -> set[HierarchyRow]:
        rows = self._run(
            "read hierarchy rows",
            lambda: self._conn.execute(
                f"SELECT ancestor_id, descendant_id, generations FROM {self._hierarchy}"
            ).fetchall(),
        )
        return {HierarchyRow(str(r[0]), str(r[1]), int(r[2])) for r in rows}

    def closure_root(self, node_id: str) -> str | None:
        """The farthest ancestor of *node_id* according to the closure table."""
        row = self._run(
            "read closure root",
            lambda: self._conn.execute(
                f"SELECT ancestor_id FROM {self._hierarchy} "
                "WHERE descendant_id = ? ORDER BY generations DESC LIMIT 1",
                (node_id,),
            ).fetchone(),
        )
        if row is None:
            return None
        return str(row[0])

    def is_ancestor(self, ancestor_id: str, descendant_id: str) -> bool:
        """True when the closure table links the two ids (self pairs included)."""
        row = self._run(
            "read hierarchy",
            lambda: self._conn.execute(
                f"SELECT 1 FROM {self._hierarchy} "
                "WHERE ancestor_id = ? AND descendant_id = ? LIMIT 1",
                (ancestor_id, descendant_id),
            ).fetchone(),
        )
        return row is not None
