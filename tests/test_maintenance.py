"""Tests for HierarchyMaintainer: rebuild cycles, cleanup, cycle checks.

Tests cover:
- A -> B -> C scenario: full rebuild, reparent, rejected cycle
- Self rows, depth correctness, no cross-root rows
- Idempotence and incremental equivalence with a full rebuild
- Orphan cleanup
- add/move/remove application flows
- Failure paths: missing node, lock timeout, write failure, empty result
- Concurrent moves in the same and in different trees
"""

from __future__ import annotations

import random
import threading
from typing import TYPE_CHECKING

import pytest

from treeclosure.config import HierarchyConfig
from treeclosure.db import open_db
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
from treeclosure.hierarchy import HierarchyMaintainer, LockRegistry, SqliteHierarchyStore

if TYPE_CHECKING:
    import sqlite3
    from pathlib import Path


def _add(conn: sqlite3.Connection, *nodes: tuple[str, str | None]) -> None:
    for node_id, parent_id in nodes:
        conn.execute("INSERT INTO nodes (id, parent_id) VALUES (?, ?)", (node_id, parent_id))
    conn.commit()


def _rows(conn: sqlite3.Connection) -> set[tuple[str, str, int]]:
    return {
        (r[0], r[1], r[2])
        for r in conn.execute(
            "SELECT ancestor_id, descendant_id, generations FROM node_hierarchies"
        ).fetchall()
    }


def _parent(conn: sqlite3.Connection, node_id: str) -> str | None:
    row = conn.execute("SELECT parent_id FROM nodes WHERE id = ?", (node_id,)).fetchone()
    return None if row is None else row[0]


def _expected_closure(conn: sqlite3.Connection) -> set[tuple[str, str, int]]:
    """Closure computed independently by walking parent pointers."""
    parents = {r[0]: r[1] for r in conn.execute("SELECT id, parent_id FROM nodes").fetchall()}
    rows: set[tuple[str, str, int]] = set()
    for node_id in parents:
        current: str | None = node_id
        depth = 0
        while current is not None and current in parents:
            rows.add((current, node_id, depth))
            current = parents[current]
            depth += 1
    return rows


@pytest.fixture()
def abc(db_conn: sqlite3.Connection, maintainer: HierarchyMaintainer) -> sqlite3.Connection:
    """Tree A -> B -> C with its closure table built."""
    _add(db_conn, ("A", None), ("B", "A"), ("C", "B"))
    maintainer.rebuild_all()
    return db_conn


# ---------------------------------------------------------------------------
# Concrete scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_initial_rebuild_all(self, abc: sqlite3.Connection) -> None:
        assert _rows(abc) == {
            ("A", "A", 0),
            ("B", "B", 0),
            ("C", "C", 0),
            ("A", "B", 1),
            ("A", "C", 2),
            ("B", "C", 1),
        }

    def test_reparent_leaf_under_root(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        abc.execute("UPDATE nodes SET parent_id = 'A' WHERE id = 'C'")
        abc.commit()
        result = maintainer.rebuild("C")
        assert result.rows_deleted == 3
        assert result.rows_inserted == 2
        assert _rows(abc) == {
            ("A", "A", 0),
            ("B", "B", 0),
            ("A", "B", 1),
            ("C", "C", 0),
            ("A", "C", 1),
        }

    def test_move_node_matches_manual_reparent(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        assert maintainer.move_node("C", "A") is True
        assert len(_rows(abc)) == 5
        assert ("A", "C", 1) in _rows(abc)

    def test_root_under_grandchild_rejected(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        before = _rows(abc)
        with pytest.raises(CycleError):
            maintainer.move_node("A", "C")
        assert _rows(abc) == before
        assert len(before) == 6
        assert _parent(abc, "A") is None

    def test_orphan_row_removed_by_cleanup(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        abc.execute(
            "INSERT INTO node_hierarchies (ancestor_id, descendant_id, generations) "
            "VALUES ('A', 'ghost', 1), ('ghost', 'ghost', 0), ('ghost', 'C', 3)"
        )
        abc.commit()
        assert maintainer.cleanup() == 3
        remaining = _rows(abc)
        assert not [r for r in remaining if "ghost" in (r[0], r[1])]
        assert len(remaining) == 6

    def test_cleanup_with_nothing_to_do(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        assert maintainer.cleanup() == 0


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


@pytest.fixture()
def two_trees(db_conn: sqlite3.Connection, maintainer: HierarchyMaintainer) -> sqlite3.Connection:
    _add(
        db_conn,
        ("r1", None),
        ("a", "r1"),
        ("b", "r1"),
        ("c", "a"),
        ("d", "c"),
        ("r2", None),
        ("x", "r2"),
        ("y", "x"),
    )
    maintainer.rebuild_all()
    return db_conn


class TestInvariants:
    def test_one_self_row_per_node(self, two_trees: sqlite3.Connection) -> None:
        ids = {r[0] for r in two_trees.execute("SELECT id FROM nodes").fetchall()}
        self_rows = [r for r in _rows(two_trees) if r[0] == r[1]]
        assert sorted(r[0] for r in self_rows) == sorted(ids)
        assert all(r[2] == 0 for r in self_rows)

    def test_depths_match_paths(self, two_trees: sqlite3.Connection) -> None:
        assert _rows(two_trees) == _expected_closure(two_trees)

    def test_no_cross_root_rows(self, two_trees: sqlite3.Connection) -> None:
        tree1 = {"r1", "a", "b", "c", "d"}
        tree2 = {"r2", "x", "y"}
        for ancestor, descendant, _ in _rows(two_trees):
            assert (ancestor in tree1) == (descendant in tree1)
            assert (ancestor in tree2) == (descendant in tree2)

    def test_verify_reports_nothing(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        assert maintainer.verify() == []

    def test_rebuild_is_idempotent(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        maintainer.rebuild("c")
        first = _rows(two_trees)
        maintainer.rebuild("c")
        assert _rows(two_trees) == first

    def test_rebuild_all_is_idempotent(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        first = _rows(two_trees)
        result = maintainer.rebuild_all()
        assert result.nodes_rebuilt == 2
        assert _rows(two_trees) == first


class TestIncrementalEquivalence:
    def test_random_moves_match_full_rebuild(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        rng = random.Random(7)
        ids = ["r1", "a", "b", "c", "d", "r2", "x", "y"]
        for _ in range(60):
            node = rng.choice(ids)
            target = rng.choice([*ids, None])
            before = _rows(two_trees)
            try:
                maintainer.move_node(node, target)
            except CycleError:
                assert _rows(two_trees) == before
                continue
            incremental = _rows(two_trees)
            assert incremental == _expected_closure(two_trees)
            maintainer.rebuild_all()
            assert _rows(two_trees) == incremental

    def test_move_subtree_across_trees(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        maintainer.move_node("c", "y")
        rows = _rows(two_trees)
        assert ("r2", "d", 4) in rows
        assert ("x", "c", 2) in rows
        assert not [r for r in rows if r[0] in {"r1", "a"} and r[1] in {"c", "d"}]
        assert maintainer.verify() == []

    def test_detach_to_root(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        maintainer.move_node("c", None)
        rows = _rows(two_trees)
        assert ("c", "d", 1) in rows
        assert not [r for r in rows if r[1] == "c" and r[0] != "c"]
        assert maintainer.verify() == []


class TestRepair:
    def test_rebuild_all_repairs_corruption(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        two_trees.execute("DELETE FROM node_hierarchies WHERE descendant_id = 'd'")
        two_trees.execute("UPDATE node_hierarchies SET generations = 9 WHERE ancestor_id = 'x'")
        two_trees.execute(
            "INSERT INTO node_hierarchies (ancestor_id, descendant_id, generations) "
            "VALUES ('r1', 'y', 2), ('gone', 'a', 1)"
        )
        two_trees.commit()
        assert len(maintainer.verify()) > 0

        result = maintainer.rebuild_all()
        assert result.orphans_removed == 1
        assert maintainer.verify() == []

    def test_verify_messages(
        self, two_trees: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        two_trees.execute("DELETE FROM node_hierarchies WHERE ancestor_id = 'c' AND descendant_id = 'd'")
        two_trees.execute(
            "UPDATE node_hierarchies SET generations = 5 WHERE ancestor_id = 'r2' AND descendant_id = 'y'"
        )
        two_trees.execute(
            "INSERT INTO node_hierarchies (ancestor_id, descendant_id, generations) "
            "VALUES ('b', 'd', 1)"
        )
        two_trees.commit()
        assert maintainer.verify() == [
            "missing: c -> d (1)",
            "unexpected: b -> d (1)",
            "wrong depth: r2 -> y (stored 5, expected 2)",
        ]


# ---------------------------------------------------------------------------
# Cycle checks
# ---------------------------------------------------------------------------


class TestCycleChecks:
    def test_parent_is_self(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(CycleError) as excinfo:
            maintainer.check_cycle("B", "B")
        assert excinfo.value.node_id == "B"
        assert excinfo.value.parent_id == "B"

    def test_parent_is_descendant(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        with pytest.raises(CycleError):
            maintainer.check_cycle("B", "C")

    def test_valid_parents(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        maintainer.check_cycle("C", "A")
        maintainer.check_cycle("C", None)
        maintainer.check_cycle("A", None)

    def test_propose_unknown_parent(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        with pytest.raises(NodeNotFoundError):
            maintainer.propose_parent_change("C", "nowhere")

    def test_propose_unknown_node(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        with pytest.raises(NodeNotFoundError):
            maintainer.propose_parent_change("nobody", "A")

    def test_propose_writes_nothing(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        before = _rows(abc)
        maintainer.propose_parent_change("C", "A")
        assert _rows(abc) == before
        assert _parent(abc, "C") == "B"

    def test_self_parent_move_rejected(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        with pytest.raises(CycleError):
            maintainer.move_node("B", "B")
        assert _parent(abc, "B") == "A"


# ---------------------------------------------------------------------------
# Application flows
# ---------------------------------------------------------------------------


class TestAddNode:
    def test_add_root_and_child(
        self, db_conn: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        maintainer.add_node("A")
        maintainer.add_node("B", "A", "Bee")
        result = maintainer.add_node("C", "B")
        assert result.rows_inserted == 3
        assert _rows(db_conn) == _expected_closure(db_conn)
        name = db_conn.execute("SELECT name FROM nodes WHERE id = 'B'").fetchone()[0]
        assert name == "Bee"

    def test_duplicate(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(NodeExistsError):
            maintainer.add_node("B", "A")

    def test_unknown_parent(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(NodeNotFoundError):
            maintainer.add_node("D", "nowhere")
        assert _parent(abc, "D") is None
        assert abc.execute("SELECT count(*) FROM nodes").fetchone()[0] == 3

    def test_own_parent(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(CycleError):
            maintainer.add_node("D", "D")


class TestMoveNode:
    def test_same_parent_is_noop(
        self,
        abc: sqlite3.Connection,
        maintainer: HierarchyMaintainer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def fail(node_id: str) -> None:
            raise AssertionError("rebuild must not run")

        monkeypatch.setattr(maintainer, "rebuild", fail)
        assert maintainer.move_node("C", "B") is False
        assert maintainer.move_node("A", None) is False

    def test_unknown_node(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(NodeNotFoundError):
            maintainer.move_node("nobody", "A")

    def test_failed_rebuild_rolls_back_parent(
        self,
        abc: sqlite3.Connection,
        store: SqliteHierarchyStore,
        maintainer: HierarchyMaintainer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(rows: object) -> int:
            raise StoreError("disk full")

        before = _rows(abc)
        monkeypatch.setattr(store, "bulk_insert_hierarchy_rows", broken)
        with pytest.raises(WriteFailure, match="disk full"):
            maintainer.move_node("C", "A")
        assert _parent(abc, "C") == "B"
        assert _rows(abc) == before


class TestRemoveNode:
    def test_children_become_roots(
        self, db_conn: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        _add(db_conn, ("A", None), ("B", "A"), ("C", "B"), ("D", "B"), ("E", "D"))
        maintainer.rebuild_all()
        maintainer.remove_node("B")
        assert _parent(db_conn, "C") is None
        assert _parent(db_conn, "D") is None
        assert _rows(db_conn) == {
            ("A", "A", 0),
            ("C", "C", 0),
            ("D", "D", 0),
            ("D", "E", 1),
            ("E", "E", 0),
        }

    def test_remove_leaf(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        result = maintainer.remove_node("C")
        assert result.rows_deleted == 3
        assert _rows(abc) == {("A", "A", 0), ("B", "B", 0), ("A", "B", 1)}

    def test_remove_unknown(self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer) -> None:
        with pytest.raises(NodeNotFoundError):
            maintainer.remove_node("nobody")


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailures:
    def test_rebuild_unknown_node_deletes_nothing(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer
    ) -> None:
        before = _rows(abc)
        with pytest.raises(NodeNotFoundError):
            maintainer.rebuild("nobody")
        assert _rows(abc) == before

    def test_read_failure_deletes_nothing(
        self,
        abc: sqlite3.Connection,
        store: SqliteHierarchyStore,
        maintainer: HierarchyMaintainer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(parent_ids: object) -> list[object]:
            raise StoreError("connection lost")

        before = _rows(abc)
        monkeypatch.setattr(store, "get_children", broken)
        with pytest.raises(LineageReadError):
            maintainer.rebuild("B")
        assert _rows(abc) == before

    def test_insert_failure_rolls_back_delete(
        self,
        abc: sqlite3.Connection,
        store: SqliteHierarchyStore,
        maintainer: HierarchyMaintainer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(rows: object) -> int:
            raise StoreError("disk full")

        before = _rows(abc)
        monkeypatch.setattr(store, "bulk_insert_hierarchy_rows", broken)
        with pytest.raises(WriteFailure, match="full rebuild"):
            maintainer.rebuild("B")
        assert _rows(abc) == before

    def test_empty_result_is_an_invariant_error(
        self,
        abc: sqlite3.Connection,
        maintainer: HierarchyMaintainer,
        locks: LockRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        import treeclosure.hierarchy.maintenance as maintenance

        before = _rows(abc)
        monkeypatch.setattr(maintenance, "build_hierarchy", lambda *args: set())
        with pytest.raises(HierarchyInvariantError):
            maintainer.rebuild("B")
        assert _rows(abc) == before
        assert locks.active_keys() == []

    def test_lock_timeout_writes_nothing(self, db_conn: sqlite3.Connection) -> None:
        _add(db_conn, ("A", None), ("B", "A"), ("C", "B"))
        locks = LockRegistry()
        config = HierarchyConfig(lock_timeout=0.05)
        maintainer = HierarchyMaintainer(SqliteHierarchyStore(db_conn, config, locks), config)
        maintainer.rebuild_all()
        before = _rows(db_conn)

        held = threading.Event()
        done = threading.Event()

        def holder() -> None:
            locks.acquire(config.tree_lock_key("A"), 5.0)
            held.set()
            done.wait(5.0)
            locks.release(config.tree_lock_key("A"))

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert held.wait(5.0)
            with pytest.raises(LockTimeout) as excinfo:
                maintainer.rebuild("C")
            assert excinfo.value.key == "node_hierarchies:A"
        finally:
            done.set()
            thread.join()
        assert _rows(db_conn) == before

    def test_roots_that_keep_moving_give_up(
        self, abc: sqlite3.Connection, maintainer: HierarchyMaintainer, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        counter = iter(range(1000))
        monkeypatch.setattr(
            maintainer, "_lock_keys", lambda node_ids: {f"node_hierarchies:moving{next(counter)}"}
        )
        with pytest.raises(LockTimeout, match="kept changing"):
            maintainer.rebuild("C")


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_concurrent_moves(self, db_path: Path, db_conn: sqlite3.Connection) -> None:
        _add(
            db_conn,
            ("r1", None),
            ("a1", "r1"),
            ("b1", "a1"),
            ("c1", "b1"),
            ("r2", None),
            ("a2", "r2"),
            ("b2", "a2"),
            ("c2", "b2"),
        )
        locks = LockRegistry()
        HierarchyMaintainer(SqliteHierarchyStore(db_conn, locks=locks)).rebuild_all()

        # Each job toggles one node between two parents that are never below it.
        jobs = [
            ("c1", ("a1", "b1")),
            ("b1", ("r1", "a1")),
            ("c2", ("a2", "b2")),
            ("b2", ("r2", "a2")),
        ]
        errors: list[Exception] = []

        def worker(node_id: str, parents: tuple[str, str]) -> None:
            conn = open_db(db_path)
            maintainer = HierarchyMaintainer(SqliteHierarchyStore(conn, locks=locks))
            try:
                for i in range(10):
                    maintainer.move_node(node_id, parents[i % 2])
            except Exception as exc:
                errors.append(exc)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker, args=job) for job in jobs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert _rows(db_conn) == _expected_closure(db_conn)

    def test_shared_store_keeps_transactions_apart(
        self,
        abc: sqlite3.Connection,
        store: SqliteHierarchyStore,
        maintainer: HierarchyMaintainer,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        import treeclosure.hierarchy.maintenance as maintenance

        before = _rows(abc)
        monkeypatch.setattr(maintenance, "build_hierarchy", lambda *args: set())
        opened = threading.Event()
        finish = threading.Event()

        def other_tree() -> None:
            with store.transaction():
                store.insert_node("X", None)
                opened.set()
                finish.wait(5.0)

        failures: list[Exception] = []

        def failing_rebuild() -> None:
            try:
                maintainer.rebuild("B")
            except HierarchyInvariantError as exc:
                failures.append(exc)

        holder = threading.Thread(target=other_tree)
        holder.start()
        assert opened.wait(5.0)
        worker = threading.Thread(target=failing_rebuild)
        worker.start()
        try:
            # The rebuild cannot start while the other transaction is open.
            worker.join(0.2)
            assert worker.is_alive()
        finally:
            finish.set()
            holder.join()
            worker.join(5.0)

        assert len(failures) == 1
        assert _rows(abc) == before
        assert store.get_node("X") is not None
