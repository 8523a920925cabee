"""Shared test fixtures for treeclosure."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from treeclosure.db import create_schema, open_db
from treeclosure.hierarchy import HierarchyMaintainer, LockRegistry, SqliteHierarchyStore

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture()
def db_conn(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Provide an empty database with full schema."""
    conn = open_db(db_path)
    create_schema(conn)
    yield conn
    conn.close()


@pytest.fixture()
def locks() -> LockRegistry:
    """A lock registry private to one test."""
    return LockRegistry()


@pytest.fixture()
def store(db_conn: sqlite3.Connection, locks: LockRegistry) -> SqliteHierarchyStore:
    return SqliteHierarchyStore(db_conn, locks=locks)


@pytest.fixture()
def maintainer(store: SqliteHierarchyStore) -> HierarchyMaintainer:
    return HierarchyMaintainer(store)


@pytest.fixture()
def tmp_project(tmp_path: Path) -> Path:
    """Create a minimal project structure for testing."""
    project = tmp_path / "proj"
    project.mkdir()
    return project
