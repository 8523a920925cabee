"""SQLite database layer: connection management, schema, meta helpers."""

# treeclosure:domain=db

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from treeclosure.config import HierarchyConfig

if TYPE_CHECKING:
    from pathlib import Path

# Schema version: increment on breaking changes
SCHEMA_VERSION = "1"

_SCHEMA_TEMPLATE = """\
-- Parent-pointer forest
CREATE TABLE IF NOT EXISTS {nodes} (
    {id_col}     TEXT PRIMARY KEY,
    {parent_col} TEXT,
    name         TEXT NOT NULL DEFAULT ''
);

-- Closure table: one row per (ancestor, descendant) pair, self pairs included
CREATE TABLE IF NOT EXISTS {hierarchy} (
    ancestor_id   TEXT NOT NULL,
    descendant_id TEXT NOT NULL,
    generations   INTEGER NOT NULL CHECK(generations >= 0),
    PRIMARY KEY (ancestor_id, descendant_id)
);

-- Index metadata
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_{nodes}_parent ON {nodes}({parent_col});
CREATE INDEX IF NOT EXISTS idx_{hierarchy}_anc_gen ON {hierarchy}(ancestor_id, generations);
CREATE INDEX IF NOT EXISTS idx_{hierarchy}_desc ON {hierarchy}(descendant_id);
"""


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) a SQLite database with proper PRAGMAs.

    Sets WAL journal mode (persistent per-file) and enables foreign keys
    (per-connection, required on every open).  The connection may be shared
    between threads; ``SqliteHierarchyStore`` runs one transaction on it at
    a time.

    Returns a connection with ``sqlite3.Row`` row factory.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def create_schema(conn: sqlite3.Connection, config: HierarchyConfig | None = None) -> None:
    """Create the nodes, closure and meta tables if they don't exist.

    Safe to call multiple times (uses IF NOT EXISTS).
    """
    cfg = config or HierarchyConfig()
    conn.executescript(
        _SCHEMA_TEMPLATE.format(
            nodes=cfg.nodes_table,
            id_col=cfg.id_column,
            parent_col=cfg.parent_column,
            hierarchy=cfg.hierarchy_table,
        )
    )
    set_meta(conn, "schema_version", SCHEMA_VERSION)


def get_meta(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    """Read a value from the ``meta`` table.

    Returns *default* (``None``) if the key doesn't exist.
    """
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    if row is None:
        return default
    return str(row[0])


def set_meta(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Insert or update a key in the ``meta`` table."""
    conn.execute(
        "INSERT INTO meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )
    conn.commit()
