"""YAML forest loader.

Reads a file of the form::

    nodes:
      - id: root
        name: Root node
      - id: child
        parent: root

and inserts the nodes into the configured nodes table, parents first.
Closure rows are not touched; run a full rebuild afterwards.
"""

# treeclosure:domain=forest-format

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from treeclosure.config import HierarchyConfig

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class ForestLoadResult:
    """Summary of a forest load operation."""

    nodes_loaded: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse_forest_file(path: Path) -> list[dict[str, Any]]:
    """Parse the ``nodes`` list of a YAML forest file."""
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return []
    if not isinstance(data, dict):
        msg = f"{path}: top level must be a mapping with a 'nodes' list"
        raise ValueError(msg)
    nodes = data.get("nodes") or []
    if not isinstance(nodes, list):
        msg = f"{path}: 'nodes' must be a list"
        raise ValueError(msg)
    return [n for n in nodes if isinstance(n, dict)]


def _parents_first(entries: dict[str, dict[str, Any]]) -> list[str]:
    """Order ids so that every parent precedes its children.

    Ids whose parent chain loops are left out.
    """
    ordered: list[str] = []
    placed: set[str] = set()
    pending = list(entries)
    while pending:
        progress = False
        remaining: list[str] = []
        for ref_id in pending:
            parent = entries[ref_id]["parent"]
            if parent is None or parent not in entries or parent in placed:
                ordered.append(ref_id)
                placed.add(ref_id)
                progress = True
            else:
                remaining.append(ref_id)
        if not progress:
            break
        pending = remaining
    return ordered


def load_forest(
    path: Path, conn: sqlite3.Connection, config: HierarchyConfig | None = None
) -> ForestLoadResult:
    """Load the nodes of *path* into SQLite.

    Nodes without an id, duplicate ids, unknown parents and parent loops are
    reported and skipped.
    """
    cfg = config or HierarchyConfig()
    result = ForestLoadResult()

    entries: dict[str, dict[str, Any]] = {}
    for raw in parse_forest_file(path):
        ref_id = raw.get("id")
        if ref_id is None or str(ref_id) == "":
            result.errors.append("Node missing id, skipped")
            continue
        ref_id = str(ref_id)
        if ref_id in entries:
            result.errors.append(f"Duplicate id '{ref_id}', skipped")
            continue
        parent = raw.get("parent")
        entries[ref_id] = {
            "parent": None if parent is None else str(parent),
            "name": str(raw.get("name", "")),
        }

    existing = {
        str(row[0])
        for row in conn.execute(f"SELECT {cfg.id_column} FROM {cfg.nodes_table}").fetchall()
    }
    ordered = _parents_first(entries)
    for ref_id in entries.keys() - set(ordered):
        result.errors.append(f"Parent chain of '{ref_id}' loops, skipped")

    for ref_id in ordered:
        entry = entries[ref_id]
        parent = entry["parent"]
        if parent is not None and parent not in entries and parent not in existing:
            result.warnings.append(f"Parent '{parent}' of '{ref_id}' not found, loaded as root")
            parent = None
        try:
            conn.execute(
                f"INSERT INTO {cfg.nodes_table} ({cfg.id_column}, {cfg.parent_column}, name) "
                "VALUES (?, ?, ?)",
                (ref_id, parent, entry["name"]),
            )
            result.nodes_loaded += 1
        except sqlite3.IntegrityError as exc:
            result.errors.append(f"Failed to insert node '{ref_id}': {exc}")

    conn.commit()
    logger.debug("Loaded %d nodes from %s", result.nodes_loaded, path)
    return result
