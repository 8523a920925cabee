"""Read-side lookups answered by the closure table."""

# treeclosure:domain=lineage-queries

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from treeclosure.config import HierarchyConfig
from treeclosure.errors import NodeNotFoundError

if TYPE_CHECKING:
    import sqlite3

    from rich.console import Console
    from rich.tree import Tree


@dataclass(frozen=True)
class Relative:
    """An ancestor or descendant of the queried node."""

    ref_id: str
    parent_id: str | None
    generations: int


def _require_node(conn: sqlite3.Connection, node_id: str, cfg: HierarchyConfig) -> None:
    row = conn.execute(
        f"SELECT 1 FROM {cfg.nodes_table} WHERE {cfg.id_column} = ?", (node_id,)
    ).fetchone()
    if row is None:
        raise NodeNotFoundError(node_id)


def ancestors_of(
    conn: sqlite3.Connection, node_id: str, config: HierarchyConfig | None = None
) -> list[Relative]:
    """Strict ancestors of *node_id*, nearest first."""
    cfg = config or HierarchyConfig()
    _require_node(conn, node_id, cfg)
    rows = conn.execute(
        f"SELECT h.ancestor_id, n.{cfg.parent_column}, h.generations "
        f"FROM {cfg.hierarchy_table} h "
        f"JOIN {cfg.nodes_table} n ON n.{cfg.id_column} = h.ancestor_id "
        "WHERE h.descendant_id = ? AND h.generations > 0 "
        "ORDER BY h.generations",
        (node_id,),
    ).fetchall()
    return [Relative(str(r[0]), r[1], int(r[2])) for r in rows]


def descendants_of(
    conn: sqlite3.Connection, node_id: str, config: HierarchyConfig | None = None
) -> list[Relative]:
    """Strict descendants of *node_id*, shallowest first."""
    cfg = config or HierarchyConfig()
    _require_node(conn, node_id, cfg)
    rows = conn.execute(
        f"SELECT h.descendant_id, n.{cfg.parent_column}, h.generations "
        f"FROM {cfg.hierarchy_table} h "
        f"JOIN {cfg.nodes_table} n ON n.{cfg.id_column} = h.descendant_id "
        "WHERE h.ancestor_id = ? AND h.generations > 0 "
        "ORDER BY h.generations, h.descendant_id",
        (node_id,),
    ).fetchall()
    return [Relative(str(r[0]), r[1], int(r[2])) for r in rows]


def depth_of(conn: sqlite3.Connection, node_id: str, config: HierarchyConfig | None = None) -> int:
    """Distance from *node_id* to its root (0 for a root)."""
    cfg = config or HierarchyConfig()
    _require_node(conn, node_id, cfg)
    row = conn.execute(
        f"SELECT MAX(generations) FROM {cfg.hierarchy_table} WHERE descendant_id = ?",
        (node_id,),
    ).fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])


def roots(conn: sqlite3.Connection, config: HierarchyConfig | None = None) -> list[str]:
    """Nodes without a parent, or whose parent no longer exists."""
    cfg = config or HierarchyConfig()
    rows = conn.execute(
        f"SELECT n.{cfg.id_column} FROM {cfg.nodes_table} n "
        f"LEFT JOIN {cfg.nodes_table} p ON p.{cfg.id_column} = n.{cfg.parent_column} "
        f"WHERE n.{cfg.parent_column} IS NULL OR p.{cfg.id_column} IS NULL "
        f"ORDER BY n.{cfg.id_column}"
    ).fetchall()
    return [str(r[0]) for r in rows]


def lineage_to_dict(
    node_id: str, ancestors: list[Relative], descendants: list[Relative]
) -> dict[str, Any]:
    """JSON-friendly form of a node's lineage."""
    return {
        "node": node_id,
        "ancestors": [{"id": a.ref_id, "generations": a.generations} for a in ancestors],
        "descendants": [
            {"id": d.ref_id, "parent": d.parent_id, "generations": d.generations}
            for d in descendants
        ],
    }


def render_lineage(
    node_id: str,
    ancestors: list[Relative],
    descendants: list[Relative],
    console: Console,
) -> None:
    """Print the ancestor path and the subtree of *node_id* as a Rich tree."""
    from rich.tree import Tree

    if ancestors:
        path = " / ".join(a.ref_id for a in reversed(ancestors))
        console.print(f"[dim]{path} /[/]")

    tree = Tree(f"[bold]{node_id}[/]")
    branches: dict[str, Tree] = {node_id: tree}
    # Shallowest first, so every parent branch exists before its children.
    for rel in descendants:
        parent_branch = branches.get(rel.parent_id or "", tree)
        branches[rel.ref_id] = parent_branch.add(rel.ref_id)
    console.print(tree)

    if not descendants:
        console.print("[dim]No descendants.[/]")
