"""Treeclosure CLI entry point."""

# treeclosure:service=cli

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from treeclosure import __version__
from treeclosure.errors import TreeClosureError

if TYPE_CHECKING:
    import sqlite3

    from treeclosure.config import HierarchyConfig
    from treeclosure.hierarchy.maintenance import HierarchyMaintainer, RebuildResult

_PROJECT_OPTION = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project root (default: current directory).",
)


def _db_path(project_root: Path) -> Path:
    return project_root / ".treeclosure" / "treeclosure.db"


def _open_project(project: Path | None) -> tuple[sqlite3.Connection, HierarchyConfig]:
    """Open the project database, exiting with an error if it is missing."""
    from treeclosure.config import load_config
    from treeclosure.db import open_db

    project_root = project or Path.cwd()
    db_path = _db_path(project_root)
    if not db_path.exists():
        click.echo("Error: database not found. Run `treeclosure init` first.", err=True)
        sys.exit(1)
    try:
        config = load_config(project_root)
    except TreeClosureError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    return open_db(db_path), config


def _maintainer(conn: sqlite3.Connection, config: HierarchyConfig) -> HierarchyMaintainer:
    from treeclosure.hierarchy import HierarchyMaintainer, SqliteHierarchyStore

    return HierarchyMaintainer(SqliteHierarchyStore(conn, config), config)


def _echo_result(result: RebuildResult) -> None:
    click.echo(f"Nodes rebuilt:  {result.nodes_rebuilt}")
    click.echo(f"Rows deleted:   {result.rows_deleted}")
    click.echo(f"Rows inserted:  {result.rows_inserted}")
    if result.orphans_removed:
        click.echo(f"Orphans purged: {result.orphans_removed}")


def _fail(exc: Exception) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="treeclosure")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output (errors only).")
@click.pass_context
def main(ctx: click.Context, *, verbose: bool, quiet: bool) -> None:
    """Treeclosure - closure table maintenance for parent-pointer forests."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@main.command()
@_PROJECT_OPTION
def init(*, project: Path | None) -> None:
    """Create the database and a default config.yml."""
    import yaml

    from treeclosure.config import HierarchyConfig, config_path, config_to_dict, load_config
    from treeclosure.db import create_schema, open_db

    project_root = project or Path.cwd()
    cfg_path = config_path(project_root)
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    if cfg_path.exists():
        try:
            config = load_config(project_root)
        except TreeClosureError as exc:
            _fail(exc)
    else:
        config = HierarchyConfig()
        cfg_path.write_text(
            yaml.safe_dump(config_to_dict(config), sort_keys=False), encoding="utf-8"
        )

    conn = open_db(_db_path(project_root))
    try:
        create_schema(conn, config)
    finally:
        conn.close()
    click.echo(f"Initialized {_db_path(project_root)}")


@main.command()
@click.argument("forest_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_PROJECT_OPTION
def load(forest_file: Path, *, project: Path | None) -> None:
    """Load nodes from a YAML forest file, then rebuild the closure table."""
    import yaml

    from treeclosure.loader import load_forest

    conn, config = _open_project(project)
    try:
        loaded = load_forest(forest_file, conn, config)
        result = _maintainer(conn, config).rebuild_all()
    except (TreeClosureError, ValueError, yaml.YAMLError) as exc:
        _fail(exc)
    finally:
        conn.close()

    click.echo(f"Nodes loaded:   {loaded.nodes_loaded}")
    _echo_result(result)
    for err in loaded.errors:
        click.echo(f"  [ERR] {err}")
    for warn in loaded.warnings:
        click.echo(f"  [warn] {warn}")


@main.command()
@click.argument("node_id")
@click.option("--parent", "parent_id", default=None, help="Parent node id (default: root).")
@click.option("--name", default="", help="Display name.")
@_PROJECT_OPTION
def add(node_id: str, *, parent_id: str | None, name: str, project: Path | None) -> None:
    """Add a node to the forest."""
    conn, config = _open_project(project)
    try:
        result = _maintainer(conn, config).add_node(node_id, parent_id, name)
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()
    click.echo(f"Added {node_id} ({result.rows_inserted} closure rows)")


@main.command()
@click.argument("node_id")
@click.option("--parent", "parent_id", default=None, help="New parent node id.")
@click.option("--root", "to_root", is_flag=True, help="Detach the node into its own tree.")
@_PROJECT_OPTION
def move(node_id: str, *, parent_id: str | None, to_root: bool, project: Path | None) -> None:
    """Reparent a node."""
    if (parent_id is None) == (not to_root):
        click.echo("Error: pass exactly one of --parent or --root.", err=True)
        sys.exit(2)

    conn, config = _open_project(project)
    try:
        changed = _maintainer(conn, config).move_node(node_id, None if to_root else parent_id)
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()
    if changed:
        click.echo(f"Moved {node_id}")
    else:
        click.echo(f"{node_id} already has that parent, nothing to do")


@main.command()
@click.argument("node_id")
@_PROJECT_OPTION
def remove(node_id: str, *, project: Path | None) -> None:
    """Delete a node; its children become roots."""
    conn, config = _open_project(project)
    try:
        result = _maintainer(conn, config).remove_node(node_id)
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()
    click.echo(f"Removed {node_id}")
    _echo_result(result)


@main.command()
@click.argument("node_id", required=False)
@_PROJECT_OPTION
def rebuild(node_id: str | None, *, project: Path | None) -> None:
    """Rebuild the closure rows of NODE_ID's subtree, or of every tree."""
    conn, config = _open_project(project)
    maintainer = _maintainer(conn, config)
    try:
        result = maintainer.rebuild(node_id) if node_id else maintainer.rebuild_all()
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()
    _echo_result(result)


@main.command()
@_PROJECT_OPTION
def cleanup(*, project: Path | None) -> None:
    """Delete closure rows that reference missing nodes."""
    conn, config = _open_project(project)
    try:
        removed = _maintainer(conn, config).cleanup()
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()
    click.echo(f"Removed {removed} orphan rows")


@main.command()
@_PROJECT_OPTION
def check(*, project: Path | None) -> None:
    """Verify the closure table against the parent pointers.

    Exit code 0 = table is exact, 1 = problems found.
    """
    conn, config = _open_project(project)
    try:
        problems = _maintainer(conn, config).verify()
    except TreeClosureError as exc:
        _fail(exc)
    finally:
        conn.close()

    if not problems:
        click.echo("Closure table OK")
        return
    for problem in problems:
        click.echo(f"  {problem}")
    click.echo(f"{len(problems)} problems found. Run `treeclosure rebuild` to repair.")
    sys.exit(1)


@main.command()
@click.argument("node_id")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@_PROJECT_OPTION
def show(node_id: str, *, as_json: bool, project: Path | None) -> None:
    """Show the ancestors and descendants of a node."""
    from treeclosure.queries import ancestors_of, descendants_of, lineage_to_dict, render_lineage

    conn, config = _open_project(project)
    try:
        ancestors = ancestors_of(conn, node_id, config)
        descendants = descendants_of(conn, node_id, config)
    except LookupError as exc:
        _fail(exc)
    finally:
        conn.close()

    if as_json:
        click.echo(
            json.dumps(lineage_to_dict(node_id, ancestors, descendants), ensure_ascii=False, indent=2)
        )
    else:
        from rich.console import Console

        render_lineage(node_id, ancestors, descendants, Console())
