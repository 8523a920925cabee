"""Hierarchy configuration: table names, lock timing, ``config.yml`` loading."""

# treeclosure:domain=config

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any

import yaml

from treeclosure.errors import ConfigError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# Names are interpolated into SQL, so only plain identifiers are accepted.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_NAME_FIELDS = ("nodes_table", "id_column", "parent_column", "hierarchy_table")


@dataclass(frozen=True)
class HierarchyConfig:
    """Where the forest lives and how maintenance cycles lock."""

    nodes_table: str = "nodes"
    id_column: str = "id"
    parent_column: str = "parent_id"
    hierarchy_table: str = "node_hierarchies"
    lock_timeout: float = 10.0
    max_lock_retries: int = 3

    def __post_init__(self) -> None:
        for name in _NAME_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not _IDENTIFIER_RE.match(value):
                msg = f"Invalid {name} '{value}': must be a plain SQL identifier"
                raise ConfigError(msg)
        if self.nodes_table == self.hierarchy_table:
            msg = "nodes_table and hierarchy_table must differ"
            raise ConfigError(msg)
        if self.lock_timeout <= 0:
            msg = f"lock_timeout must be positive, got {self.lock_timeout}"
            raise ConfigError(msg)
        if self.max_lock_retries < 1:
            msg = f"max_lock_retries must be at least 1, got {self.max_lock_retries}"
            raise ConfigError(msg)

    @property
    def table_lock_key(self) -> str:
        """Lock key covering the whole closure table."""
        return self.hierarchy_table

    def tree_lock_key(self, root_id: str) -> str:
        """Lock key covering the tree rooted at *root_id*."""
        return f"{self.hierarchy_table}:{root_id}"


def config_path(project_root: Path) -> Path:
    """Return the location of ``config.yml`` inside a project."""
    return project_root / ".treeclosure" / "config.yml"


def config_to_dict(config: HierarchyConfig) -> dict[str, Any]:
    """Serialize *config* as the ``hierarchy`` section of ``config.yml``."""
    return {"hierarchy": {f.name: getattr(config, f.name) for f in fields(HierarchyConfig)}}


def load_config(project_root: Path) -> HierarchyConfig:
    """Load the ``hierarchy`` section from ``.treeclosure/config.yml``.

    Falls back to defaults for missing keys or a missing file.  An unreadable
    file is logged and ignored; invalid values raise :class:`ConfigError`.
    """
    path = config_path(project_root)
    if not path.is_file():
        return HierarchyConfig()

    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to read %s, using default hierarchy config", path)
        return HierarchyConfig()

    if not isinstance(data, dict):
        return HierarchyConfig()

    section = data.get("hierarchy")
    if not isinstance(section, dict):
        return HierarchyConfig()

    kwargs: dict[str, Any] = {}
    for name in _NAME_FIELDS:
        if name in section:
            kwargs[name] = section[name]
    try:
        if "lock_timeout" in section:
            kwargs["lock_timeout"] = float(section["lock_timeout"])
        if "max_lock_retries" in section:
            kwargs["max_lock_retries"] = int(section["max_lock_retries"])
    except (TypeError, ValueError) as exc:
        msg = f"Invalid value in {path}: {exc}"
        raise ConfigError(msg) from exc

    return HierarchyConfig(**kwargs)
