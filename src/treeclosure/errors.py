"""Exception hierarchy for closure table maintenance."""

# treeclosure:domain=hierarchy

from __future__ import annotations


class TreeClosureError(Exception):
    """Base class for all treeclosure errors."""


class ConfigError(TreeClosureError):
    """Invalid hierarchy configuration."""


class CycleError(TreeClosureError):
    """A proposed parent is the node itself or one of its descendants."""

    def __init__(self, node_id: str, parent_id: str) -> None:
        self.node_id = node_id
        self.parent_id = parent_id
        super().__init__(
            f"Cannot make '{parent_id}' the parent of '{node_id}': "
            f"'{parent_id}' is '{node_id}' or one of its descendants"
        )


class NodeNotFoundError(TreeClosureError, LookupError):
    """The referenced node does not exist in the nodes table."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found")


class NodeExistsError(TreeClosureError):
    """A node with the same id is already present."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' already exists")


class StoreError(TreeClosureError):
    """The backing store failed to execute a read or write."""


class LineageReadError(TreeClosureError):
    """The ancestor or descendant walk could not be completed.

    Raised before any closure row is deleted, so the cycle is safe to retry.
    """


class WriteFailure(TreeClosureError):
    """Deleting or inserting closure rows failed mid-cycle.

    The table may need ``rebuild_all`` to be repaired.
    """


class LockTimeout(TreeClosureError):
    """A named lock could not be acquired in time."""

    def __init__(self, key: str, timeout: float, reason: str | None = None) -> None:
        self.key = key
        self.timeout = timeout
        message = reason or f"Timed out after {timeout:.1f}s waiting for lock '{key}'"
        super().__init__(message)


class HierarchyInvariantError(TreeClosureError):
    """A maintenance cycle would leave the closure table inconsistent."""
