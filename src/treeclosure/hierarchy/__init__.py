"""Hierarchy domain: node references, closure builder, lineage walker, store, maintenance."""

# treeclosure:domain=hierarchy

from treeclosure.hierarchy.builder import (
    ClosureBuilder,
    HierarchyRow,
    build_forest,
    build_hierarchy,
)
from treeclosure.hierarchy.maintenance import HierarchyMaintainer, RebuildResult
from treeclosure.hierarchy.node_ref import ROOT, NodeRef, ParentRef, parent_ref
from treeclosure.hierarchy.store import (
    HierarchyStore,
    LockRegistry,
    SqliteHierarchyStore,
    default_lock_registry,
)
from treeclosure.hierarchy.walker import Lineage, LineageWalker

__all__ = [
    "ROOT",
    "ClosureBuilder",
    "HierarchyMaintainer",
    "HierarchyRow",
    "HierarchyStore",
    "Lineage",
    "LineageWalker",
    "LockRegistry",
    "NodeRef",
    "ParentRef",
    "RebuildResult",
    "SqliteHierarchyStore",
    "build_forest",
    "build_hierarchy",
    "default_lock_registry",
    "parent_ref",
]
