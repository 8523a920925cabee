"""Node references: an identity plus a tagged parent reference."""

# treeclosure:domain=hierarchy

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Union


class _RootMarker(enum.Enum):
    ROOT = "root"

    def __repr__(self) -> str:
        return "ROOT"


# Parent reference of a true root.  Never equal to any real node id.
ROOT: Final = _RootMarker.ROOT

ParentRef = Union[str, _RootMarker]


def parent_ref(value: Any) -> ParentRef:
    """Normalize a nullable ``parent_id`` column value into a :data:`ParentRef`."""
    if value is None or value is ROOT:
        return ROOT
    return str(value)


@dataclass(frozen=True)
class NodeRef:
    """A node identity and the identity of its parent (or :data:`ROOT`)."""

    reference: str
    parent_reference: ParentRef = ROOT

    @property
    def is_root(self) -> bool:
        return self.parent_reference is ROOT

    @property
    def parent_id(self) -> str | None:
        """The parent identity as a nullable column value."""
        if self.parent_reference is ROOT:
            return None
        return str(self.parent_reference)

    @classmethod
    def from_row(
        cls,
        row: Sequence[Any] | Mapping[str, Any],
        id_column: str = "id",
        parent_column: str = "parent_id",
    ) -> NodeRef:
        """Build a NodeRef from a query result.

        Tuples and lists are read positionally as ``(id, parent_id)``; anything
        else is looked up by column name (``sqlite3.Row`` and plain dicts).
        """
        if isinstance(row, (tuple, list)):
            reference, parent = row[0], row[1]
        else:
            reference, parent = row[id_column], row[parent_column]
        return cls(str(reference), parent_ref(parent))
