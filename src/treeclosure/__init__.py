"""Treeclosure - incremental closure table maintenance for SQLite forests."""

__version__ = "0.3.0"
