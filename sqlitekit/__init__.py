"""Helpers for sqlite3: checked execution, single-row results, savepoints, pools and migrations."""

__version__ = "0.1.0"
__all__ = ["execute", "migration", "pool", "query", "rand_id", "savepoint"]