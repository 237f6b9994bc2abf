"""Read the single value produced by a query that yields exactly one row."""

from __future__ import annotations

import sqlite3
from typing import Any


class NoResultsError(sqlite3.Error):
    """The statement produced no result rows."""

    def __init__(self) -> None:
        super().__init__("statement has no results")


class MultipleResultsError(sqlite3.Error):
    """The statement produced more than one result row."""

    def __init__(self) -> None:
        super().__init__("statement has multiple result rows")


def _single_value(cursor: sqlite3.Cursor) -> Any:
    """Return the first column of the only row and close the cursor."""
    try:
        row = cursor.fetchone()
        if row is None:
            raise NoResultsError()
        if cursor.fetchone() is not None:
            raise MultipleResultsError()
        return row[0]
    finally:
        cursor.close()


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(_to_text(value).strip())
    except ValueError:
        return 0.0


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = _to_text(value).strip()
    try:
        return int(text)
    except ValueError:
        return int(_to_float(text))


def result_int(cursor: sqlite3.Cursor) -> int:
    """Return the first column of the only result row as an integer.

    Raises NoResultsError or MultipleResultsError unless there is exactly
    one row.  The cursor is closed afterwards.
    """
    return _to_int(_single_value(cursor))


def result_bool(cursor: sqlite3.Cursor) -> bool:
    """Report whether the first column of the only result row is non-zero."""
    return result_int(cursor) != 0


def result_text(cursor: sqlite3.Cursor) -> str:
    """Return the first column of the only result row as text."""
    return _to_text(_single_value(cursor))


def result_float(cursor: sqlite3.Cursor) -> float:
    """Return the first column of the only result row as a real number."""
    return _to_float(_single_value(cursor))


def result_bytes(cursor: sqlite3.Cursor) -> bytes:
    """Return the first column of the only result row as bytes."""
    value = _single_value(cursor)
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return _to_text(value).encode("utf-8")