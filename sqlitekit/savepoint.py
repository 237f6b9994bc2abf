"""Savepoints and transactions as context managers.

Each context manager starts a savepoint or transaction on entry.  If the
block finishes normally the work is released or committed; if the block
raises, the work is rolled back and the exception propagates.  If the
connection has already left its transaction (for instance because an
interrupted statement rolled everything back, or because the block ran
COMMIT or ROLLBACK itself), nothing is done on exit.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

DEFAULT_SAVEPOINT_NAME = "sqlitekit.save"


def _quote(name: str) -> str:
    if '"' in name:
        raise ValueError(f"invalid savepoint name: {name!r}")
    return f'"{name}"'


def _undo(
    conn: sqlite3.Connection,
    statements: Sequence[str],
    original: BaseException | None,
) -> None:
    """Run the rollback statements unless the connection is in autocommit mode."""
    if not conn.in_transaction:
        return
    for statement in statements:
        try:
            conn.execute(statement)
        except sqlite3.Error as err:
            prefix = f"{original}\n\t" if original is not None else ""
            raise sqlite3.OperationalError(prefix + str(err)) from err


@contextmanager
def _scope(
    conn: sqlite3.Connection,
    begin: str,
    finish: str,
    undo: Sequence[str],
) -> Iterator[sqlite3.Connection]:
    conn.execute(begin)
    try:
        yield conn
    except BaseException as exc:
        _undo(conn, undo, exc)
        raise
    if not conn.in_transaction:
        return
    try:
        conn.execute(finish)
    except sqlite3.Error as exc:
        # A failed release or commit may leave the transaction open.
        _undo(conn, undo, exc)
        raise


def save(
    conn: sqlite3.Connection, name: str | None = None
) -> contextmanager:
    """Open a named SAVEPOINT, released on success and rolled back on error.

    Savepoint names may be reused, so nesting with the default name is safe.
    Raises ValueError if the name contains a double quote.
    """
    quoted = _quote(name if name is not None else DEFAULT_SAVEPOINT_NAME)
    return _scope(
        conn,
        f"SAVEPOINT {quoted};",
        f"RELEASE {quoted};",
        (f"ROLLBACK TO {quoted};", f"RELEASE {quoted};"),
    )


def _transaction(conn: sqlite3.Connection, mode: str) -> contextmanager:
    return _scope(conn, f"BEGIN {mode};", "COMMIT;", ("ROLLBACK;",))


def transaction(conn: sqlite3.Connection) -> contextmanager:
    """Open a DEFERRED transaction, committed on success and rolled back on error."""
    return _transaction(conn, "DEFERRED")


def immediate_transaction(conn: sqlite3.Connection) -> contextmanager:
    """Open an IMMEDIATE transaction, committed on success and rolled back on error."""
    return _transaction(conn, "IMMEDIATE")


def exclusive_transaction(conn: sqlite3.Connection) -> contextmanager:
    """Open an EXCLUSIVE transaction, committed on success and rolled back on error."""
    return _transaction(conn, "EXCLUSIVE")