"""Insert rows under randomly chosen identifiers."""

from __future__ import annotations

import secrets
import sqlite3
from collections.abc import Mapping
from itertools import count
from typing import Any

from .execute import execute

_SQLITE_CONSTRAINT_PRIMARYKEY = 1555
_MAX_RETRIES = 100


def insert_rand_id(
    conn: sqlite3.Connection,
    query: str,
    param: str,
    low: int,
    high: int,
    named: Mapping[str, Any] | None = None,
) -> int:
    """Run an insert with a random integer in [low, high) bound to ``param``.

    ``param`` is the parameter as written in the query (for example
    ``"$key"``); ``named`` supplies the other named arguments.  A primary
    key collision is retried with a fresh value, up to 100 times.  Returns
    the identifier that was inserted.
    """
    if low < 0:
        raise ValueError(f"low ({low}) is negative")
    if high <= low:
        raise ValueError(f"empty range [{low}, {high})")

    for attempt in count():
        ident = secrets.randbelow(high - low) + low
        try:
            execute(conn, query, named={**(named or {}), param: ident})
        except sqlite3.IntegrityError as err:
            code = getattr(err, "sqlite_errorcode", None)
            if attempt >= _MAX_RETRIES or code != _SQLITE_CONSTRAINT_PRIMARYKEY:
                raise
            continue
        return ident