"""Run SQL statements and scripts with bound arguments.

Statements come either from strings (``execute``, ``execute_transient``,
``execute_script``) or from files in a directory (``execute_fs``,
``execute_transient_fs``, ``execute_script_fs``).

Positional arguments bind to ``?1``, ``?2`` and so on.  Named arguments
are keyed by the parameter as written in the query, prefix included
(``":name"``, ``"@name"``, ``"$name"`` or ``"?3"``).  Integers, floats,
strings, bytes, booleans and ``None`` bind as themselves; anything else
binds as its ``str()``.

The functions expect connections opened with ``isolation_level=None`` so
that transactions are controlled only by the statements that are run.
"""

from __future__ import annotations

import os
import sqlite3
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, NamedTuple

from .savepoint import save

ResultFunc = Callable[[Any], object]

_MAX_VARIABLE_NUMBER = 32766
_WORD = 64
_WORD_MASK = (1 << _WORD) - 1


class ResultCode(IntEnum):
    """Primary SQLite result codes used by this package."""

    OK = 0
    ERROR = 1
    BUSY = 5
    LOCKED = 6
    NOMEM = 7
    READONLY = 8
    INTERRUPT = 9
    CONSTRAINT = 19
    MISUSE = 21
    RANGE = 25


class ExecError(sqlite3.Error):
    """An error found while binding arguments or preparing a statement."""

    def __init__(self, code: ResultCode, message: str) -> None:
        super().__init__(f"{message} (SQLITE_{code.name})")
        self.code = code
        self.sqlite_errorcode = int(code)
        self.sqlite_errorname = f"SQLITE_{code.name}"


@dataclass
class Bitset:
    """A fixed-capacity set of small non-negative integers, stored as 64-bit words."""

    words: list[int] = field(default_factory=list)

    @classmethod
    def with_size(cls, n: int) -> Bitset:
        """Return an empty bitset able to hold the members 0 to n-1."""
        return cls([0] * ((n + _WORD - 1) // _WORD))

    @property
    def _capacity(self) -> int:
        return len(self.words) * _WORD

    @property
    def _value(self) -> int:
        return sum((word & _WORD_MASK) << (_WORD * i) for i, word in enumerate(self.words))

    def set(self, n: int) -> None:
        """Add n to the set."""
        self.words[n // _WORD] |= 1 << (n % _WORD)

    def has_all(self, n: int) -> bool:
        """Report whether every integer in [0, n) is in the set."""
        if self._capacity < n:
            return False
        mask = (1 << n) - 1
        return self._value & mask == mask

    def first_missing(self) -> int:
        """Return the smallest integer not in the set, or the capacity if it is full."""
        capacity = self._capacity
        missing = ~self._value & ((1 << capacity) - 1)
        if not missing:
            return capacity
        return (missing & -missing).bit_length() - 1


class _Token(NamedTuple):
    kind: str
    start: int
    end: int


def _is_id_char(c: str) -> bool:
    return c.isalnum() or c in "_$" or ord(c) > 127


def _quoted_end(sql: str, start: int, quote: str) -> int:
    pos = start + 1
    while True:
        found = sql.find(quote, pos)
        if found == -1:
            return len(sql)
        if found + 1 < len(sql) and sql[found + 1] == quote:
            pos = found + 2
            continue
        return found + 1


def _tokens(sql: str) -> Iterator[_Token]:
    """Split SQL into coarse tokens: enough to find parameters and code."""
    n = len(sql)
    i = 0
    while i < n:
        c = sql[i]
        kind = "other"
        if c.isspace():
            j = i + 1
            while j < n and sql[j].isspace():
                j += 1
            kind = "space"
        elif sql.startswith("--", i):
            newline = sql.find("\n", i)
            j = n if newline == -1 else newline + 1
            kind = "comment"
        elif sql.startswith("/*", i):
            close = sql.find("*/", i + 2)
            j = n if close == -1 else close + 2
            kind = "comment"
        elif c in "'\"`":
            j = _quoted_end(sql, i, c)
            kind = "string"
        elif c == "[":
            close = sql.find("]", i + 1)
            j = n if close == -1 else close + 1
            kind = "string"
        elif c == "?":
            j = i + 1
            while j < n and sql[j].isdigit():
                j += 1
            kind = "param"
        elif c in ":@$":
            j = i + 1
            while j < n:
                if _is_id_char(sql[j]):
                    j += 1
                elif c == "$" and sql.startswith("::", j):
                    j += 2
                else:
                    break
            if j > i + 1:
                kind = "param"
        elif _is_id_char(c):
            j = i + 1
            while j < n and _is_id_char(sql[j]):
                j += 1
            kind = "word"
        else:
            j = i + 1
        yield _Token(kind, i, j)
        i = j


def _has_code(sql: str) -> bool:
    return any(
        tok.kind not in ("space", "comment") and sql[tok.start : tok.end] != ";"
        for tok in _tokens(sql)
    )


class _Param(NamedTuple):
    token: _Token
    text: str
    index: int


def _parameters(sql: str) -> list[_Param]:
    """Find every parameter occurrence with the index SQLite gives it."""
    seen: dict[str, int] = {}
    highest = 0
    found = []
    for tok in _tokens(sql):
        if tok.kind != "param":
            continue
        text = sql[tok.start : tok.end]
        if text == "?":
            highest += 1
            index = highest
        elif text.startswith("?"):
            index = int(text[1:])
            if not 1 <= index <= _MAX_VARIABLE_NUMBER:
                raise ExecError(
                    ResultCode.ERROR,
                    f"variable number must be between ?1 and ?{_MAX_VARIABLE_NUMBER}",
                )
            highest = max(highest, index)
        elif text in seen:
            index = seen[text]
        else:
            highest += 1
            index = highest
            seen[text] = index
        found.append(_Param(tok, text, index))
    return found


def _names(params: Sequence[_Param]) -> list[str]:
    count = max((p.index for p in params), default=0)
    names = [""] * count
    for p in params:
        if p.text != "?" and not names[p.index - 1]:
            names[p.index - 1] = p.text
    return names


def parameter_names(query: str) -> list[str]:
    """Return the name of each parameter of a statement, in index order.

    Element i belongs to parameter i+1.  Anonymous ``?`` parameters, and
    indexes no parameter refers to, have the empty string as their name.
    """
    return _names(_parameters(query))


def split_statement(queries: str) -> tuple[str, str]:
    """Split off the first complete statement, returning it and the rest.

    If no statement in the text is terminated, the whole text is returned
    as the statement and the rest is empty.
    """
    pos = 0
    while (semicolon := queries.find(";", pos)) != -1:
        candidate = queries[: semicolon + 1]
        if sqlite3.complete_statement(candidate):
            return candidate, queries[semicolon + 1 :]
        pos = semicolon + 1
    return queries, ""


def _convert(arg: Any) -> Any:
    if arg is None or isinstance(arg, (str, float, bytes)):
        return arg
    if isinstance(arg, bool):
        return int(arg)
    if isinstance(arg, int):
        if -(1 << 63) <= arg < (1 << 63):
            return arg
        if (1 << 63) <= arg < (1 << 64):
            return arg - (1 << 64)
        return str(arg)
    if isinstance(arg, (bytearray, memoryview)):
        return bytes(arg)
    return str(arg)


def _set_named(
    names: Sequence[str],
    values: list[Any],
    provided: Bitset,
    named: Mapping[str, Any],
    forbid_missing: bool,
    forbid_extra: bool,
) -> None:
    if not named:
        return
    unused = set(named) if forbid_extra else set()
    for i, name in enumerate(names):
        if not name:
            continue
        if name not in named:
            if forbid_missing:
                raise ExecError(ResultCode.ERROR, f"missing parameter {name}")
            continue
        unused.discard(name)
        provided.set(i)
        values[i] = _convert(named[name])
    if unused:
        raise ExecError(ResultCode.RANGE, f"unknown argument {min(unused)}")


def _rewrite_anonymous(sql: str, params: Sequence[_Param]) -> str:
    pieces = []
    last = 0
    for p in params:
        if p.text == "?":
            pieces.append(sql[last : p.token.start])
            pieces.append(f"?{p.index}")
            last = p.token.end
    pieces.append(sql[last:])
    return "".join(pieces)


def _bind(
    query: str,
    args: Sequence[Any] | None,
    named: Mapping[str, Any] | None,
    *,
    forbid_missing: bool,
    forbid_extra: bool,
) -> tuple[str, Sequence[Any] | dict[str, Any]]:
    params = _parameters(query)
    names = _names(params)
    count = len(names)
    values: list[Any] = [None] * count
    provided = Bitset.with_size(count)

    args = list(args or ())
    if len(args) > count:
        raise ExecError(
            ResultCode.RANGE,
            f"len(args) > parameter count; {len(args)} > {count}",
        )
    for i, arg in enumerate(args):
        provided.set(i)
        values[i] = _convert(arg)
    _set_named(names, values, provided, named or {}, forbid_missing, forbid_extra)

    if forbid_missing and not provided.has_all(count):
        i = provided.first_missing() + 1
        name = names[i - 1] or f"?{i}"
        raise ExecError(ResultCode.ERROR, f"missing argument for {name}")

    if not any(name and not name.startswith("?") for name in names):
        return query, values
    if any(p.text == "?" for p in params):
        query = _rewrite_anonymous(query, params)
        names = parameter_names(query)
    return query, {name[1:]: values[i] for i, name in enumerate(names) if name}


def _require(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    if conn is None:
        raise ExecError(ResultCode.MISUSE, "nil connection")
    return conn


def _run(
    conn: sqlite3.Connection,
    query: str,
    args: Sequence[Any] | None,
    named: Mapping[str, Any] | None,
    result_func: ResultFunc | None,
    *,
    forbid_missing: bool,
    forbid_extra: bool,
) -> None:
    sql, bindings = _bind(
        query, args, named, forbid_missing=forbid_missing, forbid_extra=forbid_extra
    )
    cursor = conn.execute(sql, bindings)
    try:
        for row in cursor:
            if result_func is not None:
                result_func(row)
    finally:
        cursor.close()


def _single(conn: sqlite3.Connection | None, query: str) -> tuple[sqlite3.Connection, str]:
    conn = _require(conn)
    statement, rest = split_statement(query)
    if _has_code(rest):
        raise ExecError(ResultCode.ERROR, f"query {query!r} has trailing bytes")
    return conn, statement


def execute(
    conn: sqlite3.Connection,
    query: str,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Run one statement, calling result_func with each result row.

    The statement goes through the connection's statement cache.  Every
    parameter must receive a value and every named argument must match a
    parameter.  An exception from result_func stops iteration and
    propagates.
    """
    conn, statement = _single(conn, query)
    _run(conn, statement, args, named, result_func, forbid_missing=True, forbid_extra=True)


def execute_transient(
    conn: sqlite3.Connection,
    query: str,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Run one statement once, in the manner of sqlite3_exec.

    Argument checks are the same as for ``execute``; text after the
    statement other than whitespace and comments is an error.
    """
    conn, statement = _single(conn, query)
    _run(conn, statement, args, named, result_func, forbid_missing=True, forbid_extra=True)


def execute_script(
    conn: sqlite3.Connection,
    queries: str,
    named: Mapping[str, Any] | None = None,
) -> None:
    """Run a script of statements inside a savepoint.

    Each statement takes the named arguments it refers to; an argument no
    statement refers to is an error.  Any error rolls the whole script back.
    """
    conn = _require(conn)
    named = dict(named or {})
    unused = set(named)
    with save(conn):
        remaining = queries
        while remaining := remaining.strip():
            statement, remaining = split_statement(remaining)
            unused.difference_update(name for name in parameter_names(statement) if name)
            if not _has_code(statement):
                continue
            _run(
                conn,
                statement,
                None,
                named,
                None,
                forbid_missing=True,
                forbid_extra=False,
            )
        if unused:
            raise ExecError(ResultCode.RANGE, f"unknown argument {min(unused)}")


def _valid_path(name: str) -> bool:
    if name == ".":
        return True
    if not name or name.startswith("/") or name.endswith("/"):
        return False
    return all(part not in ("", ".", "..") for part in name.split("/"))


def _read_text(directory: Any, filename: str) -> str:
    if not _valid_path(filename):
        raise ValueError(f"invalid path: {filename!r}")
    location = Path(directory) if isinstance(directory, (str, os.PathLike)) else directory
    for part in filename.split("/"):
        location = location / part
    return location.read_text(encoding="utf-8")


def _noting(filename: str, run: Callable[[], None]) -> None:
    try:
        run()
    except Exception as exc:
        exc.add_note(f"while executing {filename}")
        raise


def execute_fs(
    conn: sqlite3.Connection,
    directory: Any,
    filename: str,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Run the single statement stored in a file, as ``execute`` does.

    ``directory`` is a path or any traversable supporting ``/``;
    ``filename`` is a slash-separated path relative to it.
    """
    query = _read_text(directory, filename).strip()
    _noting(filename, lambda: execute(conn, query, args, named, result_func))


def execute_transient_fs(
    conn: sqlite3.Connection,
    directory: Any,
    filename: str,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Run the single statement stored in a file, as ``execute_transient`` does."""
    query = _read_text(directory, filename).strip()
    _noting(filename, lambda: execute_transient(conn, query, args, named, result_func))


def execute_script_fs(
    conn: sqlite3.Connection,
    directory: Any,
    filename: str,
    named: Mapping[str, Any] | None = None,
) -> None:
    """Run the script stored in a file inside a savepoint, as ``execute_script`` does."""
    queries = _read_text(directory, filename)
    _noting(filename, lambda: execute_script(conn, queries, named))