"""A fixed-size, thread-safe pool of SQLite connections."""

from __future__ import annotations

import sqlite3
import threading
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import IntFlag
from pathlib import Path
from urllib.parse import parse_qsl, urlencode

ConnPrepareFunc = Callable[[sqlite3.Connection], object]

DEFAULT_POOL_SIZE = 10
_BUSY_TIMEOUT = 10.0


class OpenFlags(IntFlag):
    """Flags describing how a database is opened, with SQLite's values."""

    READONLY = 0x00000001
    READWRITE = 0x00000002
    CREATE = 0x00000004
    URI = 0x00000040
    MEMORY = 0x00000080
    NOMUTEX = 0x00008000
    FULLMUTEX = 0x00010000
    SHAREDCACHE = 0x00020000
    PRIVATECACHE = 0x00040000
    WAL = 0x00080000
    NOFOLLOW = 0x01000000


DEFAULT_FLAGS = OpenFlags.READWRITE | OpenFlags.CREATE | OpenFlags.WAL | OpenFlags.URI


class PoolClosedError(sqlite3.Error):
    """The pool has been closed."""


def _connect_target(uri: str, flags: OpenFlags) -> str:
    """Turn a filename or URI plus open flags into a URI for sqlite3.connect."""
    if uri == ":memory:":
        base, query = "file::memory:", ""
    elif flags & OpenFlags.URI and uri.startswith("file:"):
        base, _, query = uri.partition("?")
    else:
        base, query = Path(uri).absolute().as_uri(), ""

    params = dict(parse_qsl(query, keep_blank_values=True))
    if "mode" not in params:
        if flags & OpenFlags.MEMORY:
            params["mode"] = "memory"
        elif flags & OpenFlags.READONLY:
            params["mode"] = "ro"
        elif flags & OpenFlags.READWRITE:
            params["mode"] = "rwc" if flags & OpenFlags.CREATE else "rw"
    if "cache" not in params:
        if flags & OpenFlags.SHAREDCACHE:
            params["cache"] = "shared"
        elif flags & OpenFlags.PRIVATECACHE:
            params["cache"] = "private"
    if not params:
        return base
    return f"{base}?{urlencode(params)}"


def _open(uri: str, flags: OpenFlags) -> sqlite3.Connection:
    conn = sqlite3.connect(
        _connect_target(uri, flags),
        uri=True,
        timeout=_BUSY_TIMEOUT,
        isolation_level=None,
        check_same_thread=False,
    )
    if flags & OpenFlags.WAL:
        try:
            conn.execute("PRAGMA journal_mode=wal;").close()
        except sqlite3.Error:
            conn.close()
            raise
    return conn


class Pool:
    """A fixed-size pool of SQLite connections, safe to share between threads.

    Connections are opened with ``isolation_level=None`` and may be used
    from any thread.
    """

    def __init__(
        self,
        uri: str,
        flags: OpenFlags | int = OpenFlags(0),
        pool_size: int = 0,
        prepare_conn: ConnPrepareFunc | None = None,
    ) -> None:
        flags = OpenFlags(flags)
        if pool_size != 1:
            in_memory = uri == ":memory:" or bool(flags & OpenFlags.MEMORY)
            shared_cache = "cache=shared" in uri.lower() or bool(
                flags & OpenFlags.SHAREDCACHE
            )
            if in_memory and not shared_cache:
                raise ValueError(
                    'uri==":memory:" or flag OpenFlags.MEMORY does not work with '
                    'multiple connections, use "file::memory:?mode=memory&cache=shared"'
                )
        size = pool_size if pool_size >= 1 else DEFAULT_POOL_SIZE
        if not flags:
            flags = DEFAULT_FLAGS

        self._prepare = prepare_conn
        self._cond = threading.Condition()
        self._free: deque[sqlite3.Connection] = deque()
        self._all: set[sqlite3.Connection] = set()
        self._taken: set[sqlite3.Connection] = set()
        self._inited: set[sqlite3.Connection] = set()
        self._closed = False

        try:
            for _ in range(size):
                conn = _open(uri, flags)
                self._all.add(conn)
                self._free.append(conn)
        except BaseException:
            for conn in self._all:
                conn.close()
            self._all.clear()
            self._free.clear()
            self._closed = True
            raise

    def take(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection, waiting up to timeout seconds for one to be free.

        Raises PoolClosedError if the pool is closed and TimeoutError if no
        connection became free in time.  An exception from the prepare
        function returns the connection to the pool and propagates; the
        function is tried again the next time that connection is taken.
        Every connection taken must be given back with ``put``.
        """
        with self._cond:
            ready = self._cond.wait_for(lambda: self._closed or self._free, timeout)
            if self._closed:
                raise PoolClosedError("get sqlite connection: pool closed")
            if not ready:
                raise TimeoutError("get sqlite connection: timed out")
            conn = self._free.popleft()
            self._taken.add(conn)
            needs_prepare = self._prepare is not None and conn not in self._inited

        if needs_prepare:
            try:
                self._prepare(conn)
            except BaseException:
                self._release(conn)
                raise
            with self._cond:
                self._inited.add(conn)
        return conn

    def get(self, timeout: float | None = None) -> sqlite3.Connection | None:
        """Take a connection, returning None instead of raising on failure."""
        try:
            return self.take(timeout)
        except Exception:
            return None

    def put(self, conn: sqlite3.Connection | None) -> None:
        """Give a connection back to the pool.  ``put(None)`` does nothing.

        Raises ValueError if the connection was not taken from this pool.
        """
        if conn is None:
            return
        self._release(conn)

    def _release(self, conn: sqlite3.Connection) -> None:
        with self._cond:
            if conn not in self._all:
                raise ValueError("connection not created by this pool")
            if conn not in self._taken:
                raise ValueError("connection is not taken from this pool")
            self._taken.discard(conn)
            self._free.append(conn)
            self._cond.notify_all()

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[sqlite3.Connection]:
        """Take a connection for the duration of a with block."""
        conn = self.take(timeout)
        try:
            yield conn
        finally:
            self.put(conn)

    def close(self) -> None:
        """Interrupt and close every connection, waiting for taken ones to return.

        Raises PoolClosedError if the pool was already closed, or the first
        error met while closing connections.
        """
        with self._cond:
            if self._closed:
                raise PoolClosedError("close sqlite pool: already closed")
            self._closed = True
            taken = list(self._taken)
            self._cond.notify_all()

        for conn in taken:
            conn.interrupt()

        with self._cond:
            self._cond.wait_for(lambda: len(self._free) == len(self._all))
            conns = list(self._free)
            self._free.clear()

        first_error: sqlite3.Error | None = None
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as err:
                if first_error is None:
                    first_error = err
        if first_error is not None:
            raise first_error

    def __enter__(self) -> Pool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()