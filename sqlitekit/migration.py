"""Run a schema's migrations once before handing out pooled connections.

A ``Schema`` is an ordered list of SQL scripts.  The database's
``user_version`` records how many of them have been applied, so each
script runs exactly once per database, inside its own transaction, and
a failed script is rolled back entirely.

Connections passed to ``migrate`` must be opened with
``isolation_level=None`` so that transactions are controlled only by the
statements that are run.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field

from .execute import execute_script
from .pool import ConnPrepareFunc, OpenFlags, Pool, PoolClosedError
from .query import result_bool, result_int
from .savepoint import immediate_transaction

SignalFunc = Callable[[], object]
ReportFunc = Callable[[BaseException], object]

_RETRY_INTERVAL = 5.0


@dataclass
class MigrationOptions:
    """Optional behaviour for a single migration.

    If ``disable_foreign_keys`` is true and foreign keys are enabled, they
    are switched off before the migration's transaction starts and switched
    back on after it commits.
    """

    disable_foreign_keys: bool = False


@dataclass
class Schema:
    """The migrations of an application.

    ``migrations`` run in order, each in its own transaction.
    ``migration_options`` holds per-migration options, matched by position;
    it may be shorter than ``migrations`` and may contain ``None``.
    ``app_id`` is stored as the database's ``application_id`` and guards
    against opening another application's database.
    ``repeatable_migration`` runs inside the final migration's transaction
    whenever any migration ran.
    """

    migrations: Sequence[str] = field(default_factory=list)
    migration_options: Sequence[MigrationOptions | None] = field(default_factory=list)
    app_id: int = 0
    repeatable_migration: str = ""


@dataclass
class Options:
    """Optional behaviour of a ``MigrationPool``.

    ``flags`` and ``pool_size`` are passed to ``Pool``.  ``on_start_migrate``
    is called once a connection is open and before any migration runs,
    ``on_ready`` once the migrations have succeeded, and ``on_error`` for
    errors met along the way.  ``prepare_conn`` sets up each connection of
    the pool.
    """

    flags: OpenFlags | int = OpenFlags(0)
    pool_size: int = 0
    on_start_migrate: SignalFunc | None = None
    on_ready: SignalFunc | None = None
    on_error: ReportFunc | None = None
    prepare_conn: ConnPrepareFunc | None = None


def _call(func: Callable[..., object] | None, *args: object) -> None:
    if func is not None:
        func(*args)


@contextmanager
def _noted(note: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        exc.add_note(note)
        raise


def _rollback(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK;").close()
    except sqlite3.Error:
        pass


@contextmanager
def _rolling_back(conn: sqlite3.Connection, note: str) -> Iterator[None]:
    try:
        yield
    except BaseException as exc:
        _rollback(conn)
        if isinstance(exc, Exception):
            exc.add_note(note)
        raise


def _user_version(conn: sqlite3.Connection) -> int:
    with _noted("get database user_version"):
        return result_int(conn.execute("PRAGMA user_version;"))


def _ensure_app_id(conn: sqlite3.Connection, want_app_id: int) -> int:
    """Check and set the application ID, returning the current schema version."""
    # An immediate transaction waits on the busy timeout for the write lock
    # instead of failing when it would later be upgraded.
    with immediate_transaction(conn):
        has_schema = result_bool(
            conn.execute("VALUES ((SELECT COUNT(*) FROM sqlite_master) > 0);")
        )
        db_app_id = result_int(conn.execute("PRAGMA application_id;"))
        if db_app_id != want_app_id and not (db_app_id == 0 and not has_schema):
            raise sqlite3.DatabaseError(
                f"database application_id = {db_app_id:#x} (expected {want_app_id:#x})"
            )
        version = _user_version(conn)
        # PRAGMA arguments cannot be bound as parameters.
        conn.execute(f"PRAGMA application_id = {int(want_app_id)};").close()
    return version


def _migrate_db(
    conn: sqlite3.Connection, schema: Schema, on_start: SignalFunc | None
) -> None:
    with _noted("migrate database"):
        version = _ensure_app_id(conn, schema.app_id)

    _call(on_start)

    with _noted("migrate database"):
        foreign_keys_enabled = result_bool(conn.execute("PRAGMA foreign_keys;"))

    migrations = list(schema.migrations)
    options = list(schema.migration_options)
    while version < len(migrations):
        migration_options = options[version] if version < len(options) else None
        disable_fks = (
            foreign_keys_enabled
            and migration_options is not None
            and migration_options.disable_foreign_keys
        )
        if disable_fks:
            with _noted("migrate database: disable foreign keys"):
                conn.execute("PRAGMA foreign_keys = off;").close()

        note = f"migrate database: apply migrations[{version}]"
        with _noted(note):
            conn.execute("BEGIN IMMEDIATE;").close()
        with _rolling_back(conn, note):
            actual = _user_version(conn)
            if actual != version:
                # Another process migrated while no transaction was held.
                _rollback(conn)
            else:
                execute_script(
                    conn,
                    f"{migrations[version]};\nPRAGMA user_version = {version + 1};\n",
                )
                if version == len(migrations) - 1 and schema.repeatable_migration:
                    with _noted("apply repeatable migration"):
                        execute_script(conn, schema.repeatable_migration)
                conn.execute("COMMIT;").close()
        if actual != version:
            version = actual
            continue

        if disable_fks:
            with _noted("migrate database: reenable foreign keys"):
                conn.execute("PRAGMA foreign_keys = on;").close()
        version += 1


def migrate(conn: sqlite3.Connection, schema: Schema) -> None:
    """Apply the migrations of the schema that the database has not yet run."""
    _migrate_db(conn, schema, None)


class MigrationPool:
    """A connection pool that hands out connections only after migrating.

    Opening the pool and running the migrations happens on a background
    thread.  Failures to open the database are reported to ``on_error`` and
    retried whenever a caller waits for a connection.
    """

    def __init__(
        self, uri: str, schema: Schema, options: Options | None = None
    ) -> None:
        self._opts = options if options is not None else Options()
        self._ready = threading.Event()
        self._wake = threading.Event()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._migrating: sqlite3.Connection | None = None
        self._pool: Pool | None = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, args=(uri, schema), daemon=True
        )
        self._thread.start()

    def _run(self, uri: str, schema: Schema) -> None:
        try:
            self._pool = self._open(uri, schema)
        except BaseException as exc:
            self._error = exc
            _call(self._opts.on_error, exc)
        finally:
            self._ready.set()

    def _closed_early(self) -> PoolClosedError:
        return PoolClosedError("closed before successful migration")

    def _wait_for_retry(self) -> None:
        self._wake.wait()
        self._wake.clear()
        if self._cancelled.is_set():
            raise self._closed_early()

    def _close_reporting(self, pool: Pool, note: str) -> None:
        try:
            pool.close()
        except Exception as exc:
            exc.add_note(note)
            _call(self._opts.on_error, exc)

    def _open(self, uri: str, schema: Schema) -> Pool:
        first = True
        while True:
            if not first:
                self._wait_for_retry()
            first = False
            if self._cancelled.is_set():
                raise self._closed_early()

            try:
                pool = Pool(
                    uri,
                    flags=self._opts.flags,
                    pool_size=self._opts.pool_size,
                    prepare_conn=self._opts.prepare_conn,
                )
            except Exception as exc:
                _call(self._opts.on_error, exc)
                continue

            try:
                conn = pool.take()
            except Exception:
                self._close_reporting(pool, "close after failed connection preparation")
                raise
            if self._cancelled.is_set():
                pool.put(conn)
                pool.close()
                raise self._closed_early()

            with self._lock:
                self._migrating = conn
            try:
                _migrate_db(conn, schema, self._opts.on_start_migrate)
            except BaseException:
                pool.put(conn)
                self._close_reporting(pool, "close after failed migration")
                raise
            finally:
                with self._lock:
                    self._migrating = None
            pool.put(conn)
            _call(self._opts.on_ready)
            return pool

    def close(self) -> None:
        """Close every connection, interrupting a migration in progress.

        Raises PoolClosedError if the pool was already closed.
        """
        with self._lock:
            if self._closed:
                raise PoolClosedError("close sqlite pool: already closed")
            self._closed = True
            migrating = self._migrating
        self._cancelled.set()
        self._wake.set()
        if migrating is not None:
            migrating.interrupt()
        self._ready.wait()
        if self._pool is not None:
            self._pool.close()

    def get(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection once migration is complete; the same as ``take``."""
        return self.take(timeout)

    def take(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection, waiting until the migrations have completed.

        Raises TimeoutError if no connection is available within timeout
        seconds, and sqlite3.DatabaseError if opening or migrating failed.
        Every connection taken must be given back with ``put``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            # Ask the opener to try again if it is waiting after a failure.
            self._wake.set()
            wait = _RETRY_INTERVAL
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            if self._ready.wait(wait):
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("get sqlite connection: timed out")

        if self._error is not None:
            raise sqlite3.DatabaseError(
                f"get sqlite connection: {self._error}"
            ) from self._error
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        assert self._pool is not None
        return self._pool.take(remaining)

    def put(self, conn: sqlite3.Connection | None) -> None:
        """Give a connection back to the pool.

        Raises RuntimeError if the pool is not ready or failed to migrate.
        """
        if not self._ready.is_set():
            raise RuntimeError("put before pool is ready")
        if self._error is not None or self._pool is None:
            raise RuntimeError("put on failed pool")
        self._pool.put(conn)

    def check_health(self) -> None:
        """Raise RuntimeError unless the migrations have completed successfully."""
        with self._lock:
            closed = self._closed
        if closed:
            raise RuntimeError("sqlite pool health: closed")
        if not self._ready.is_set():
            raise RuntimeError("sqlite pool health: not ready")
        if self._error is not None:
            raise RuntimeError(f"sqlite pool health: {self._error}") from self._error