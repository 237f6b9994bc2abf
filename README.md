# sqlitekit

Small utilities that build on the standard `sqlite3` module:

- `sqlitekit.execute`: run statements and scripts with positional and
  named arguments that are checked strictly. A missing or unknown
  parameter raises an error instead of being bound to `NULL` or dropped.
- `sqlitekit.query`: read the single value of a query that must produce
  exactly one row.
- `sqlitekit.savepoint`: savepoints and transactions as context managers
  that release or commit on success and roll back when an exception is
  raised.
- `sqlitekit.pool`: a fixed-size, thread-safe connection pool with an
  optional per-connection preparation hook.
- `sqlitekit.migration`: apply a list of SQL scripts once each, recording
  progress in `PRAGMA user_version`, optionally behind a pool that hands
  out connections only after migrating.
- `sqlitekit.rand_id`: insert a row under a random integer identifier,
  retrying on a primary-key collision.

The package needs Python 3.11 or later and has no third-party
dependencies.

Connections given to these functions should be opened with
`isolation_level=None`, so that transactions are controlled only by the
statements that are run. Connections from `Pool` are opened that way.

## Executing statements

```python
import sqlite3
from sqlitekit.execute import execute, execute_script

conn = sqlite3.connect(":memory:", isolation_level=None)
execute(conn, "CREATE TABLE t (a, b, c, d);")
execute(conn, "INSERT INTO t (a, b, c, d) VALUES (?, ?, ?, ?);",
        args=["a1", 1, 42, 1])

rows = []
execute(conn, "SELECT a, b FROM t WHERE c = ? AND d = ?;",
        args=[42, 1], result_func=rows.append)
print(rows)  # [('a1', 1)]

execute_script(conn, """
    INSERT INTO t (a, b) VALUES ('a2', :b2);
    INSERT INTO t (a, b) VALUES ('a3', :b3);
""", named={":b2": 2, ":b3": 3})
```

Positional arguments bind to `?1`, `?2` and so on. Named arguments are
keyed by the parameter as written, prefix included (`":name"`, `"@name"`,
`"$name"`). Integers, floats, strings, bytes, booleans and `None` bind as
themselves; anything else binds as its `str()`.

`execute` and `execute_transient` run a single statement; text after it
other than whitespace and comments is an error. `execute_script` runs
several statements inside a savepoint, so any error rolls the whole
script back. `execute_fs`, `execute_transient_fs` and `execute_script_fs`
read the SQL from a file, given a directory and a slash-separated
relative file name.

Argument problems (too many positional arguments, a parameter left
without a value, a named argument no parameter uses) raise `ExecError`,
whose `code` is a `ResultCode` such as `ResultCode.RANGE` or
`ResultCode.ERROR`. Errors from SQLite itself are raised as the usual
`sqlite3` exceptions. `parameter_names` and `split_statement` are
available for inspecting SQL text.

## Single-row results

```python
from sqlitekit.query import result_int, NoResultsError, MultipleResultsError

count = result_int(conn.execute("SELECT count(*) FROM t;"))
```

`result_bool`, `result_text`, `result_float` and `result_bytes` work the
same way. Each closes the cursor it is given. `NoResultsError` is raised
when there is no row and `MultipleResultsError` when there is more than
one.

## Savepoints and transactions

```python
from sqlitekit.savepoint import save, transaction

with save(conn, "work"):
    execute(conn, "INSERT INTO t (a) VALUES ('x');")
    # an exception here rolls back to the savepoint and propagates

with transaction(conn):
    execute(conn, "INSERT INTO t (a) VALUES ('y');")
```

`save` without a name uses a default name; savepoint names may be reused,
so nesting is safe. `immediate_transaction` and `exclusive_transaction`
begin `IMMEDIATE` and `EXCLUSIVE` transactions. If the connection has
already left its transaction when the block ends, nothing is done.

## Connection pools

```python
from sqlitekit.pool import Pool

with Pool("app.db", pool_size=4) as pool:
    with pool.connection() as conn:
        execute(conn, "CREATE TABLE IF NOT EXISTS kv (k PRIMARY KEY, v);")
```

`Pool.take` and `Pool.put` hand out and return connections explicitly;
`take` accepts a timeout in seconds and raises `TimeoutError` when it
runs out, or `PoolClosedError` once the pool is closed. `Pool.get` returns
`None` instead of raising. Without flags, connections are opened
read-write, created if missing, in WAL mode, with URI names accepted (see
`OpenFlags`); the default size is 10. A pool of more than one connection
refuses a private in-memory database with `ValueError`; use a
shared-cache URI such as `file::memory:?mode=memory&cache=shared`.

## Migrations

```python
from sqlitekit.migration import MigrationPool, Options, Schema

schema = Schema(
    migrations=[
        "CREATE TABLE foo (id INTEGER NOT NULL PRIMARY KEY);",
        "ALTER TABLE foo ADD COLUMN name TEXT;",
    ],
    repeatable_migration=(
        "DROP VIEW IF EXISTS bar;\n"
        "CREATE VIEW bar (id, name) AS SELECT id, name FROM foo;\n"
    ),
)

pool = MigrationPool("app.db", schema, Options())
conn = pool.get()          # waits until the migrations have run
try:
    ...
finally:
    pool.put(conn)
    pool.close()
```

Each migration runs in its own transaction; a failing one is rolled back
entirely. `Schema.app_id` is stored as the database's `application_id`,
and a database carrying a different one is refused.
`MigrationOptions(disable_foreign_keys=True)` turns foreign keys off
around a single migration. `Options` carries the pool's flags and size,
the `prepare_conn` hook, and the `on_start_migrate`, `on_ready` and
`on_error` callbacks.

`migrate(conn, schema)` applies the same migrations to a single
connection. `MigrationPool.check_health` raises `RuntimeError` while
migration is still running, after it has failed, and once the pool is
closed; `MigrationPool.get` raises `sqlite3.DatabaseError` if opening or
migrating failed.

## Random IDs

```python
from sqlitekit.rand_id import insert_rand_id

new_id = insert_rand_id(conn, "INSERT INTO kv (k, v) VALUES ($k, $v);",
                        "$k", 1000, 10000, named={"$v": "value"})
```

The identifier is drawn from `[low, high)`; a primary-key collision is
retried with a fresh value up to 100 times.

## What it does not do

The package is a library only: it has no command-line tool. It does not
define SQL functions or virtual tables, and it does not open connections
by itself outside `Pool` and `MigrationPool`.