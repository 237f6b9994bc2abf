import sqlite3
import threading

import pytest

from sqlitekit.execute import execute
from sqlitekit.migration import (
    MigrationOptions,
    MigrationPool,
    Options,
    Schema,
    migrate,
)
from sqlitekit.pool import OpenFlags, PoolClosedError
from sqlitekit.query import result_bool

APP_ID = 0xEDBEEF
FLAGS = OpenFlags.READWRITE | OpenFlags.CREATE
TIMEOUT = 30


class Recorder:
    def __init__(self):
        self.migration_started = 0
        self.ready = 0

    def on_start(self):
        self.migration_started += 1

    def on_ready(self):
        self.ready += 1


def connect(path):
    return sqlite3.connect(str(path), isolation_level=None, timeout=TIMEOUT)


def ids(conn):
    return [row[0] for row in conn.execute("select id from foo order by id;")]


def run_once(path, schema, **kwargs):
    pool = MigrationPool(str(path), schema, Options(flags=FLAGS, **kwargs))
    try:
        conn = pool.get(TIMEOUT)
        pool.put(conn)
    finally:
        pool.close()


def the_answer(conn):
    conn.create_function("theAnswer", 0, lambda: 42, deterministic=True)


def foreign_keys_on(conn):
    conn.execute("PRAGMA foreign_keys = on;").close()


FK_MIGRATION = (
    "create table foo ( foreign_keys_enabled bool ); "
    "insert into foo values ((select * from pragma_foreign_keys()));"
)


def test_no_migrations(tmp_path):
    rec = Recorder()
    pool = MigrationPool(
        str(tmp_path / "no-migrations.db"),
        Schema(app_id=APP_ID),
        Options(flags=FLAGS, on_start_migrate=rec.on_start, on_ready=rec.on_ready),
    )
    conn = pool.get(TIMEOUT)
    assert rec.migration_started == 1
    assert rec.ready == 1
    assert pool.check_health() is None
    assert conn.execute("PRAGMA application_id;").fetchone()[0] == APP_ID
    pool.put(conn)
    pool.close()
    with pytest.raises(RuntimeError, match="closed"):
        pool.check_health()


def test_does_not_migrate_different_database(tmp_path):
    path = tmp_path / "another.db"
    with connect(path) as conn:
        conn.execute("create table foo ( id integer primary key not null );")
    conn.close()

    rec = Recorder()
    pool = MigrationPool(
        str(path),
        Schema(app_id=APP_ID),
        Options(flags=FLAGS, on_start_migrate=rec.on_start, on_ready=rec.on_ready),
    )
    try:
        with pytest.raises(sqlite3.DatabaseError, match="application_id"):
            pool.get(TIMEOUT)
        assert rec.migration_started == 0
        assert rec.ready == 0
        with pytest.raises(RuntimeError):
            pool.check_health()
    finally:
        pool.close()

    conn = connect(path)
    try:
        assert conn.execute("PRAGMA application_id;").fetchone()[0] == 0
    finally:
        conn.close()


def test_zero_app_id(tmp_path):
    path = tmp_path / "zeroid.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(path, Schema(app_id=0, migrations=[create]))
    pool = MigrationPool(
        str(path),
        Schema(app_id=0, migrations=[create, "insert into foo values (42);"]),
        Options(flags=FLAGS),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert ids(conn) == [42]
        pool.put(conn)
    finally:
        pool.close()


def test_one_migration(tmp_path):
    rec = Recorder()
    schema = Schema(
        app_id=APP_ID,
        migrations=["create table foo ( id integer primary key not null );"],
    )
    pool = MigrationPool(
        str(tmp_path / "one-migration.db"),
        schema,
        Options(flags=FLAGS, on_start_migrate=rec.on_start, on_ready=rec.on_ready),
    )
    conn = pool.get(TIMEOUT)
    try:
        assert rec.migration_started == 1
        assert rec.ready == 1
        assert pool.check_health() is None
        conn.execute("insert into foo values (42);")
        assert ids(conn) == [42]
    finally:
        pool.put(conn)
        pool.close()
    with pytest.raises(RuntimeError):
        pool.check_health()


def test_two_migrations(tmp_path):
    rec = Recorder()
    schema = Schema(
        app_id=APP_ID,
        migrations=[
            "create table foo ( id integer primary key not null );",
            "insert into foo values (42);",
        ],
    )
    pool = MigrationPool(
        str(tmp_path / "two-migrations.db"),
        schema,
        Options(flags=FLAGS, on_start_migrate=rec.on_start, on_ready=rec.on_ready),
    )
    conn = pool.get(TIMEOUT)
    try:
        assert rec.migration_started == 1
        assert rec.ready == 1
        assert ids(conn) == [42]
        assert conn.execute("PRAGMA user_version;").fetchone()[0] == 2
    finally:
        pool.put(conn)
        pool.close()


def test_partial_migration(tmp_path):
    path = tmp_path / "partial-migration.db"
    rec = Recorder()
    errors = []
    schema = Schema(
        app_id=APP_ID,
        migrations=[
            "create table foo ( id integer primary key not null ); insert into foo values (1);",
            "insert into foo values (42); insert into bar values (57);",
        ],
    )
    pool = MigrationPool(
        str(path),
        schema,
        Options(
            flags=FLAGS,
            on_start_migrate=rec.on_start,
            on_ready=rec.on_ready,
            on_error=errors.append,
        ),
    )
    try:
        with pytest.raises(sqlite3.DatabaseError, match="no such table"):
            pool.get(TIMEOUT)
        assert rec.migration_started == 1
        assert rec.ready == 0
        assert len(errors) == 1
        with pytest.raises(RuntimeError):
            pool.check_health()
    finally:
        pool.close()

    conn = connect(path)
    try:
        assert ids(conn) == [1]
        assert conn.execute("PRAGMA user_version;").fetchone()[0] == 1
    finally:
        conn.close()


def test_migrations_dont_repeat(tmp_path):
    path = tmp_path / "migrations-dont-repeat.db"
    schema = Schema(
        app_id=APP_ID,
        migrations=["create table foo ( id integer primary key not null );"],
    )
    for value in (42, 56):
        pool = MigrationPool(str(path), schema, Options(flags=FLAGS))
        try:
            conn = pool.get(TIMEOUT)
            conn.execute(f"insert into foo values ({value});")
            pool.put(conn)
        finally:
            pool.close()
    conn = connect(path)
    try:
        assert ids(conn) == [42, 56]
    finally:
        conn.close()


def test_incremental_migration(tmp_path):
    path = tmp_path / "incremental-migration.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(path, Schema(app_id=APP_ID, migrations=[create]))
    pool = MigrationPool(
        str(path),
        Schema(app_id=APP_ID, migrations=[create, "insert into foo values (42);"]),
        Options(flags=FLAGS),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert ids(conn) == [42]
        pool.put(conn)
    finally:
        pool.close()


@pytest.mark.parametrize(
    "second, expected",
    [("insert into foo values (42);", [42, 333]), ("", [333])],
)
def test_repeatable_incremental_migration(tmp_path, second, expected):
    path = tmp_path / "repeatable-incremental.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(path, Schema(app_id=APP_ID, migrations=[create]))
    pool = MigrationPool(
        str(path),
        Schema(
            app_id=APP_ID,
            migrations=[create, second],
            repeatable_migration="insert into foo values (333);",
        ),
        Options(flags=FLAGS),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert ids(conn) == expected
        pool.put(conn)
    finally:
        pool.close()


def test_repeatable_incremental_migration_failure(tmp_path):
    path = tmp_path / "repeatable-fail.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(path, Schema(app_id=APP_ID, migrations=[create]))
    pool = MigrationPool(
        str(path),
        Schema(
            app_id=APP_ID,
            migrations=[create, "insert into foo values (42);"],
            repeatable_migration="insert into bar values (333);",
        ),
        Options(flags=FLAGS),
    )
    try:
        with pytest.raises(sqlite3.DatabaseError, match="no such table"):
            pool.get(TIMEOUT)
    finally:
        pool.close()
    conn = connect(path)
    try:
        assert ids(conn) == []
        assert conn.execute("PRAGMA user_version;").fetchone()[0] == 1
    finally:
        conn.close()


def test_repeatable_same_version(tmp_path):
    path = tmp_path / "repeatable-sameversion.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(path, Schema(app_id=APP_ID, migrations=[create]))
    pool = MigrationPool(
        str(path),
        Schema(
            app_id=APP_ID,
            migrations=[create],
            repeatable_migration="insert into foo values (333);",
        ),
        Options(flags=FLAGS),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert ids(conn) == []
        pool.put(conn)
    finally:
        pool.close()


def test_future_version(tmp_path):
    path = tmp_path / "future-version.db"
    create = "create table foo ( id integer primary key not null );"
    run_once(
        path,
        Schema(app_id=APP_ID, migrations=[create, "insert into foo values (42);"]),
    )
    pool = MigrationPool(
        str(path), Schema(app_id=APP_ID, migrations=[create]), Options(flags=FLAGS)
    )
    try:
        conn = pool.get(TIMEOUT)
        assert ids(conn) == [42]
        assert conn.execute("PRAGMA user_version;").fetchone()[0] == 2
        pool.put(conn)
    finally:
        pool.close()


def test_custom_function_in_migration(tmp_path):
    schema = Schema(
        app_id=APP_ID,
        migrations=[
            "create table foo ( id integer primary key not null );\n"
            "insert into foo (id) values (theAnswer());"
        ],
    )
    pool = MigrationPool(
        str(tmp_path / "custom-schema-function.db"),
        schema,
        Options(flags=FLAGS, prepare_conn=the_answer),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert conn.execute("select id from foo limit 1;").fetchone()[0] == 42
        pool.put(conn)
    finally:
        pool.close()


def test_custom_function_in_get(tmp_path):
    pool = MigrationPool(
        str(tmp_path / "custom-get-function.db"),
        Schema(app_id=APP_ID),
        Options(flags=FLAGS, prepare_conn=the_answer),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert conn.execute("select theAnswer();").fetchone()[0] == 42
        pool.put(conn)
    finally:
        pool.close()


def test_disable_foreign_keys(tmp_path):
    schema = Schema(
        app_id=APP_ID,
        migrations=[FK_MIGRATION],
        migration_options=[MigrationOptions(disable_foreign_keys=True)],
    )
    pool = MigrationPool(
        str(tmp_path / "disable-foreign-keys.db"),
        schema,
        Options(flags=FLAGS, prepare_conn=foreign_keys_on),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert result_bool(conn.execute("select foreign_keys_enabled from foo;")) is False
        assert result_bool(conn.execute("PRAGMA foreign_keys;")) is True
        pool.put(conn)
    finally:
        pool.close()


def test_no_touch_foreign_keys(tmp_path):
    pool = MigrationPool(
        str(tmp_path / "no-touch-foreign-keys.db"),
        Schema(app_id=APP_ID, migrations=[FK_MIGRATION]),
        Options(flags=FLAGS, prepare_conn=foreign_keys_on),
    )
    try:
        conn = pool.get(TIMEOUT)
        assert result_bool(conn.execute("select foreign_keys_enabled from foo;")) is True
        assert result_bool(conn.execute("PRAGMA foreign_keys;")) is True
        pool.put(conn)
    finally:
        pool.close()


def test_prepare_error_fails_pool(tmp_path):
    def failing(conn):
        raise ValueError("prepare failed")

    errors = []
    pool = MigrationPool(
        str(tmp_path / "prepare-error.db"),
        Schema(app_id=APP_ID),
        Options(flags=FLAGS, prepare_conn=failing, on_error=errors.append),
    )
    try:
        with pytest.raises(sqlite3.DatabaseError, match="prepare failed"):
            pool.get(TIMEOUT)
        assert [type(e) for e in errors] == [ValueError]
        with pytest.raises(RuntimeError, match="prepare failed"):
            pool.check_health()
    finally:
        pool.close()


def test_close_twice(tmp_path):
    pool = MigrationPool(
        str(tmp_path / "close-twice.db"), Schema(app_id=APP_ID), Options(flags=FLAGS)
    )
    pool.close()
    with pytest.raises(PoolClosedError, match="already closed"):
        pool.close()


def test_example_schema_objects(tmp_path):
    schema = Schema(
        migrations=[
            "CREATE TABLE foo ( id INTEGER NOT NULL PRIMARY KEY );",
            "ALTER TABLE foo ADD COLUMN name TEXT;",
        ],
        repeatable_migration=(
            "DROP VIEW IF EXISTS bar;\n"
            "CREATE VIEW bar ( id, name ) AS SELECT id, name FROM foo;\n"
        ),
    )
    pool = MigrationPool(
        str(tmp_path / "foo.db"),
        schema,
        Options(flags=FLAGS, prepare_conn=foreign_keys_on),
    )
    try:
        with pool_connection(pool) as conn:
            rows = conn.execute(
                'SELECT "type", "name" FROM sqlite_master ORDER BY 1, 2;'
            ).fetchall()
        assert rows == [("table", "foo"), ("view", "bar")]
    finally:
        pool.close()


class pool_connection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        self.conn = self.pool.get(TIMEOUT)
        return self.conn

    def __exit__(self, *exc):
        self.pool.put(self.conn)


def test_migrate_no_touch_foreign_keys(tmp_path):
    conn = connect(tmp_path / "no-touch-foreign-keys.db")
    try:
        conn.execute("PRAGMA foreign_keys = on;")
        migrate(conn, Schema(app_id=APP_ID, migrations=[FK_MIGRATION]))
        assert result_bool(conn.execute("select foreign_keys_enabled from foo;")) is True
        assert result_bool(conn.execute("PRAGMA foreign_keys;")) is True
    finally:
        conn.close()


def test_migrate_concurrent(tmp_path):
    path = tmp_path / "concurrent.db"
    schema = Schema(
        app_id=APP_ID,
        migrations=["create table foo ( id integer primary key not null );"],
    )
    errors = []

    def worker():
        conn = connect(path)
        try:
            migrate(conn, schema)
        except Exception as exc:
            errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()

    conn = connect(path)
    try:
        migrate(conn, schema)
        for i in range(150):
            execute(conn, "insert into foo values (?)", args=[i])
        for thread in threads:
            thread.join()
        assert errors == []
        assert conn.execute("select count(*) from foo;").fetchone()[0] == 150
        assert conn.execute("PRAGMA user_version;").fetchone()[0] == 1
    finally:
        for thread in threads:
            thread.join()
        conn.close()