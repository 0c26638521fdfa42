import ctypes

import pytest
import sqlitedb
from sqlitedb import DbError, Kind, State, Value
from sqlitedb.native import SQLITE_CONSTRAINT, SQLITE_ERROR, SQLITE_MISMATCH, SQLITE_MISUSE, SQLITE_RANGE


@pytest.fixture
def db():
    conn = sqlitedb.open(":memory:")
    conn.execute("CREATE TABLE t (a INTEGER, b TEXT)")
    for i, name in enumerate(["one", "two", "three"], start=1):
        conn.execute("INSERT INTO t VALUES (?, ?)", i, name)
    yield conn
    conn.close()


def test_prepare_does_not_step(db):
    stmt = db.prepare("SELECT a FROM t")
    assert stmt.state is State.PREPARED
    assert not stmt.is_open()
    assert stmt.column_count == 1
    stmt.close()


def test_step_until_exhausted_then_reexecutable(db):
    with db.prepare("SELECT a FROM t ORDER BY a") as stmt:
        seen = []
        while stmt.step():
            assert stmt.state is State.OPEN
            seen.append(stmt.get_value(0, int))
        assert seen == [1, 2, 3]
        assert stmt.state is State.PREPARED

        # Cursor was rewound; the statement runs again from the start.
        assert stmt.step() is True
        assert stmt.get_value(0, int) == 1


def test_step_with_params_rebinds(db):
    with db.prepare("SELECT b FROM t WHERE a = ?") as stmt:
        assert stmt.step(2) is True
        assert stmt.get_value(0, str) == "two"
        # Rebinding while a row is ready rewinds first.
        assert stmt.step(3) is True
        assert stmt.get_value(0, str) == "three"
        assert stmt.step() is False
        assert stmt.step(99) is False


def test_null_scenario():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT ? AS x") as stmt:
            stmt.bind(1, Value.null())
            assert stmt.step() is True
            assert stmt.is_null(0) is True


@pytest.mark.parametrize("value, type_", [
    (7, int),
    (2 ** 40, int),
    (-(2 ** 63), int),
    (2 ** 63 - 1, ctypes.c_int64),
    (123, ctypes.c_int32),
    (3.25, float),
    (-0.5, ctypes.c_double),
    ("hello", str),
    ("ünïcödé ✓", str),
    (b"\x00\x01\xff", bytes),
])
def test_select_round_trip(value, type_):
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT ?", value) as stmt:
            assert stmt.is_open()
            assert not stmt.is_null(0)
            assert stmt.get_value(0, type_) == value


def test_round_trip_null_reads():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT ?", None) as stmt:
            assert stmt.is_null(0)
            assert stmt.get_value(0) is None
            # Engine conversions for NULL
            assert stmt.get_value(0, int) == 0
            assert stmt.get_value(0, float) == 0.0
            assert stmt.get_value(0, str) == ""
            assert stmt.get_value(0, bytes) == b""


def test_engine_coercions():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT '123', 'abc', 4.75, 10") as stmt:
            assert stmt.get_value(0, int) == 123
            assert stmt.get_value(1, int) == 0
            assert stmt.get_value(2, int) == 4
            assert stmt.get_value(3, str) == "10"
            assert stmt.get_value(3, float) == 10.0


def test_invalid_utf8_text_is_a_mismatch():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT CAST(x'ff' AS TEXT), CAST(x'ff' AS TEXT)") as stmt:
            with pytest.raises(DbError) as excinfo:
                stmt.get_text(0)
            assert excinfo.value.code == SQLITE_MISMATCH
            # The raw bytes are still reachable as a blob
            assert stmt.get_value(1, bytes) == b"\xff"


def test_get_value_storage_classes():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT 1, 2.5, 'x', x'0102', NULL") as stmt:
            assert stmt.get_row() == (1, 2.5, "x", b"\x01\x02", None)
            assert [stmt.column_type(i) for i in range(5)] == [
                Kind.INTEGER, Kind.FLOAT, Kind.TEXT, Kind.BLOB, Kind.NULL,
            ]


def test_get_row_with_types(db):
    with db.query("SELECT a, b, a FROM t WHERE a = 2") as stmt:
        assert stmt.get_row(int, str) == (2, "two")
        assert stmt.get_row(str, str, float) == ("2", "two", 2.0)


def test_get_row_too_many_types(db):
    with db.query("SELECT a FROM t") as stmt:
        with pytest.raises(DbError) as excinfo:
            stmt.get_row(int, str)
        assert excinfo.value.code == SQLITE_RANGE


def test_unsupported_read_type(db):
    with db.query("SELECT a FROM t") as stmt:
        with pytest.raises(DbError) as excinfo:
            stmt.get_value(0, list)
        assert excinfo.value.code == SQLITE_MISUSE


def test_reads_without_row_fail(db):
    with db.prepare("SELECT a, b FROM t") as stmt:
        for call in (stmt.is_null, stmt.get_value, stmt.get_int64, stmt.get_text):
            with pytest.raises(DbError) as excinfo:
                call(0)
            assert excinfo.value.code == SQLITE_MISUSE

        while stmt.step():
            pass
        with pytest.raises(DbError):
            stmt.get_value(0, int)


def test_reads_past_last_column_fail(db):
    with db.query("SELECT a, b FROM t") as stmt:
        assert stmt.is_open()
        for col in (2, 100, -1):
            with pytest.raises(DbError) as excinfo:
                stmt.is_null(col)
            assert excinfo.value.code == SQLITE_RANGE
            with pytest.raises(DbError):
                stmt.get_value(col, int)


def test_column_check_comes_before_row_check(db):
    with db.prepare("SELECT a FROM t") as stmt:
        with pytest.raises(DbError) as excinfo:
            stmt.get_value(5, int)
        assert excinfo.value.code == SQLITE_RANGE


def test_bind_position_out_of_range():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT ?") as stmt:
            with pytest.raises(DbError) as excinfo:
                stmt.bind(2, 1)
            assert excinfo.value.code == SQLITE_RANGE
            with pytest.raises(DbError):
                stmt.bind(0, 1)


def test_bind_unsupported_value():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT ?") as stmt:
            with pytest.raises(DbError) as excinfo:
                stmt.bind(1, object())
            assert excinfo.value.code == SQLITE_MISMATCH
            with pytest.raises(DbError):
                stmt.bind(1, 2 ** 64)


def test_prepare_with_bad_params_closes_nothing_leaks():
    with sqlitedb.open(":memory:") as db:
        with pytest.raises(DbError):
            db.prepare("SELECT ?", 1, 2)
        with pytest.raises(DbError):
            db.query("SELECT ?", 1, 2)


def test_bind_by_name():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT :x, @y, $z") as stmt:
            assert stmt.parameter_count == 3
            assert stmt.parameter_name(1) == ":x"
            stmt.bind_name(":x", 1)
            stmt.bind_name("y", "two")
            stmt.bind_name("$z", Value.real(3.0))
            assert stmt.step()
            assert stmt.get_row() == (1, "two", 3.0)


def test_bind_unknown_name_is_an_error():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT :x") as stmt:
            with pytest.raises(DbError) as excinfo:
                stmt.bind_name("nope", 1)
            assert excinfo.value.code == SQLITE_ERROR
            assert "nope" in excinfo.value.message


def test_anonymous_parameter_has_no_name():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT ?") as stmt:
            assert stmt.parameter_name(1) is None


def test_clear_bindings():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT ?") as stmt:
            stmt.bind(1, "set")
            stmt.clear_bindings()
            assert stmt.step()
            assert stmt.is_null(0)


def test_value_constructors():
    assert Value.of(None) == Value.null()
    assert Value.of(True) == Value(Kind.INTEGER, 1)
    assert Value.of(5) == Value.integer(5)
    assert Value.of(1.5) == Value.real(1.5)
    assert Value.of("s") == Value.text("s")
    assert Value.of(bytearray(b"ab")) == Value.blob(b"ab")
    v = Value.text("same")
    assert Value.of(v) is v
    with pytest.raises(DbError):
        Value.text(5)
    with pytest.raises(DbError):
        Value.integer(-(2 ** 63) - 1)


def test_bool_binds_as_integer():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT ?, ?", True, False) as stmt:
            assert stmt.get_row() == (1, 0)


def test_empty_text_and_blob():
    with sqlitedb.open(":memory:") as db:
        with db.query("SELECT ?, ?, typeof(?)", "", b"", b"") as stmt:
            assert stmt.get_value(0, str) == ""
            assert stmt.get_value(1, bytes) == b""
            assert stmt.get_value(2, str) == "blob"


def test_step_error_then_reexecutable():
    with sqlitedb.open(":memory:") as db:
        db.execute("CREATE TABLE u (x INTEGER UNIQUE)")
        with db.prepare("INSERT INTO u VALUES (?)") as stmt:
            assert stmt.step(1) is False
            with pytest.raises(DbError) as excinfo:
                stmt.step(1)
            assert excinfo.value.code & 0xFF == SQLITE_CONSTRAINT
            assert "UNIQUE" in excinfo.value.message
            assert stmt.state is State.PREPARED
            assert stmt.step(2) is False
        with db.query("SELECT count(*) FROM u") as stmt:
            assert stmt.get_value(0, int) == 2


def test_iteration_from_prepared(db):
    with db.prepare("SELECT a, b FROM t ORDER BY a") as stmt:
        assert list(stmt) == [(1, "one"), (2, "two"), (3, "three")]
        assert stmt.state is State.PREPARED
        assert [row[0] for row in stmt] == [1, 2, 3]


def test_column_names():
    with sqlitedb.open(":memory:") as db:
        with db.prepare("SELECT 1 AS a, 2 AS b") as stmt:
            assert stmt.column_names() == ["a", "b"]


def test_sql_text(db):
    stmt = db.prepare("SELECT a FROM t")
    assert stmt.sql == "SELECT a FROM t"
    stmt.close()
    assert stmt.sql == ""


def test_close_is_idempotent(db):
    stmt = db.query("SELECT a FROM t")
    stmt.close()
    stmt.close()
    assert stmt.state is State.CLOSED
    assert stmt.column_count == 0
    assert not stmt.is_open()


def test_closed_statement_is_misuse(db):
    stmt = db.prepare("SELECT a FROM t")
    stmt.close()
    for call in (stmt.step, stmt.reset, lambda: stmt.bind(1, 1)):
        with pytest.raises(DbError) as excinfo:
            call()
        assert excinfo.value.code == SQLITE_MISUSE


def test_statements_share_a_connection(db):
    with db.prepare("SELECT a FROM t ORDER BY a") as outer, db.prepare("SELECT b FROM t WHERE a = ?") as inner:
        names = []
        while outer.step():
            assert inner.step(outer.get_value(0, int))
            names.append(inner.get_value(0, str))
        assert names == ["one", "two", "three"]


def test_statement_outlives_connection_close():
    db = sqlitedb.open(":memory:")
    stmt = db.query("SELECT 1")
    # close_v2 keeps the engine alive until the statement is finalized.
    db.close()
    assert stmt.get_value(0, int) == 1
    stmt.close()
