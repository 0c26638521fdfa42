"""Object-oriented access to the SQLite C library.

A :class:`Connection` owns one ``sqlite3*`` handle and creates
:class:`Statement` objects, each owning one ``sqlite3_stmt*``. Both release
their handle on :meth:`close` and when leaving a ``with`` block::

    with sqlitedb.open(":memory:") as db:
        db.execute("CREATE TABLE t(a INTEGER, b TEXT)")
        db.execute("INSERT INTO t VALUES (?, ?)", 42, "hello")
        with db.query("SELECT a, b FROM t") as stmt:
            while stmt.is_open():
                print(stmt.get_value(0, int), stmt.get_value(1, str))
                stmt.step()

Statements must not outlive the connection that created them.
"""
from .native import (
    load_library, library_version, error_string, SQLITE_TRANSIENT,
    SQLITE_OK, SQLITE_ERROR, SQLITE_MISMATCH, SQLITE_MISUSE, SQLITE_RANGE,
    SQLITE_ROW, SQLITE_DONE,
    SQLITE_INTEGER, SQLITE_FLOAT, SQLITE_TEXT, SQLITE_BLOB, SQLITE_NULL,
    SQLITE_OPEN_READONLY, SQLITE_OPEN_READWRITE, SQLITE_OPEN_CREATE, SQLITE_OPEN_URI,
)
import ctypes
import dataclasses
import enum
import logging
import os
from typing import Any

log = logging.getLogger(__name__)

_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class DbError(Exception):
    """Raised whenever the engine reports a failure or the API is misused.

    ``code`` is the engine result code (``SQLITE_*``). Misuse detected by this
    layer uses SQLITE_MISUSE (no row ready, closed handle), SQLITE_RANGE
    (column index) or SQLITE_MISMATCH (unsupported value).
    """

    def __init__(self, message, code=SQLITE_ERROR):
        super().__init__(message)
        self.message = message
        self.code = code


def _errmsg(db, code):
    lib = load_library()
    msg = lib.sqlite3_errmsg(db) if db else None
    # Native messages should be UTF-8, but don't crash if not.
    return msg.decode("utf-8", errors="replace") if msg else error_string(code)


def _raise_error(db, code):
    raise DbError(_errmsg(db, code), code)


class Kind(enum.Enum):
    INTEGER = SQLITE_INTEGER
    FLOAT = SQLITE_FLOAT
    TEXT = SQLITE_TEXT
    BLOB = SQLITE_BLOB
    NULL = SQLITE_NULL


@dataclasses.dataclass(frozen=True)
class Value:
    """A parameter value tagged with the storage class it binds as."""

    kind: Kind
    data: Any = None

    @classmethod
    def integer(cls, value):
        value = int(value)
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise DbError(f"Integer {value} does not fit in 64 bits", SQLITE_MISMATCH)
        return cls(Kind.INTEGER, value)

    @classmethod
    def real(cls, value):
        return cls(Kind.FLOAT, float(value))

    @classmethod
    def text(cls, value):
        if not isinstance(value, str):
            raise DbError(f"Expected str for TEXT, got {type(value).__name__}", SQLITE_MISMATCH)
        return cls(Kind.TEXT, value)

    @classmethod
    def blob(cls, value):
        return cls(Kind.BLOB, bytes(value))

    @classmethod
    def null(cls):
        return cls(Kind.NULL)

    @classmethod
    def of(cls, obj):
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return cls.null()
        # bool is an int subclass; it binds as 0/1.
        if isinstance(obj, int):
            return cls.integer(obj)
        if isinstance(obj, float):
            return cls.real(obj)
        if isinstance(obj, str):
            return cls.text(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls.blob(obj)
        raise DbError(f"Type '{type(obj).__name__}' is not supported", SQLITE_MISMATCH)


class State(enum.Enum):
    CLOSED = 0
    PREPARED = 1
    OPEN = 2


class Statement:
    """One prepared SQL statement with its own cursor state.

    Created by :meth:`Connection.prepare`, :meth:`Connection.query` and
    :meth:`Connection.execute`; never instantiate it directly.
    """

    def __init__(self, connection, handle):
        self._lib = load_library()
        self._stmt = handle
        # Non-owning; only used for error text.
        self._connection = connection
        self._state = State.PREPARED
        self._col_count = self._lib.sqlite3_column_count(handle)
        self._extractors = {
            int: self.get_int64,
            ctypes.c_int64: self.get_int64,
            ctypes.c_int32: self.get_int32,
            float: self.get_double,
            ctypes.c_double: self.get_double,
            str: self.get_text,
            bytes: self.get_blob,
        }

    @property
    def state(self):
        return self._state

    @property
    def column_count(self):
        return self._col_count

    @property
    def parameter_count(self):
        self._check_not_closed()
        return self._lib.sqlite3_bind_parameter_count(self._stmt)

    @property
    def sql(self):
        if self._state is State.CLOSED:
            return ""
        text = self._lib.sqlite3_sql(self._stmt)
        return text.decode("utf-8") if text else ""

    def parameter_name(self, position):
        """Return the placeholder text at ``position`` (e.g. ``":id"``), or None if anonymous."""
        self._check_not_closed()
        name = self._lib.sqlite3_bind_parameter_name(self._stmt, position)
        return name.decode("utf-8") if name else None

    def bind(self, position, value):
        """Bind ``value`` at the 1-based ``position``.

        ``value`` is a :class:`Value`; other objects go through
        :meth:`Value.of`. Binding while a row is ready rewinds the statement
        first, since the engine refuses bindings on a running statement.
        """
        self._check_not_closed()
        value = Value.of(value)
        if self._state is State.OPEN:
            self.reset()

        lib = self._lib
        kind = value.kind
        if kind is Kind.NULL:
            res = lib.sqlite3_bind_null(self._stmt, position)
        elif kind is Kind.INTEGER:
            if _INT32_MIN <= value.data <= _INT32_MAX:
                res = lib.sqlite3_bind_int(self._stmt, position, value.data)
            else:
                res = lib.sqlite3_bind_int64(self._stmt, position, value.data)
        elif kind is Kind.FLOAT:
            res = lib.sqlite3_bind_double(self._stmt, position, value.data)
        elif kind is Kind.TEXT:
            b = value.data.encode("utf-8")
            res = lib.sqlite3_bind_text(self._stmt, position, b, len(b), SQLITE_TRANSIENT)
        else:
            b = value.data
            res = lib.sqlite3_bind_blob(self._stmt, position, b, len(b), SQLITE_TRANSIENT)
        self._check(res)

    def bind_all(self, *params):
        for index, param in enumerate(params):
            self.bind(index + 1, param)

    def bind_name(self, name, value):
        self.bind(self._name_to_position(name), value)

    def clear_bindings(self):
        self._check_not_closed()
        self._check(self._lib.sqlite3_clear_bindings(self._stmt))

    def step(self, *params):
        """Advance to the next row.

        Returns True when a row is ready. Returns False once the result set is
        exhausted; the statement is then rewound and can run again.
        """
        self._check_not_closed()
        if params:
            self.bind_all(*params)
        res = self._lib.sqlite3_step(self._stmt)
        if res == SQLITE_ROW:
            self._state = State.OPEN
            return True
        if res == SQLITE_DONE:
            self.reset()
            return False
        msg = _errmsg(self._connection.raw_handle(), res)
        self.reset()
        raise DbError(msg, res)

    def reset(self):
        self._check_not_closed()
        # The return value repeats the last step() error, which was already raised.
        self._lib.sqlite3_reset(self._stmt)
        self._state = State.PREPARED

    def is_open(self):
        return self._state is State.OPEN

    def is_null(self, col):
        self._check_value_request(col)
        return self._lib.sqlite3_column_type(self._stmt, col) == SQLITE_NULL

    def column_type(self, col):
        self._check_value_request(col)
        return Kind(self._lib.sqlite3_column_type(self._stmt, col))

    def column_names(self):
        self._check_not_closed()
        names = []
        for i in range(self._col_count):
            name = self._lib.sqlite3_column_name(self._stmt, i)
            names.append(name.decode("utf-8") if name else "")
        return names

    def get_int32(self, col):
        self._check_value_request(col)
        return self._lib.sqlite3_column_int(self._stmt, col)

    def get_int64(self, col):
        self._check_value_request(col)
        return self._lib.sqlite3_column_int64(self._stmt, col)

    def get_double(self, col):
        self._check_value_request(col)
        return self._lib.sqlite3_column_double(self._stmt, col)

    def get_text(self, col):
        """Read ``col`` as text. Bytes that are not valid UTF-8 raise SQLITE_MISMATCH."""
        self._check_value_request(col)
        ptr = self._lib.sqlite3_column_text(self._stmt, col)
        if not ptr:
            return ""
        length = self._lib.sqlite3_column_bytes(self._stmt, col)
        raw = ctypes.string_at(ptr, length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DbError(f"Column {col} is not valid UTF-8 text: {e.reason}", SQLITE_MISMATCH) from e

    def get_blob(self, col):
        self._check_value_request(col)
        ptr = self._lib.sqlite3_column_blob(self._stmt, col)
        if not ptr:
            return b""
        length = self._lib.sqlite3_column_bytes(self._stmt, col)
        return ctypes.string_at(ptr, length)

    def get_value(self, col, type_=None):
        """Read column ``col`` of the current row.

        ``type_`` selects the conversion (``int``, ``ctypes.c_int32``,
        ``float``, ``str``, ``bytes``); the engine's own coercion rules apply
        when it differs from the stored type. Without ``type_`` the value is
        returned in its storage class, NULL as None.
        """
        if type_ is None:
            kind = self.column_type(col)
            if kind is Kind.NULL:
                return None
            if kind is Kind.INTEGER:
                return self.get_int64(col)
            if kind is Kind.FLOAT:
                return self.get_double(col)
            if kind is Kind.TEXT:
                return self.get_text(col)
            return self.get_blob(col)
        extractor = self._extractors.get(type_)
        if extractor is None:
            raise DbError(f"Cannot read a column as {type_!r}", SQLITE_MISUSE)
        return extractor(col)

    def get_row(self, *types):
        if not types:
            return tuple(self.get_value(i) for i in range(self._col_count))
        return tuple(self.get_value(i, t) for i, t in enumerate(types))

    def close(self):
        """Finalize the statement, freeing all engine structures."""
        if self._stmt:
            # Finalize repeats the last step() error; nothing to report on close.
            self._lib.sqlite3_finalize(self._stmt)
            self._stmt = None
            self._connection = None
            self._col_count = 0
        self._state = State.CLOSED

    def __iter__(self):
        if not self.is_open() and not self.step():
            return
        while True:
            yield self.get_row()
            if not self.step():
                return

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _name_to_position(self, name):
        self._check_not_closed()
        candidates = [name]
        if name[:1] not in (":", "@", "$", "?"):
            candidates = [":" + name, "@" + name, "$" + name]
        for candidate in candidates:
            pos = self._lib.sqlite3_bind_parameter_index(self._stmt, candidate.encode("utf-8"))
            if pos:
                return pos
        raise DbError(f"Invalid bind parameter {name}", SQLITE_ERROR)

    def _check_value_request(self, col):
        # Reading columns without a row or past the end is undefined behaviour
        # in the engine.
        if col < 0 or col >= self._col_count:
            raise DbError(f"Invalid column index: {col}", SQLITE_RANGE)
        if not self.is_open():
            raise DbError("There is no row ready", SQLITE_MISUSE)

    def _check_not_closed(self):
        if self._state is State.CLOSED:
            raise DbError("Statement is closed", SQLITE_MISUSE)

    def _check(self, res, ok_status=SQLITE_OK):
        if res != ok_status:
            _raise_error(self._connection.raw_handle(), res)


class Connection:
    """An SQLite database connection."""

    def __init__(self, path=None, **kwargs):
        self._lib = load_library()
        self._db = None
        if path is not None:
            self.open(path, **kwargs)

    def open(self, path, *, readonly=False, create=True, uri=False):
        """Open (or create) the database file at ``path``.

        ``":memory:"`` opens a private in-memory database.
        """
        if self._db is not None:
            raise DbError("Database is already open", SQLITE_MISUSE)

        if readonly:
            flags = SQLITE_OPEN_READONLY
        else:
            flags = SQLITE_OPEN_READWRITE
            if create:
                flags |= SQLITE_OPEN_CREATE
        if uri:
            flags |= SQLITE_OPEN_URI

        path = os.fspath(path)
        encoded = path if isinstance(path, bytes) else path.encode("utf-8")
        handle = ctypes.c_void_p()
        res = self._lib.sqlite3_open_v2(encoded, ctypes.byref(handle), flags, None)
        if res != SQLITE_OK:
            msg = _errmsg(handle, res)
            if handle:
                self._lib.sqlite3_close_v2(handle)
            raise DbError(f"Cannot connect to {path!r}: {msg}", res)

        self._db = handle
        log.debug("opened %r (flags=0x%x)", path, flags)

    connect = open

    def is_open(self):
        return self._db is not None

    def prepare(self, sql, *params):
        """Compile ``sql`` and bind ``params`` if given; the caller drives step()."""
        buf, length = self._encode(sql)
        handle, _ = self._compile(buf, 0, length)
        if not handle:
            raise DbError("No SQL statement to prepare", SQLITE_MISUSE)
        statement = Statement(self, handle)
        if params:
            try:
                statement.bind_all(*params)
            except Exception:
                statement.close()
                raise
        return statement

    def query(self, sql, *params):
        """Prepare, bind and run ``sql``, leaving the first row ready.

        Check :meth:`Statement.is_open` to see whether the result set has any rows.
        """
        statement = self.prepare(sql, *params)
        try:
            statement.step()
        except Exception:
            statement.close()
            raise
        return statement

    def execute(self, sql, *params):
        """Run a statement once and return the number of changed rows.

        Statements that declare result columns report 0 even when they
        modify rows (``INSERT ... RETURNING``); use :meth:`changes` for those.
        """
        with self.prepare(sql, *params) as statement:
            statement.step()
            if statement.column_count == 0:
                return self.changes()
            return 0

    exec = execute

    def executescript(self, sql):
        """Run every statement in ``sql`` to completion, in order."""
        buf, length = self._encode(sql)
        offset = 0
        while offset < length:
            handle, next_offset = self._compile(buf, offset, length)
            if handle:
                with Statement(self, handle) as statement:
                    while statement.step():
                        pass
            if next_offset <= offset:
                break
            offset = next_offset

    def insert_id(self):
        """Return the rowid of the most recent successful INSERT."""
        return self._lib.sqlite3_last_insert_rowid(self._handle())

    def changes(self):
        """Return the number of rows changed by the most recent statement."""
        return self._lib.sqlite3_changes(self._handle())

    def total_changes(self):
        return self._lib.sqlite3_total_changes(self._handle())

    @property
    def in_transaction(self):
        return not self._lib.sqlite3_get_autocommit(self._handle())

    def close(self):
        if self._db is not None:
            # close_v2 defers the release until outstanding statements are finalized.
            self._lib.sqlite3_close_v2(self._db)
            self._db = None
            log.debug("closed database")

    def raw_handle(self):
        """Return the underlying ``sqlite3*`` handle for anything exotic.

        Bypasses every guarantee this class gives; prefer the OO interface.
        """
        return self._db

    def _handle(self):
        if self._db is None:
            raise DbError("Database is not open", SQLITE_MISUSE)
        return self._db

    @staticmethod
    def _encode(sql):
        encoded = sql.encode("utf-8")
        return ctypes.create_string_buffer(encoded), len(encoded)

    def _compile(self, buf, offset, length):
        """Compile the first statement at ``buf[offset:length]``.

        Returns ``(handle, next_offset)``; ``handle`` is None when only
        whitespace or comments remain.
        """
        db = self._handle()
        base = ctypes.addressof(buf)
        stmt = ctypes.c_void_p()
        tail = ctypes.c_void_p()
        res = self._lib.sqlite3_prepare_v2(
            db, base + offset, length - offset, ctypes.byref(stmt), ctypes.byref(tail)
        )
        if res != SQLITE_OK:
            _raise_error(db, res)
        next_offset = tail.value - base if tail.value else length
        if log.isEnabledFor(logging.DEBUG):
            log.debug("prepared %r", ctypes.string_at(base + offset, next_offset - offset))
        return (stmt if stmt.value else None), next_offset

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def open(path, **kwargs):
    """Open the database at ``path`` and return a :class:`Connection`."""
    return Connection(path, **kwargs)


__all__ = [
    "Connection", "DbError", "Kind", "State", "Statement", "Value",
    "library_version", "open",
]
