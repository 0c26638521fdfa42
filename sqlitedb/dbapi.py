"""PEP 249 (DB-API 2.0) interface on top of :mod:`sqlitedb`."""
from . import Connection as _Database, DbError
from .native import (
    library_version,
    SQLITE_INTERNAL, SQLITE_NOTFOUND, SQLITE_NOMEM, SQLITE_CORRUPT, SQLITE_NOTADB,
    SQLITE_TOOBIG, SQLITE_MISMATCH, SQLITE_CONSTRAINT, SQLITE_MISUSE, SQLITE_RANGE,
    SQLITE_ERROR, SQLITE_PERM, SQLITE_ABORT, SQLITE_BUSY, SQLITE_LOCKED,
    SQLITE_READONLY, SQLITE_INTERRUPT, SQLITE_IOERR, SQLITE_FULL, SQLITE_CANTOPEN,
    SQLITE_PROTOCOL, SQLITE_EMPTY, SQLITE_SCHEMA, SQLITE_AUTH,
)
import collections
import collections.abc
import datetime
import decimal
import json
import logging
import re
import time
import uuid
import weakref

log = logging.getLogger(__name__)

# DB-API 2.0 Globals
apilevel = "2.0"
threadsafety = 1  # Threads may share the module, but not connections
paramstyle = "qmark"  # qmark (?) with sequences, :name/@name/$name with mappings

sqlite_version = library_version()
sqlite_version_info = tuple(int(p) for p in sqlite_version.split(".")[:3])


# Exceptions
class Warning(Exception):
    pass


class Error(DbError):
    pass


class InterfaceError(Error):
    pass


class DatabaseError(Error):
    pass


class InternalError(DatabaseError):
    pass


class OperationalError(DatabaseError):
    pass


class ProgrammingError(DatabaseError):
    pass


class IntegrityError(DatabaseError):
    pass


class DataError(DatabaseError):
    pass


class NotSupportedError(DatabaseError):
    pass


_OPERATIONAL_CODES = frozenset([
    SQLITE_ERROR, SQLITE_PERM, SQLITE_ABORT, SQLITE_BUSY, SQLITE_LOCKED,
    SQLITE_READONLY, SQLITE_INTERRUPT, SQLITE_IOERR, SQLITE_FULL,
    SQLITE_CANTOPEN, SQLITE_PROTOCOL, SQLITE_EMPTY, SQLITE_SCHEMA, SQLITE_AUTH,
])


def _error_class(code):
    # Extended result codes carry the primary code in the low byte.
    primary = code & 0xFF
    if primary in (SQLITE_INTERNAL, SQLITE_NOTFOUND, SQLITE_NOMEM):
        return InternalError
    if primary in _OPERATIONAL_CODES:
        return OperationalError
    if primary in (SQLITE_CORRUPT, SQLITE_NOTADB):
        return DatabaseError
    if primary in (SQLITE_TOOBIG, SQLITE_MISMATCH):
        return DataError
    if primary == SQLITE_CONSTRAINT:
        return IntegrityError
    if primary in (SQLITE_MISUSE, SQLITE_RANGE):
        return ProgrammingError
    return DatabaseError


def _format_value_for_error(v, *, max_str=200, max_bytes=64):
    if v is None:
        return None
    if isinstance(v, (bool, int, float)):
        return v
    if isinstance(v, (bytes, bytearray, memoryview)):
        b = bytes(v)
        if len(b) <= max_bytes:
            return {"_type": "bytes", "hex": b.hex(), "len": len(b)}
        head = b[:max_bytes]
        return {"_type": "bytes", "hex_prefix": head.hex(), "len": len(b)}
    if isinstance(v, str):
        if len(v) <= max_str:
            return v
        return v[:max_str] + "…"
    # Fall back to capped repr
    s = repr(v)
    if len(s) <= max_str:
        return s
    return s[:max_str] + "…"


def _format_params_for_error(params, *, max_items=50):
    if params is None:
        return None
    if isinstance(params, collections.abc.Mapping):
        out = {}
        for i, (k, v) in enumerate(params.items()):
            if i >= max_items:
                out["_truncated"] = True
                break
            out[str(k)] = _format_value_for_error(v)
        return out
    # Sequence-like
    try:
        seq = list(params)
    except TypeError:
        return _format_value_for_error(params)
    if len(seq) > max_items:
        seq = seq[:max_items] + ["<truncated>"]
    return [_format_value_for_error(v) for v in seq]


def _translate_error(err, *, sql=None, params=None):
    """Map an engine DbError onto the PEP 249 hierarchy, adding SQL context."""
    msg = err.message
    if sql is not None:
        ctx = {
            "native_code": int(err.code),
            "sql": sql,
            "params": _format_params_for_error(params),
        }
        msg = msg + "\nContext: " + json.dumps(ctx, ensure_ascii=False)
    return _error_class(err.code)(msg, err.code)


# Types
Date = datetime.date
Time = datetime.time
Timestamp = datetime.datetime
def DateFromTicks(ticks): return Date(*time.localtime(ticks)[:3])
def TimeFromTicks(ticks): return Time(*time.localtime(ticks)[3:6])
def TimestampFromTicks(ticks): return Timestamp(*time.localtime(ticks)[:6])
def Binary(string): return bytes(string)
STRING = str
BINARY = bytes
NUMBER = float
DATETIME = datetime.datetime
ROWID = int

_DML_RE = re.compile(r"^\s*(?:--[^\n]*\n\s*|/\*.*?\*/\s*)*(INSERT|UPDATE|DELETE|REPLACE)\b", re.IGNORECASE | re.DOTALL)


def _is_dml(sql):
    return _DML_RE.match(sql) is not None


def _adapt(param):
    if param is None or isinstance(param, (int, float, str, bytes, bytearray, memoryview)):
        return param
    if isinstance(param, uuid.UUID):
        return param.bytes
    if isinstance(param, datetime.datetime):
        return param.isoformat(" ")
    if isinstance(param, (datetime.date, datetime.time)):
        return param.isoformat()
    if isinstance(param, decimal.Decimal):
        return str(param)
    # Try string conversion for unknown types
    return str(param)


def _release_held(connection, held):
    sql, stmt = held
    if stmt is not None:
        held[0] = held[1] = None
        connection._recycle_statement(sql, stmt)


class Cursor:
    def __init__(self, connection):
        self._connection = connection
        # [sql, statement] currently owned by this cursor.
        self._held = [None, None]
        # Hands the statement back when a cursor is dropped without close().
        self._finalizer = weakref.finalize(self, _release_held, connection, self._held)
        self._finalizer.atexit = False
        self._executed = False
        self.description = None
        self.rowcount = -1
        self.lastrowid = None
        self.arraysize = 1
        self._closed = False

    @property
    def connection(self):
        return self._connection

    def close(self):
        if self._closed:
            return
        self._finalizer()
        self._closed = True

    def _release_statement(self):
        # Return to cache instead of finalizing directly
        _release_held(self._connection, self._held)

    def _check_open(self):
        if self._closed:
            raise ProgrammingError("Cursor is closed")
        self._connection._check_open()

    def execute(self, operation, parameters=None):
        self._check_open()
        self.description = None
        self.rowcount = -1
        self._executed = True

        held = self._held
        if held[1] is not None and held[0] == operation:
            # Same SQL with rows still pending: rewind the statement we hold.
            held[1].reset()
        else:
            self._release_statement()
            held[1] = self._connection._get_statement(operation)
            held[0] = operation

        stmt = held[1]
        db = self._connection._db
        try:
            self._bind(stmt, parameters)
            stmt.step()
            if stmt.column_count > 0:
                self.description = tuple(
                    (name, None, None, None, None, None, None) for name in stmt.column_names()
                )
            elif _is_dml(operation):
                self.rowcount = db.changes()
            self.lastrowid = db.insert_id()
        except Error:
            raise
        except DbError as e:
            raise _translate_error(e, sql=operation, params=parameters) from e
        if not stmt.is_open():
            # Nothing left to fetch; the statement can serve the next execute.
            self._release_statement()
        return self

    def executemany(self, operation, seq_of_parameters):
        total = 0
        counted = False
        for params in seq_of_parameters:
            self.execute(operation, params)
            if self.rowcount >= 0:
                total += self.rowcount
                counted = True
        self.rowcount = total if counted else -1
        return self

    def executescript(self, sql_script):
        self._check_open()
        self._release_statement()
        self._connection._executescript(sql_script)
        return self

    def _bind(self, stmt, parameters):
        needed = stmt.parameter_count
        if parameters is None:
            parameters = ()

        if isinstance(parameters, collections.abc.Mapping):
            for i in range(1, needed + 1):
                name = stmt.parameter_name(i)
                if name is None or name[0] == "?":
                    raise ProgrammingError("Mixed parameter styles are not supported: got named parameters with qmark placeholders")
                key = name[1:]
                if key not in parameters:
                    raise ProgrammingError(f"Missing parameter '{key}'")
                stmt.bind(i, _adapt(parameters[key]))
            return

        if isinstance(parameters, (str, bytes)) or not isinstance(parameters, collections.abc.Sequence):
            raise ProgrammingError("parameters are of unsupported type")
        if len(parameters) != needed:
            raise ProgrammingError(f"Incorrect number of parameters: expected {needed}, got {len(parameters)}")
        for i, param in enumerate(parameters):
            name = stmt.parameter_name(i + 1)
            if name is not None and name[0] != "?":
                raise ProgrammingError("Mixed parameter styles are not supported: got positional parameters with named placeholders")
            stmt.bind(i + 1, _adapt(param))

    def fetchone(self):
        self._check_open()
        sql, stmt = self._held
        if stmt is None:
            if not self._executed:
                raise ProgrammingError("No statement")
            return None

        if not stmt.is_open():
            return None
        try:
            row = stmt.get_row()
            # Advance now; on exhaustion the engine rewinds and releases its locks.
            more = stmt.step()
        except DbError as e:
            raise _translate_error(e, sql=sql) from e
        if not more:
            self._release_statement()
        return row

    def fetchmany(self, size=None):
        if size is None:
            size = self.arraysize
        rows = []
        for _ in range(size):
            r = self.fetchone()
            if r is None:
                break
            rows.append(r)
        return rows

    def fetchall(self):
        rows = []
        while True:
            r = self.fetchone()
            if r is None:
                break
            rows.append(r)
        return rows

    def setinputsizes(self, sizes):
        pass

    def setoutputsize(self, size, column=None):
        pass

    def __iter__(self):
        return self

    def __next__(self):
        r = self.fetchone()
        if r is None:
            raise StopIteration
        return r

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class Connection:
    def __init__(self, database, *, stmt_cache_size=128, readonly=False, uri=False):
        self._db = _Database()
        try:
            self._db.open(database, readonly=readonly, create=not readonly, uri=uri)
        except DbError as e:
            raise _translate_error(e) from e
        self._closed = False
        self._cursors = weakref.WeakSet()

        # Prepared statement cache, plus statements currently held by cursors
        # so close() can finalize them even if a cursor was never closed.
        self._stmt_cache = collections.OrderedDict()
        self._stmt_cache_size = stmt_cache_size
        self._active = set()

        # Statistics for testing
        self._stats = collections.Counter()

    def _check_open(self):
        if self._closed:
            raise ProgrammingError("Connection closed")

    def _get_statement(self, sql):
        """Take a prepared statement for ``sql`` out of the cache or prepare a new one."""
        stmt = self._stmt_cache.pop(sql, None)
        if stmt is not None:
            self._stats["cache_hit"] += 1
        else:
            self._stats["cache_miss"] += 1
            self._stats["prepare_count"] += 1
            try:
                stmt = self._db.prepare(sql)
            except DbError as e:
                raise _translate_error(e, sql=sql) from e
        self._active.add(stmt)
        return stmt

    def _recycle_statement(self, sql, stmt):
        """
        Return a statement to the cache.
        Resets execution state and clears bindings.
        """
        self._active.discard(stmt)
        if self._closed or self._stmt_cache_size <= 0:
            stmt.close()
            return

        # Reset and clear bindings before caching
        stmt.reset()
        stmt.clear_bindings()

        # Another cursor may have cached the same SQL meanwhile; keep the newest.
        old = self._stmt_cache.pop(sql, None)
        if old is not None:
            old.close()
        self._stmt_cache[sql] = stmt

        # Evict if full
        while len(self._stmt_cache) > self._stmt_cache_size:
            evicted_sql, old_stmt = self._stmt_cache.popitem(last=False)
            log.debug("evicting cached statement %r", evicted_sql)
            old_stmt.close()

    def _run(self, sql):
        try:
            self._db.execute(sql)
        except DbError as e:
            raise _translate_error(e, sql=sql) from e

    def _executescript(self, sql_script):
        try:
            self._db.executescript(sql_script)
        except DbError as e:
            raise _translate_error(e, sql=sql_script) from e

    @property
    def in_transaction(self):
        self._check_open()
        return self._db.in_transaction

    @property
    def total_changes(self):
        self._check_open()
        return self._db.total_changes()

    def close(self):
        if self._closed:
            return
        for c in list(self._cursors):
            c.close()
        # Finalize statements left behind by unclosed cursors, then the cache
        for stmt in self._active:
            stmt.close()
        self._active.clear()
        for stmt in self._stmt_cache.values():
            stmt.close()
        self._stmt_cache.clear()

        self._db.close()
        self._closed = True

    def commit(self):
        self._check_open()
        # Statements autocommit unless the caller issued BEGIN.
        if self._db.in_transaction:
            self._run("COMMIT")

    def rollback(self):
        self._check_open()
        if self._db.in_transaction:
            self._run("ROLLBACK")

    def cursor(self):
        self._check_open()
        c = Cursor(self)
        self._cursors.add(c)
        return c

    def execute(self, operation, parameters=None):
        # Convenience method
        return self.cursor().execute(operation, parameters)

    def executemany(self, operation, seq_of_parameters):
        return self.cursor().executemany(operation, seq_of_parameters)

    def executescript(self, sql_script):
        return self.cursor().executescript(sql_script)

    def _query_all(self, sql, *params):
        self._check_open()
        try:
            with self._db.prepare(sql, *params) as stmt:
                return list(stmt)
        except DbError as e:
            raise _translate_error(e, sql=sql, params=params) from e

    def list_tables(self):
        rows = self._query_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [name for (name,) in rows]

    def list_indexes(self):
        rows = self._query_all(
            "SELECT name, tbl_name FROM sqlite_master WHERE type = 'index' ORDER BY name"
        )
        out = []
        for name, table in rows:
            cols = self._query_all("SELECT name FROM pragma_index_info(?) ORDER BY seqno", name)
            uniq = self._query_all('SELECT "unique" FROM pragma_index_list(?) WHERE name = ?', table, name)
            out.append({
                "name": name,
                "table": table,
                "columns": [c for (c,) in cols],
                "unique": bool(uniq and uniq[0][0]),
            })
        return out

    def get_table_columns(self, table_name):
        rows = self._query_all(
            'SELECT name, type, "notnull", dflt_value, pk FROM pragma_table_info(?) ORDER BY cid',
            table_name,
        )
        if not rows:
            raise ProgrammingError(f"No such table: {table_name}", SQLITE_ERROR)

        unique_cols = set()
        for idx in self.list_indexes():
            if idx["table"] == table_name and idx["unique"] and len(idx["columns"]) == 1:
                unique_cols.add(idx["columns"][0])

        return [
            {
                "name": name,
                "type": decl_type or "",
                "not_null": bool(not_null),
                "default": default,
                "primary_key": bool(pk),
                "unique": name in unique_cols,
            }
            for name, decl_type, not_null, default, pk in rows
        ]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.rollback()
        else:
            self.commit()
        self.close()


def connect(database, **kwargs):
    """Open ``database`` (a path or ``":memory:"``) and return a :class:`Connection`.

    Keyword options: ``stmt_cache_size`` (default 128, 0 disables the
    statement cache), ``readonly`` and ``uri``.
    """
    return Connection(database, **kwargs)
