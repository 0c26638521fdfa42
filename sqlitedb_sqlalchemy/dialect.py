from sqlalchemy import exc
from sqlalchemy import pool
from sqlalchemy import util
from sqlalchemy.dialects.sqlite.base import SQLiteDialect

import sqlitedb.dbapi


class SqliteDbDialect(SQLiteDialect):
    """SQLite dialect driven by :mod:`sqlitedb.dbapi` (``sqlite+sqlitedb://``).

    SQL compilation, types and reflection come from SQLAlchemy's SQLite base
    dialect; only connection handling is specific to this driver. Statements
    autocommit unless SQL issues BEGIN, so ``commit()``/``rollback()`` only
    act on explicit transactions.
    """

    driver = "sqlitedb"
    supports_statement_cache = True
    default_paramstyle = "qmark"

    @classmethod
    def import_dbapi(cls):
        return sqlitedb.dbapi

    @classmethod
    def _is_memory_url(cls, url):
        return url.database in (None, "", ":memory:")

    @classmethod
    def get_pool_class(cls, url):
        # Every connection to ":memory:" is a separate database; share one per thread.
        if cls._is_memory_url(url):
            return pool.SingletonThreadPool
        return pool.QueuePool

    def create_connect_args(self, url):
        # url is sqlite+sqlitedb:////path/to.db
        opts = dict(url.query)
        kwargs = {}
        if "stmt_cache_size" in opts:
            kwargs["stmt_cache_size"] = int(opts.pop("stmt_cache_size"))
        if "readonly" in opts:
            kwargs["readonly"] = util.asbool(opts.pop("readonly"))
        if "uri" in opts:
            kwargs["uri"] = util.asbool(opts.pop("uri"))
        if opts:
            raise exc.ArgumentError(f"Unsupported sqlitedb URL options: {sorted(opts)}")

        path = url.database
        if self._is_memory_url(url):
            path = ":memory:"
        return ([path], kwargs)

    def _get_server_version_info(self, connection):
        return self.dbapi.sqlite_version_info

    def do_rollback(self, dbapi_connection):
        dbapi_connection.rollback()

    def do_commit(self, dbapi_connection):
        dbapi_connection.commit()

    def do_close(self, dbapi_connection):
        dbapi_connection.close()


dialect = SqliteDbDialect
