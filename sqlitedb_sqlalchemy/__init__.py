from .dialect import SqliteDbDialect

__all__ = ["SqliteDbDialect"]
