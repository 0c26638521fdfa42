import pytest
from sqlalchemy.dialects import registry

registry.register("sqlite.sqlitedb", "sqlitedb_sqlalchemy.dialect", "SqliteDbDialect")

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")
