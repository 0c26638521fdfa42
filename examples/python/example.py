"""Example: basic sqlitedb usage, object API first, then DB-API 2.0.

Run with the system SQLite library:
    python example.py

or point at a specific build:
    SQLITEDB_NATIVE_LIB=/path/to/libsqlite3.so python example.py
"""

import os
import tempfile

import sqlitedb
from sqlitedb import dbapi


def object_api(db_path):
    with sqlitedb.open(db_path) as db:
        db.execute("""
            CREATE TABLE users (
                id    INTEGER PRIMARY KEY,
                name  TEXT NOT NULL,
                email TEXT UNIQUE
            )
        """)

        # One prepared statement, rebound per row.
        with db.prepare("INSERT INTO users (name, email) VALUES (?, ?)") as insert:
            for name, email in [
                ("Alice", "alice@example.com"),
                ("Bob", "bob@example.com"),
                ("Carol", "carol@example.com"),
            ]:
                insert.step(name, email)
                print(f"inserted {name} as id={db.insert_id()}")

        print("All users:")
        with db.query("SELECT id, name, email FROM users ORDER BY id") as stmt:
            for user_id, name, email in stmt:
                print(f"  id={user_id}  name={name}  email={email}")

        with db.query("SELECT name FROM users WHERE email = :email") as stmt:
            stmt.bind_name("email", "bob@example.com")
            stmt.step()
            print(f"\nLookup by email: {stmt.get_text(0)}")


def dbapi_usage(db_path):
    conn = dbapi.connect(db_path)
    cursor = conn.cursor()

    # Transaction example.
    cursor.execute("BEGIN")
    cursor.execute("INSERT INTO users (name, email) VALUES (?, ?)", ("Dave", "dave@example.com"))
    conn.commit()

    cursor.execute("SELECT count(*) FROM users")
    count = cursor.fetchone()[0]
    print(f"\nTotal users after transaction: {count}")

    # Schema introspection.
    tables = conn.list_tables()
    print(f"\nTables: {tables}")

    columns = conn.get_table_columns("users")
    print("Columns:")
    for col in columns:
        print(f"  {col['name']} ({col['type']})"
              f"{'  PK' if col.get('primary_key') else ''}"
              f"{'  NOT NULL' if col.get('not_null') else ''}"
              f"{'  UNIQUE' if col.get('unique') else ''}")

    cursor.close()
    conn.close()


def main():
    # Create a temporary database file for this example.
    db_path = os.path.join(tempfile.gettempdir(), "sqlitedb_example.db")
    if os.path.exists(db_path):
        os.unlink(db_path)

    print(f"SQLite {sqlitedb.library_version()}\n")
    object_api(db_path)
    dbapi_usage(db_path)

    # Clean up.
    for suffix in ("", "-journal", "-wal"):
        try:
            os.unlink(db_path + suffix)
        except FileNotFoundError:
            pass

    print("\nDone.")


if __name__ == "__main__":
    main()
