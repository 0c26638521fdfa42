import os
import time

import sqlitedb
from sqlitedb import dbapi

def run_benchmark():
    db_path = "bench_fetch.db"
    if os.path.exists(db_path):
        os.remove(db_path)

    conn = dbapi.connect(db_path)
    cur = conn.cursor()

    print("Setting up data...")
    cur.execute("CREATE TABLE bench (id INTEGER, val TEXT, f REAL)")

    count = 100000
    data = [(i, f"value_{i}", float(i)) for i in range(count)]

    start_time = time.perf_counter()
    cur.execute("BEGIN")
    cur.executemany("INSERT INTO bench VALUES (?, ?, ?)", data)
    conn.commit()
    end_time = time.perf_counter()
    print(f"Insert {count} rows: {end_time - start_time:.4f}s")
    conn.close()

    # Benchmark fetchall
    conn = dbapi.connect(db_path)
    cur = conn.cursor()

    print("Benchmarking fetchall...")
    start_time = time.perf_counter()
    cur.execute("SELECT * FROM bench")
    rows = cur.fetchall()
    end_time = time.perf_counter()

    print(f"Fetchall {count} rows: {end_time - start_time:.4f}s")
    assert len(rows) == count

    # Benchmark fetchmany(1000)
    print("Benchmarking fetchmany(1000)...")
    start_time = time.perf_counter()
    cur.execute("SELECT * FROM bench")
    total = 0
    while True:
        batch = cur.fetchmany(1000)
        if not batch:
            break
        total += len(batch)
    end_time = time.perf_counter()

    print(f"Fetchmany(1000) {count} rows: {end_time - start_time:.4f}s")
    assert total == count
    conn.close()

    # Typed reads straight off the object API
    print("Benchmarking typed get_row...")
    start_time = time.perf_counter()
    total = 0
    with sqlitedb.open(db_path, readonly=True) as db:
        with db.query("SELECT id, val, f FROM bench") as stmt:
            while stmt.is_open():
                stmt.get_row(int, str, float)
                total += 1
                stmt.step()
    end_time = time.perf_counter()

    print(f"get_row {count} rows: {end_time - start_time:.4f}s")
    assert total == count

    if os.path.exists(db_path):
        os.remove(db_path)

if __name__ == "__main__":
    run_benchmark()
