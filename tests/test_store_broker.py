import sqlite3

import pytest

from gtfsdb.data.store_broker import open_store


def test_execute_and_count(store):
    store.execute_raw("CREATE TABLE stops (stop_id text, stop_name text);")
    store.execute("INSERT INTO stops VALUES (:id, :name);", {"id": "S1", "name": "Main St: North"})
    store.commit()

    assert store.has_table("stops")
    assert store.columns("stops") == ["stop_id", "stop_name"]
    assert store.has_column("stops", "stop_name")
    assert not store.has_column("stops", "stop_lat")
    assert store.count("stops", where="stop_id = :id", params={"id": "S1"}) == 1


def test_records_convert_nulls(store):
    store.execute_raw("CREATE TABLE t (a text, b text);")
    store.execute_raw("INSERT INTO t VALUES ('x', NULL);")

    record = next(store.records("SELECT a, b FROM t;"))
    assert record.as_dict() == {"a": "x", "b": ""}
    assert record.get("missing", "default") == "default"


def test_transaction_rolls_back(store):
    store.execute_raw("CREATE TABLE t (a text);")
    store.commit()

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.execute("INSERT INTO t VALUES ('x');")
            raise RuntimeError("boom")

    assert store.count("t") == 0


def test_snapshot_writes_database_file(store, tmp_path):
    store.execute_raw("CREATE TABLE stops (stop_id text);")
    store.execute_raw("INSERT INTO stops VALUES ('S1'), ('S2');")

    target = tmp_path / "gtfs.sqlite"
    store.snapshot(target)

    conn = sqlite3.connect(str(target))
    try:
        assert conn.execute("SELECT count(*) FROM stops;").fetchone()[0] == 2
    finally:
        conn.close()


def test_file_store_persists(tmp_path):
    path = tmp_path / "gtfs.sqlite"
    with open_store(path) as store:
        store.execute_raw("CREATE TABLE t (a text);")
        store.commit()

    with open_store(path) as store:
        assert store.has_table("t")


def test_table_names(store):
    store.execute_raw("CREATE TABLE stops (stop_id text);")
    store.commit()

    assert sorted(store.table_names()) == ["gtfs_metadata", "stops"]
