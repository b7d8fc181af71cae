import sqlite3

import pytest

from mailmirror.infra.storage import MemoryStore, SqliteStore


def test_sqlite_store_round_trips_and_overwrites(tmp_path):
    store = SqliteStore(str(tmp_path / "cache" / "mail.db"))

    assert store.get("missing") is None
    store.set("k", b"first")
    store.set("k", b"second")
    assert store.get("k") == b"second"

    store.remove("k")
    assert store.get("k") is None
    store.close()


def test_sqlite_store_rejects_non_bytes(tmp_path):
    store = SqliteStore(str(tmp_path / "mail.db"))

    with pytest.raises(TypeError):
        store.set("k", "text")
    store.close()


def test_sqlite_store_records_schema_version(tmp_path):
    db_path = tmp_path / "mail.db"
    SqliteStore(str(db_path)).close()

    conn = sqlite3.connect(str(db_path))
    try:
        row = conn.execute("SELECT version FROM schema_version").fetchone()
    finally:
        conn.close()
    assert row[0] == SqliteStore.SCHEMA_VERSION


def test_sqlite_store_persists_across_instances(tmp_path):
    db_path = str(tmp_path / "mail.db")
    first = SqliteStore(db_path)
    first.set("accounts", b"[]")
    first.close()

    second = SqliteStore(db_path)
    assert second.get("accounts") == b"[]"
    second.close()


def test_memory_store_matches_sqlite_surface():
    store = MemoryStore()
    store.set("k", bytearray(b"v"))

    assert store.get("k") == b"v"
    store.remove("k")
    store.remove("k")
    assert store.get("k") is None
