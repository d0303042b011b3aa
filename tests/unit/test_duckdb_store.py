"""
Unit tests for the DuckDB record store.

Tests:
- Save / load / upsert
- load_all ordering and kind isolation
- Delete and count
- Corrupted payload detection
- File-backed persistence across connections
"""

import pytest

from trader_tony.position.errors import StorageCorruptionError
from trader_tony.storage.duckdb_store import DuckDBStore


class Note:
    RECORD_KIND = "note"

    def __init__(self, record_id, text):
        self.record_id = record_id
        self.text = text

    def to_dict(self):
        return {"id": self.record_id, "text": self.text}


def insert_raw(store, record_id, payload):
    store._conn.execute(
        "INSERT INTO records VALUES ('note', ?, ?, TIMESTAMP '2024-01-01', TIMESTAMP '2024-01-01')",
        [record_id, payload],
    )


def test_save_and_load(store):
    store.save(Note("n1", "hello"))

    assert store.load("note", "n1") == {"id": "n1", "text": "hello"}
    assert store.load("note", "missing") is None
    assert store.load("other", "n1") is None


def test_save_upserts(store):
    store.save(Note("n1", "first"))
    store.save(Note("n1", "second"))

    assert store.load("note", "n1")["text"] == "second"
    assert store.count("note") == 1


def test_load_all_by_kind(store):
    store.save(Note("n1", "a"))
    store.save(Note("n2", "b"))

    records = store.load_all("note")

    assert [r["id"] for r in records] == ["n1", "n2"]
    assert store.load_all("position") == []
    assert store.count() == 2


def test_delete(store):
    store.save(Note("n1", "a"))

    assert store.delete("note", "n1") is True
    assert store.delete("note", "n1") is False
    assert store.count("note") == 0


def test_corrupted_payload_raises(store):
    insert_raw(store, "bad", "{not json")

    with pytest.raises(StorageCorruptionError):
        store.load("note", "bad")
    with pytest.raises(StorageCorruptionError):
        store.load_all("note")


def test_non_object_payload_raises(store):
    insert_raw(store, "list", "[1, 2]")

    with pytest.raises(StorageCorruptionError):
        store.load("note", "list")


def test_file_store_survives_reopen(tmp_path):
    path = str(tmp_path / "nested" / "records.duckdb")

    with DuckDBStore(path) as db:
        db.save(Note("n1", "kept"))

    with DuckDBStore(path) as db:
        assert db.load("note", "n1") == {"id": "n1", "text": "kept"}


def test_closed_store_rejects_use():
    db = DuckDBStore()
    db.close()

    with pytest.raises(RuntimeError):
        db.save(Note("n1", "late"))
