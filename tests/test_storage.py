import pytest

from portal.exceptions import StoreError
from portal.storage import MemoryStore, SqliteStore


def test_memory_store():
    store = MemoryStore({"a": "1"})
    store.write("b", "2")
    assert store.read("a") == "1"
    assert store.keys() == ["a", "b"]
    store.remove("a")
    store.remove("missing")
    assert store.read("a") is None


def test_sqlite_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "portal.db"
    store = SqliteStore(path)
    store.write("ns-users", "[]")
    store.write("ns-users", '[{"id": "admin"}]')

    again = SqliteStore(path)
    assert again.read("ns-users") == '[{"id": "admin"}]'
    assert again.keys() == ["ns-users"]


def test_sqlite_store_remove(tmp_path):
    store = SqliteStore(tmp_path / "portal.db")
    store.write("k", "v")
    store.remove("k")
    assert store.read("k") is None
    assert store.keys() == []


def test_sqlite_store_wraps_errors(tmp_path):
    store = SqliteStore(tmp_path / "portal.db")
    (tmp_path / "portal.db").unlink()
    (tmp_path / "portal.db").mkdir()
    with pytest.raises(StoreError):
        store.read("k")
