import time

from studio365.core import kv_store
from studio365.core.kv_store import InMemoryStore, get_kv_store


def test_add_is_set_if_absent():
    store = InMemoryStore()
    assert store.add("k", "1", 60) is True
    assert store.add("k", "2", 60) is False
    assert store.get("k") == "1"


def test_expired_entries_are_dropped(monkeypatch):
    store = InMemoryStore()
    store.add("k", "1", 10)
    now = time.time()
    monkeypatch.setattr(kv_store.time, "time", lambda: now + 11)
    assert store.get("k") is None
    assert store.add("k", "2", 10) is True


def test_delete():
    store = InMemoryStore()
    store.add("k", "1", 60)
    store.delete("k")
    assert store.get("k") is None


def test_falls_back_to_memory_without_redis():
    assert isinstance(get_kv_store(), InMemoryStore)
    assert get_kv_store() is get_kv_store()
