import json

import pytest

from worldline.errors import StorageQuotaError
from worldline.storage.deferred import DeferredWriter
from worldline.storage.factory import build_key_value_store
from worldline.storage.graph import KuzuKeyValueStore
from worldline.storage.kv import JsonFileKeyValueStore, MemoryKeyValueStore


def test_memory_store_round_trip_and_quota():
    store = MemoryKeyValueStore(quota_bytes=10)
    store.set("k", "12345")
    assert store.get("k") == "12345"

    with pytest.raises(StorageQuotaError):
        store.set("k", "x" * 11)
    assert store.get("k") == "12345"

    store.delete("k")
    assert store.get("k") is None


def test_json_file_store_persists_across_instances(tmp_path):
    first = JsonFileKeyValueStore(tmp_path / "saves")
    first.set("worldline_saves", json.dumps([{"id": "n1"}]))

    second = JsonFileKeyValueStore(tmp_path / "saves")
    assert json.loads(second.get("worldline_saves")) == [{"id": "n1"}]

    second.delete("worldline_saves")
    second.delete("worldline_saves")
    assert first.get("worldline_saves") is None


def test_json_file_store_rejects_path_like_keys(tmp_path):
    store = JsonFileKeyValueStore(tmp_path)
    with pytest.raises(ValueError):
        store.set("../escape", "x")


def test_kuzu_store_overwrites_value(tmp_path):
    store = KuzuKeyValueStore(db_path=tmp_path / "kv" / "worldline.db")
    assert store.get("k") is None

    store.set("k", "one")
    store.set("k", "两")
    assert store.get("k") == "两"

    store.delete("k")
    assert store.get("k") is None


def test_factory_builds_each_backend(tmp_path):
    assert isinstance(build_key_value_store("memory", tmp_path), MemoryKeyValueStore)
    assert isinstance(build_key_value_store("json", tmp_path), JsonFileKeyValueStore)
    with pytest.raises(ValueError):
        build_key_value_store("redis", tmp_path)


def test_deferred_writer_logs_failures_and_keeps_going(caplog):
    writer = DeferredWriter()
    done = []

    def broken():
        raise StorageQuotaError("quota exceeded")

    writer.schedule(broken)
    writer.schedule(lambda: done.append(True))
    assert writer.pending == 2

    with caplog.at_level("ERROR"):
        failed = writer.flush()

    assert failed == 1
    assert done == [True]
    assert writer.pending == 0
    assert "deferred persistence write failed" in caplog.text
