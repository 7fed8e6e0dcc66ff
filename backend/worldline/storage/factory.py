from __future__ import annotations

from pathlib import Path

from worldline.storage.ports import KeyValueStore


def build_key_value_store(backend: str, data_dir: str | Path) -> KeyValueStore:
    if backend == "memory":
        from worldline.storage.kv import MemoryKeyValueStore

        return MemoryKeyValueStore()
    if backend == "json":
        from worldline.storage.kv import JsonFileKeyValueStore

        return JsonFileKeyValueStore(Path(data_dir) / "saves")
    if backend == "kuzu":
        from worldline.storage.graph import KuzuKeyValueStore

        return KuzuKeyValueStore(Path(data_dir) / "worldline.db")
    raise ValueError(f"unknown store backend: {backend}")
