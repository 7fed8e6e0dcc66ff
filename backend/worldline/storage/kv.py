"""进程内与文件型键值存储。"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from worldline.errors import StorageQuotaError


class MemoryKeyValueStore:
    """基于 dict 的存储，``quota_bytes`` 模拟浏览器存储配额。"""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self.data: dict[str, str] = {}

    def _size_with(self, key: str, value: str) -> int:
        total = len(key) + len(value)
        for existing_key, existing_value in self.data.items():
            if existing_key != key:
                total += len(existing_key) + len(existing_value)
        return total

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
            raise StorageQuotaError(f"quota of {self.quota_bytes} bytes exceeded writing {key}")
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileKeyValueStore:
    """每个键对应 ``root`` 下的一个 ``<key>.json`` 文件。"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
