from __future__ import annotations

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """节点仓库背后的持久化字符串存储。"""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...
