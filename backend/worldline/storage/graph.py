"""Kùzu 存储封装，将存档集合持久化到嵌入式图数据库。"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import kuzu


class KuzuKeyValueStore:
    """以 Kùzu 节点表实现的键值存储。"""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = kuzu.Database(str(self.db_path))
        self.conn = kuzu.Connection(self.db)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.conn.execute(
            """
            CREATE NODE TABLE IF NOT EXISTS Entry(
                key STRING,
                value STRING,
                PRIMARY KEY (key)
            );
            """
        )

    def get(self, key: str) -> Optional[str]:
        result = self.conn.execute(
            "MATCH (e:Entry) WHERE e.key = $key RETURN e.value",
            {"key": key},
        )
        if not result.has_next():
            return None
        return result.get_next()[0]

    def set(self, key: str, value: str) -> None:
        self.delete(key)
        self.conn.execute(
            "CREATE (:Entry {key: $key, value: $value})",
            {"key": key, "value": value},
        )

    def delete(self, key: str) -> None:
        self.conn.execute(
            "MATCH (e:Entry) WHERE e.key = $key DELETE e",
            {"key": key},
        )
