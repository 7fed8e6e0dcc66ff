from __future__ import annotations


class WorldlineError(RuntimeError):
    """存档图相关错误的基类。"""


class ImportFormatError(WorldlineError):
    """导入内容不符合任何已知的导出格式。"""


class NodeNotFoundError(WorldlineError):
    """节点或片段 id 无法解析。"""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id


class StorageQuotaError(WorldlineError):
    """底层存储已满，拒绝写入。"""


class RegenerateError(WorldlineError):
    """当前剧情段没有可重放的玩家输入。"""


class NarrativeReplyError(WorldlineError):
    """叙事服务返回的内容无法解析为剧情段。"""
