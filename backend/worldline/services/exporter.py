"""按导入器可识别的三种格式导出存档。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from worldline.constants import EXPORT_FORMAT_VERSION
from worldline.errors import NodeNotFoundError
from worldline.logic.background import resolve_background
from worldline.models import Node, StoryConfig


def _stamp(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def _with_resolved_background(node: Node, nodes: Sequence[Node]) -> Node:
    copy = node.model_copy(deep=True)
    current = copy.context.current_segment
    if current is not None and not current.background_image:
        current.background_image = resolve_background(node, nodes)
    return copy


def export_checkpoint(
    node: Node, nodes: Sequence[Node], *, now: Optional[datetime] = None
) -> dict[str, Any]:
    """单个完整存档，并回填继承的背景图。"""
    record = _with_resolved_background(node, nodes).to_record()
    record["exportedAt"] = _stamp(now)
    record["version"] = EXPORT_FORMAT_VERSION
    return record


def export_config(node: Node, *, now: Optional[datetime] = None) -> dict[str, Any]:
    """仅配置文件：主角、世界观与配角，不含剧情历史。"""
    context = node.context
    config = StoryConfig(
        story_name=node.story_name,
        genre=node.genre,
        custom_genre=context.custom_genre,
        character=context.character.model_copy(deep=True),
        world_settings=context.world_settings.model_copy(deep=True),
        supporting_characters=[c.model_copy(deep=True) for c in context.supporting_characters],
    )
    record = config.to_record()
    record["exportedAt"] = _stamp(now)
    return record


def export_session_backup(
    session_id: str,
    nodes: Sequence[Node],
    include_images: bool = True,
) -> list[dict[str, Any]]:
    """将一条世界线的全部存档导出为批量备份数组。"""
    session_nodes = [node for node in nodes if node.session_id == session_id]
    if not session_nodes:
        raise NodeNotFoundError(f"no checkpoints for session: {session_id}")

    records = []
    for node in session_nodes:
        copy = _with_resolved_background(node, nodes)
        if not include_images:
            context = copy.context
            context.character.avatar = None
            for character in context.supporting_characters:
                character.avatar = None
            for segment in context.history:
                segment.background_image = None
            if context.current_segment is not None:
                context.current_segment.background_image = None
        records.append(copy.to_record())
    return records
