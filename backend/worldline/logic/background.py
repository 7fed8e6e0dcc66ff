"""找回存档中为节省空间而省略的背景图。"""

from __future__ import annotations

from typing import Optional, Sequence

from worldline.models import Node


def resolve_background(node: Optional[Node], nodes: Sequence[Node]) -> Optional[str]:
    """沿 ``parentId`` 向上查找，直到某个节点的当前剧情段带有背景图。

    只在节点所属会话内查找父节点，父节点缺失（已淘汰或从未保存）时视同到达根节点。
    """
    if node is None:
        return None
    by_story = {
        item.story_id: item
        for item in nodes
        if item.session_id == node.session_id and item.story_id is not None
    }
    seen: set[str] = set()
    current: Optional[Node] = node
    while current is not None and current.id not in seen:
        seen.add(current.id)
        segment = current.context.current_segment
        if segment is not None and segment.background_image:
            return segment.background_image
        if not current.parent_id:
            break
        current = by_story.get(current.parent_id)
    return None
