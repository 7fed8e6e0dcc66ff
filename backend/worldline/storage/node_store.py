"""存档仓库：合并/覆盖保存、数量上限淘汰与延迟持久化。"""

from __future__ import annotations

import json
import logging
import time
from typing import Callable, Iterable, Optional, Sequence

from pydantic import ValidationError

from worldline.constants import (
    AVATARS_KEY,
    DEFAULT_LOCATION,
    NEW_GAME_SUMMARY,
    SAVES_KEY,
    SETUP_SUMMARY,
)
from worldline.errors import NodeNotFoundError
from worldline.models import GameContext, Node, NodeMetadata, SaveType
from worldline.storage.deferred import DeferredWriter
from worldline.storage.ports import KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
RetentionPolicy = Callable[[Sequence[Node], int], list[Node]]


def now_ms() -> int:
    return int(time.time() * 1000)


def retain_global(nodes: Sequence[Node], limit: int) -> list[Node]:
    # 不区分会话：活跃会话可能淘汰掉其他会话的全部节点。
    return list(nodes[:limit])


def retain_per_session(nodes: Sequence[Node], limit: int) -> list[Node]:
    counts: dict[str, int] = {}
    kept: list[Node] = []
    for node in nodes:
        seen = counts.get(node.session_id, 0)
        if seen < limit:
            kept.append(node)
        counts[node.session_id] = seen + 1
    return kept


RETENTION_POLICIES: dict[str, RetentionPolicy] = {
    "global": retain_global,
    "session": retain_per_session,
}


def trim_inline_assets(context: GameContext, limit: int) -> GameContext:
    """返回去掉历史中长度不小于 ``limit`` 的背景图后的 ``context`` 副本。

    当前剧情段保留背景图，祖先节点通过父链找回。
    """
    trimmed = context.model_copy(deep=True)
    for segment in trimmed.history:
        if segment.background_image and len(segment.background_image) >= limit:
            segment.background_image = None
    return trimmed


def _choice_text(context: GameContext) -> str:
    current = context.current_segment
    if current is not None and current.caused_by is not None:
        return current.caused_by
    if len(context.history) < 2:
        return ""
    choices = context.history[-2].choices
    index = context.last_choice_idx or 0
    if 0 <= index < len(choices):
        return choices[index]
    return ""


def _metadata(context: GameContext) -> NodeMetadata:
    highest = None
    if context.supporting_characters:
        best = max(context.supporting_characters, key=lambda c: c.affinity or 0)
        highest = f"{best.name} (♥{best.affinity or 0})"
    return NodeMetadata(
        highest_affinity_npc=highest,
        total_skill_level=sum(skill.level for skill in context.character.skills),
        turn_count=len(context.history),
    )


def compose_node(
    context: GameContext,
    save_type: SaveType,
    *,
    now: int,
    inline_asset_limit: int,
) -> Node:
    """为 ``context`` 构造新存档，合并时会替换 id。"""
    current = context.current_segment
    history = context.history
    if current is not None and current.text:
        summary = current.text
    else:
        summary = SETUP_SUMMARY if save_type is SaveType.SETUP else NEW_GAME_SUMMARY
    last_choice = context.last_choice_idx
    return Node(
        session_id=context.session_id,
        story_name=context.story_name,
        story_id=current.id if current is not None else None,
        parent_id=history[-2].id if len(history) > 1 else None,
        timestamp=now,
        genre=context.genre,
        character_name=context.character.name,
        summary=summary,
        context=trim_inline_assets(context, inline_asset_limit),
        type=save_type,
        location=(current.location if current is not None else None) or DEFAULT_LOCATION,
        choice_label=str(last_choice + 1) if last_choice is not None and last_choice != -1 else "",
        choice_text=_choice_text(context),
        meta_data=_metadata(context),
    )


def storage_record(node: Node) -> dict:
    record = node.to_record()
    record["context"]["character"].pop("avatar", None)
    return record


class NodeStore:
    """按最近优先排列的存档节点集合。

    节点之间只通过 ``storyId``/``parentId`` 字符串关联，读取时再查找解析。
    每次变更先更新内存，再把持久化写入排入 ``writer``。
    主角头像按会话单独存放，不重复写入每个节点。
    """

    def __init__(
        self,
        backend: KeyValueStore,
        *,
        writer: DeferredWriter | None = None,
        retention_limit: int = 20,
        retention: str = "global",
        inline_asset_limit: int = 500,
        clock: Clock = now_ms,
    ) -> None:
        if retention not in RETENTION_POLICIES:
            raise ValueError(f"unknown retention scope: {retention}")
        self._backend = backend
        self.writer = writer or DeferredWriter()
        self.retention_limit = retention_limit
        self._retain = RETENTION_POLICIES[retention]
        self.inline_asset_limit = inline_asset_limit
        self._clock = clock
        self._nodes: list[Node] = []
        self._avatars: dict[str, str] = {}
        self.loaded_node_id: Optional[str] = None

    def load(self) -> int:
        """从底层存储加载，无法解析的数据记录日志后跳过。"""
        self._avatars = {}
        raw_avatars = self._backend.get(AVATARS_KEY)
        if raw_avatars:
            try:
                self._avatars = dict(json.loads(raw_avatars))
            except (ValueError, TypeError):
                logger.exception("stored avatar dictionary is unreadable")

        nodes: list[Node] = []
        raw_saves = self._backend.get(SAVES_KEY)
        if raw_saves:
            try:
                records = json.loads(raw_saves)
            except ValueError:
                logger.exception("stored checkpoints are unreadable")
                records = []
            for record in records:
                try:
                    node = Node.model_validate(record)
                except ValidationError as exc:
                    logger.warning("skipping invalid stored checkpoint: %s", exc)
                    continue
                avatar = self._avatars.get(node.session_id)
                if not node.context.character.avatar and avatar:
                    node.context.character.avatar = avatar
                nodes.append(node)
        self._nodes = nodes
        return len(nodes)

    def list(self) -> list[Node]:
        return list(self._nodes)

    def list_by_session(self, session_id: str) -> list[Node]:
        return [node for node in self._nodes if node.session_id == session_id]

    def get(self, node_id: str) -> Optional[Node]:
        return next((node for node in self._nodes if node.id == node_id), None)

    def require(self, node_id: str) -> Node:
        node = self.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"checkpoint not found: {node_id}", node_id=node_id)
        return node

    def find(self, session_id: str, story_id: Optional[str]) -> Optional[Node]:
        return next(
            (
                node
                for node in self._nodes
                if node.session_id == session_id and node.story_id == story_id
            ),
            None,
        )

    def avatar_for(self, session_id: str) -> Optional[str]:
        return self._avatars.get(session_id)

    def _index_of(self, predicate: Callable[[Node], bool]) -> Optional[int]:
        for index, node in enumerate(self._nodes):
            if predicate(node):
                return index
        return None

    def _merge_target(self, node: Node, save_type: SaveType) -> Optional[int]:
        if save_type is SaveType.SETUP:
            index = self._index_of(
                lambda n: n.session_id == node.session_id and n.type is SaveType.SETUP
            )
        else:
            index = self._index_of(
                lambda n: n.session_id == node.session_id and n.story_id == node.story_id
            )
        if index is None and self.loaded_node_id:
            loaded = self.get(self.loaded_node_id)
            if loaded is not None and loaded.story_id == node.story_id:
                index = self._index_of(lambda n: n.id == self.loaded_node_id)
        return index

    def save(self, context: GameContext, save_type: SaveType) -> Optional[Node]:
        """为 ``context`` 新建或覆盖存档。

        返回保存后的节点；AUTO 保存命中 MANUAL 节点时被丢弃，返回 ``None``。
        """
        node = compose_node(
            context,
            save_type,
            now=self._clock(),
            inline_asset_limit=self.inline_asset_limit,
        )
        avatar = context.character.avatar
        if avatar and self._avatars.get(context.session_id) != avatar:
            self._avatars[context.session_id] = avatar
            self._schedule_avatar_flush()

        index = self._merge_target(node, save_type)
        if index is not None:
            existing = self._nodes[index]
            if save_type is SaveType.AUTO and existing.type is SaveType.MANUAL:
                logger.debug("auto save skipped, %s is a manual checkpoint", existing.id)
                return None
            node.id = existing.id
            self._nodes[index] = node
        else:
            self._nodes.insert(0, node)
        self._drop_conflicts(node)

        if save_type in (SaveType.MANUAL, SaveType.SETUP):
            self.loaded_node_id = node.id
        self._nodes = self._retain(self._nodes, self.retention_limit)
        self._schedule_flush()
        return node

    def _drop_conflicts(self, node: Node) -> None:
        # SETUP 与已加载指针的合并可能落到同会话已被占用的剧情段上，以本次保存为准。
        self._nodes = [
            other
            for other in self._nodes
            if other is node
            or not (other.session_id == node.session_id and other.story_id == node.story_id)
        ]

    def is_duplicate(self, node: Node) -> bool:
        return any(
            existing.id == node.id
            or (existing.session_id == node.session_id and existing.story_id == node.story_id)
            for existing in self._nodes
        )

    def insert_many(self, nodes: Iterable[Node]) -> int:
        """导入共用入口：插入所有非重复节点，返回插入数量。"""
        inserted = 0
        for node in nodes:
            if self.is_duplicate(node):
                logger.debug("import skipped duplicate checkpoint %s", node.id)
                continue
            self._nodes.append(node)
            inserted += 1
            avatar = node.context.character.avatar
            if avatar:
                self._avatars[node.session_id] = avatar
        if inserted:
            self._nodes.sort(key=lambda n: n.timestamp, reverse=True)
            self._schedule_avatar_flush()
            self._schedule_flush()
        return inserted

    def delete(self, node_id: str) -> bool:
        remaining = [node for node in self._nodes if node.id != node_id]
        if len(remaining) == len(self._nodes):
            return False
        self._nodes = remaining
        if self.loaded_node_id == node_id:
            self.loaded_node_id = None
        self._schedule_flush()
        return True

    def delete_session(self, session_id: str) -> int:
        remaining = [node for node in self._nodes if node.session_id != session_id]
        removed = len(self._nodes) - len(remaining)
        self._nodes = remaining
        if self.loaded_node_id and self.get(self.loaded_node_id) is None:
            self.loaded_node_id = None
        self._schedule_flush()
        return removed

    def _schedule_flush(self) -> None:
        snapshot = list(self._nodes)

        def write() -> None:
            records = [storage_record(node) for node in snapshot]
            self._backend.set(SAVES_KEY, json.dumps(records, ensure_ascii=False))

        self.writer.schedule(write)

    def _schedule_avatar_flush(self) -> None:
        avatars = dict(self._avatars)

        def write() -> None:
            self._backend.set(AVATARS_KEY, json.dumps(avatars, ensure_ascii=False))

        self.writer.schedule(write)
