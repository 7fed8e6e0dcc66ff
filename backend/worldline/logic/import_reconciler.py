"""将导出文件还原为存档节点。

支持三种格式，在入口处一次性区分：

* 批量备份：完整存档组成的 JSON 数组，原样插入；
* 仅配置：主角、世界观与配角，生成新会话中的一个 SETUP 存档；
* 单个存档：一个节点及其线性历史。导出不含中间节点，
  因此按历史逐段重建节点，用 ``parentId`` 串联，并按时间向前错开。

所有插入都经过 ``NodeStore.insert_many``，重复项（相同 id，或相同会话与 storyId）统一跳过。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from pydantic import ValidationError

from worldline.constants import (
    HISTORY_NODE_SUMMARY,
    IMPORTED_CONFIG_SUMMARY,
    REBUILD_STEP_MS,
    SUMMARY_EXCERPT_CHARS,
)
from worldline.errors import ImportFormatError
from worldline.models import (
    GameContext,
    ImportResult,
    MemoryState,
    Node,
    SaveType,
    StoryConfig,
    new_id,
)
from worldline.storage.node_store import Clock, NodeStore, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkBackup:
    nodes: tuple[Node, ...]


@dataclass(frozen=True)
class ConfigOnly:
    config: StoryConfig


@dataclass(frozen=True)
class FullCheckpoint:
    node: Node


ImportPayload = Union[BulkBackup, ConfigOnly, FullCheckpoint]


def classify_payload(raw: Any) -> ImportPayload:
    """先判定导入格式再读取其他字段，无法识别时直接拒绝。"""
    try:
        if isinstance(raw, list):
            return BulkBackup(tuple(Node.model_validate(item) for item in raw))
        if isinstance(raw, dict):
            if raw.get("context") and raw.get("id"):
                return FullCheckpoint(Node.model_validate(raw))
            if raw.get("character") and raw.get("worldSettings"):
                return ConfigOnly(StoryConfig.model_validate(raw))
    except ValidationError as exc:
        raise ImportFormatError(f"import payload is malformed: {exc}") from exc
    raise ImportFormatError("import format not recognized")


def synthesize_setup_node(
    config: StoryConfig,
    *,
    now: int,
    id_factory: Callable[[], str] = new_id,
) -> Node:
    session_id = id_factory()
    context = GameContext(
        session_id=session_id,
        story_name=config.story_name,
        genre=config.genre,
        custom_genre=config.custom_genre,
        character=config.character.model_copy(deep=True),
        supporting_characters=[c.model_copy(deep=True) for c in config.supporting_characters],
        world_settings=config.world_settings.model_copy(deep=True),
        history=[],
        current_segment=None,
        last_updated=now,
        memories=MemoryState(),
        scheduled_events=[],
    )
    return Node(
        id=id_factory(),
        session_id=session_id,
        story_name=config.story_name,
        timestamp=now,
        genre=config.genre,
        character_name=config.character.name,
        summary=IMPORTED_CONFIG_SUMMARY,
        context=context,
        type=SaveType.SETUP,
    )


def _excerpt(text: str) -> str:
    if not text:
        return HISTORY_NODE_SUMMARY
    return text[:SUMMARY_EXCERPT_CHARS] + "..."


def rebuild_chain(
    base: Node,
    *,
    now: int,
    id_factory: Callable[[], str] = new_id,
) -> list[Node]:
    """按历史逐段生成节点，从旧到新组成一条父链。

    第一个节点没有父节点；最后一个节点原样保留导出的上下文与展示信息，与正常保存的存档一致。
    """
    history = [segment.model_copy(deep=True) for segment in base.context.history]
    if not history:
        node = base.model_copy(deep=True)
        node.id = id_factory()
        return [node]

    for segment in history:
        if not segment.id:
            segment.id = id_factory()

    session_id = base.session_id
    base_timestamp = base.timestamp or now
    last_index = len(history) - 1
    nodes: list[Node] = []
    for index, segment in enumerate(history):
        is_last = index == last_index
        context = base.context.model_copy(update={"history": []}).model_copy(deep=True)
        if is_last:
            context.history = [item.model_copy(deep=True) for item in history]
            if context.current_segment is not None:
                context.current_segment.id = segment.id
        else:
            context.session_id = session_id
            context.history = [item.model_copy(deep=True) for item in history[: index + 1]]
            context.current_segment = segment.model_copy(deep=True)

        node = Node(
            id=id_factory(),
            session_id=session_id,
            story_name=base.story_name,
            story_id=segment.id,
            parent_id=history[index - 1].id if index > 0 else None,
            timestamp=base_timestamp - (last_index - index) * REBUILD_STEP_MS,
            genre=base.genre,
            character_name=base.character_name,
            summary=_excerpt(segment.text),
            location=segment.location or base.location,
            choice_text=segment.caused_by or "",
            type=SaveType.AUTO,
            context=context,
        )
        if is_last:
            node.summary = base.summary
            node.type = base.type
            node.location = base.location if base.location is not None else node.location
            node.choice_label = base.choice_label
            node.choice_text = (
                base.choice_text if base.choice_text is not None else segment.caused_by
            )
            node.meta_data = base.meta_data.model_copy() if base.meta_data else None
        nodes.append(node)
    return nodes


class ImportReconciler:
    """把导出内容规整为存储插入操作。"""

    def __init__(
        self,
        store: NodeStore,
        *,
        clock: Clock = now_ms,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._store = store
        self._clock = clock
        self._id_factory = id_factory

    def plan(self, payload: ImportPayload) -> list[Node]:
        if isinstance(payload, BulkBackup):
            return list(payload.nodes)
        if isinstance(payload, ConfigOnly):
            return [
                synthesize_setup_node(
                    payload.config, now=self._clock(), id_factory=self._id_factory
                )
            ]
        return rebuild_chain(payload.node, now=self._clock(), id_factory=self._id_factory)

    def import_payload(self, raw: Any) -> ImportResult:
        payload = classify_payload(raw)
        candidates = self.plan(payload)
        inserted = self._store.insert_many(candidates)
        kind = {
            BulkBackup: "bulk",
            ConfigOnly: "config",
            FullCheckpoint: "checkpoint",
        }[type(payload)]
        logger.info("imported %s payload: %d of %d nodes", kind, inserted, len(candidates))
        return ImportResult(kind=kind, inserted=inserted, total=len(candidates))

    def import_text(self, text: str) -> ImportResult:
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise ImportFormatError("import file is not valid JSON") from exc
        return self.import_payload(raw)
