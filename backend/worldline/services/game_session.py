"""游玩过程控制器。

持有当前 ``GameContext``，把玩家操作转换为新剧情段、重生成版本与存档。
每次变更都用更新后的副本替换 ``self.context``，旧对象不会被原地修改。
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from worldline.constants import DEFAULT_INVENTORY, UNTITLED_STORY
from worldline.errors import NodeNotFoundError, RegenerateError
from worldline.logic import versioning
from worldline.logic.background import resolve_background
from worldline.models import (
    GameContext,
    MemoryState,
    Node,
    SaveType,
    ScheduledEvent,
    Segment,
    SegmentVersion,
)
from worldline.services.narrative import NarrativeServicePort
from worldline.storage.node_store import Clock, NodeStore, now_ms

logger = logging.getLogger(__name__)

PlayMode = Literal["setup", "playing"]


def match_choice(choices: list[str], action: str) -> int:
    """返回 ``action`` 对应的选项下标，自由输入返回 -1。"""
    for index, choice in enumerate(choices):
        if choice == action:
            return index
    for index, choice in enumerate(choices):
        if choice in action or action in choice:
            return index
    return -1


class GameSession:
    def __init__(
        self,
        store: NodeStore,
        narrator: NarrativeServicePort,
        *,
        context: GameContext | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.narrator = narrator
        self.context = context or GameContext()
        self.mode: PlayMode = "setup"
        self.last_auto_saved_id: Optional[str] = None
        self.last_saved_at = 0
        self._clock = clock

    def begin(self, context: GameContext) -> GameContext:
        """以新的或编辑过的配置进入设定阶段。"""
        self.context = context.model_copy(deep=True)
        self.mode = "setup"
        self.store.loaded_node_id = None
        self.last_auto_saved_id = None
        return self.context

    @property
    def is_dirty(self) -> bool:
        return self.context.last_updated > self.last_saved_at

    def _require_protagonist(self) -> None:
        character = self.context.character
        if not character.name or not character.trait:
            raise ValueError("protagonist name and trait are required")

    async def start_game(self) -> Segment:
        self._require_protagonist()
        self.store.loaded_node_id = None
        opening = await self.narrator.generate_opening(self.context)

        updated = self.context.model_copy(deep=True)
        updated.scheduled_events = []
        updated.story_name = opening.story_name or updated.story_name or UNTITLED_STORY
        updated.history = [opening.model_copy(deep=True)]
        updated.current_segment = opening.model_copy(deep=True)
        updated.last_updated = self._clock()
        updated.memories = opening.new_memories or MemoryState()
        self.context = updated
        self.mode = "playing"
        self.last_saved_at = 0
        logger.info("session %s started", updated.session_id)
        return opening

    async def choose(self, action: str, from_index: Optional[int] = None) -> Segment:
        """从当前剧情段推进，或从更早的剧情段分叉。

        ``from_index`` 指向最后一段之前时，先把历史截断到该段，新剧情段开启一条兄弟世界线。
        """
        if not action:
            raise ValueError("action must not be empty")
        self.store.loaded_node_id = None
        context = self.context
        current = context.current_segment
        offered = current
        history = context.history
        if from_index is not None and from_index < len(history) - 1:
            history = history[: from_index + 1]
            offered = history[-1]
        choice_index = match_choice(offered.choices, action) if offered is not None else -1

        segment = (await self.narrator.advance_story(context, history, action)).model_copy(deep=True)
        segment.caused_by = action

        updated = context.model_copy(deep=True)
        if segment.triggered_event_id:
            for event in updated.scheduled_events:
                if event.id == segment.triggered_event_id and event.status == "pending":
                    event.status = "completed"
                    event.triggered_turn = len(history) + 1
                    logger.info("scheduled event %s fulfilled", event.id)
        for character in updated.supporting_characters:
            change = (segment.affinity_changes or {}).get(character.name)
            if change:
                character.affinity = (character.affinity or 0) + change
        if not segment.background_image and current is not None:
            segment.background_image = current.background_image

        updated.history = [item.model_copy(deep=True) for item in history] + [segment]
        updated.current_segment = segment.model_copy(deep=True)
        updated.last_updated = self._clock()
        updated.last_choice_idx = choice_index
        updated.memories = segment.new_memories or updated.memories
        self.context = updated
        return segment

    async def regenerate(self) -> Segment:
        """重新生成最后一段剧情，并激活新版本。"""
        context = self.context
        last = len(context.history) - 1
        if last < 0:
            raise RegenerateError("there is no beat to regenerate")
        target = context.history[last]
        if last > 0 and not target.caused_by:
            raise RegenerateError("this beat has no recorded input to replay")

        if last == 0:
            fresh = await self.narrator.generate_opening(context)
        else:
            fresh = await self.narrator.advance_story(
                context, context.history[:last], target.caused_by or ""
            )
        variant = SegmentVersion(
            text=fresh.text,
            choices=list(fresh.choices),
            visual_prompt=fresh.visual_prompt,
            mood=fresh.mood,
            location=fresh.location,
        )
        segment = versioning.regenerate(target, variant)

        updated = context.model_copy(deep=True)
        updated.history[last] = segment
        updated.current_segment = segment.model_copy(deep=True)
        updated.memories = fresh.new_memories or updated.memories
        updated.last_updated = self._clock()
        self.context = updated
        return segment

    def switch_version(self, segment_id: str, direction: versioning.Direction) -> Segment:
        context = self.context
        index = context.find_segment(segment_id)
        if index is None:
            raise NodeNotFoundError(f"segment not found: {segment_id}", node_id=segment_id)
        segment = context.history[index]
        switched = versioning.switch_version(segment, direction)
        if switched is segment:
            return segment

        updated = context.model_copy(deep=True)
        updated.history[index] = switched
        if context.current_segment is not None and context.current_segment.id == segment_id:
            updated.current_segment = switched.model_copy(deep=True)
        updated.last_updated = self._clock()
        self.context = updated
        return switched

    def manual_save(self) -> Optional[Node]:
        self.last_saved_at = self._clock()
        return self.store.save(self.context, SaveType.MANUAL)

    def save_setup(self) -> Optional[Node]:
        self._require_protagonist()
        self.last_saved_at = self._clock()
        return self.store.save(self.context, SaveType.SETUP)

    def autosave(self) -> Optional[Node]:
        """每个剧情段只自动保存一次，重复调用直接跳过。"""
        context = self.context
        if not context.history:
            return None
        current = context.current_segment
        if current is not None and current.id == self.last_auto_saved_id:
            return None
        if current is not None:
            self.last_auto_saved_id = current.id
        self.last_saved_at = self._clock()
        return self.store.save(context, SaveType.AUTO)

    def load(self, node_id: str, force_setup: bool = False) -> PlayMode:
        """将存档恢复为当前游玩上下文。"""
        node = self.store.require(node_id)
        context = node.context.model_copy(deep=True)
        context.session_id = node.session_id
        if node.story_name:
            context.story_name = node.story_name
        if not context.character.avatar:
            context.character.avatar = self.store.avatar_for(node.session_id)
        if context.current_segment is not None and not context.current_segment.background_image:
            context.current_segment.background_image = resolve_background(node, self.store.list())
        if not context.memories.inventory:
            context.memories.inventory = DEFAULT_INVENTORY

        self.store.loaded_node_id = node.id
        self.context = context
        self.last_saved_at = node.timestamp or self._clock()
        if force_setup or node.type is SaveType.SETUP or not context.history:
            self.mode = "setup"
        else:
            self.mode = "playing"
        return self.mode

    def add_scheduled_event(
        self,
        type: str,
        description: str,
        *,
        time: Optional[str] = None,
        location: Optional[str] = None,
        characters: Optional[str] = None,
    ) -> ScheduledEvent:
        event = ScheduledEvent(
            type=type,
            description=description,
            time=time,
            location=location,
            characters=characters,
            created_turn=len(self.context.history),
            status="pending",
        )
        updated = self.context.model_copy(deep=True)
        updated.scheduled_events.append(event)
        self.context = updated
        return event

    def update_scheduled_event(self, event: ScheduledEvent) -> ScheduledEvent:
        updated = self.context.model_copy(deep=True)
        for index, existing in enumerate(updated.scheduled_events):
            if existing.id == event.id:
                updated.scheduled_events[index] = event.model_copy(deep=True)
                self.context = updated
                return event
        raise NodeNotFoundError(f"scheduled event not found: {event.id}", node_id=event.id)

    def delete_scheduled_event(self, event_id: str) -> bool:
        remaining = [e for e in self.context.scheduled_events if e.id != event_id]
        if len(remaining) == len(self.context.scheduled_events):
            return False
        updated = self.context.model_copy(deep=True)
        updated.scheduled_events = [e.model_copy(deep=True) for e in remaining]
        self.context = updated
        return True
