"""核心领域模型定义：存档节点、剧情片段与世界线视图。"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from worldline.constants import DEFAULT_INVENTORY


def new_id() -> str:
    return str(uuid4())


class CamelModel(BaseModel):
    """与前端导出文件保持一致的 camelCase 字段。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StoryMood(str, Enum):
    PEACEFUL = "PEACEFUL"
    BATTLE = "BATTLE"
    TENSE = "TENSE"
    EMOTIONAL = "EMOTIONAL"
    MYSTERIOUS = "MYSTERIOUS"
    VICTORY = "VICTORY"


class SaveType(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"
    SETUP = "SETUP"


class Skill(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    level: int = 1
    type: Literal["active", "passive"] = "active"


class Character(CamelModel):
    """主角设定。avatar 为大体积图片，持久化时单独存放。"""

    name: str = ""
    trait: str = ""
    gender: Literal["male", "female", "other"] = "male"
    avatar: Optional[str] = None
    skills: List[Skill] = Field(default_factory=list)


class SupportingCharacter(CamelModel):
    id: str = Field(default_factory=new_id)
    name: str
    gender: Literal["male", "female", "other"] = "other"
    category: Literal["protagonist", "supporting", "villain", "other"] = "supporting"
    role: str = ""
    personality: Optional[str] = None
    appearance: Optional[str] = None
    avatar: Optional[str] = None
    affinity: Optional[int] = None
    initial_affinity: Optional[int] = None
    archetype: Optional[str] = None
    archetype_description: Optional[str] = None


class WorldSettings(CamelModel):
    is_harem: bool = False
    is_adult: bool = False
    has_system: bool = False
    tone: StoryMood = StoryMood.PEACEFUL


class MemoryState(CamelModel):
    memory_zone: str = ""
    story_memory: str = ""
    long_term_memory: str = ""
    core_memory: str = ""
    character_record: str = ""
    inventory: str = DEFAULT_INVENTORY


class ScheduledEvent(CamelModel):
    id: str = Field(default_factory=new_id)
    type: str
    time: Optional[str] = None
    location: Optional[str] = None
    characters: Optional[str] = None
    description: str
    status: Literal["pending", "completed"] = "pending"
    created_turn: int = 0
    triggered_turn: Optional[int] = None


class SegmentVersion(CamelModel):
    """同一剧情节拍的一个候选渲染。"""

    text: str
    choices: List[str] = Field(default_factory=list)
    visual_prompt: str = ""
    mood: StoryMood = StoryMood.PEACEFUL
    location: Optional[str] = None


class Segment(CamelModel):
    """剧情节拍。顶层字段始终镜像当前选中的版本。"""

    id: str = Field(default_factory=new_id)
    text: str = ""
    choices: List[str] = Field(default_factory=list)
    visual_prompt: str = ""
    background_image: Optional[str] = None
    active_character_name: Optional[str] = None
    mood: StoryMood = StoryMood.PEACEFUL
    location: Optional[str] = None
    story_name: Optional[str] = None
    affinity_changes: Optional[Dict[str, int]] = None
    new_memories: Optional[MemoryState] = None
    caused_by: Optional[str] = None
    triggered_event_id: Optional[str] = None
    versions: Optional[List[SegmentVersion]] = None
    current_version_index: Optional[int] = None

    @model_validator(mode="after")
    def check_versions(self) -> "Segment":
        if not self.versions:
            return self
        if len(self.versions) < 2:
            raise ValueError("versions must be empty or hold at least two variants")
        if self.current_version_index is None:
            self.current_version_index = 0
        if not 0 <= self.current_version_index < len(self.versions):
            raise ValueError("currentVersionIndex out of range")
        return self

    def live_version(self) -> SegmentVersion:
        return SegmentVersion(
            text=self.text,
            choices=list(self.choices),
            visual_prompt=self.visual_prompt,
            mood=self.mood,
            location=self.location,
        )


class GameContext(CamelModel):
    """一次存档所捕获的完整游戏状态。"""

    session_id: str = Field(default_factory=new_id)
    story_name: Optional[str] = None
    genre: str = ""
    custom_genre: Optional[str] = None
    character: Character = Field(default_factory=Character)
    supporting_characters: List[SupportingCharacter] = Field(default_factory=list)
    world_settings: WorldSettings = Field(default_factory=WorldSettings)
    history: List[Segment] = Field(default_factory=list)
    current_segment: Optional[Segment] = None
    last_updated: int = 0
    last_choice_idx: Optional[int] = None
    memories: MemoryState = Field(default_factory=MemoryState)
    narrative_mode: Optional[str] = "auto"
    narrative_technique: Optional[str] = "auto"
    scheduled_events: List[ScheduledEvent] = Field(default_factory=list)

    def find_segment(self, segment_id: str) -> Optional[int]:
        for index, segment in enumerate(self.history):
            if segment.id == segment_id:
                return index
        return None


class NodeMetadata(CamelModel):
    highest_affinity_npc: Optional[str] = Field(default=None, alias="highestAffinityNPC")
    total_skill_level: Optional[int] = None
    turn_count: Optional[int] = None


class Node(CamelModel):
    """一个持久化的存档检查点。"""

    id: str = Field(default_factory=new_id)
    session_id: str = Field(default_factory=new_id)
    story_name: Optional[str] = None
    story_id: Optional[str] = None
    parent_id: Optional[str] = None
    timestamp: int = 0
    genre: str = ""
    character_name: str = ""
    summary: str = ""
    context: GameContext
    type: SaveType = SaveType.MANUAL
    location: Optional[str] = None
    choice_label: Optional[str] = None
    choice_text: Optional[str] = None
    meta_data: Optional[NodeMetadata] = None

    @property
    def is_freeform(self) -> bool:
        return not self.choice_label and bool(self.parent_id)


class StoryConfig(CamelModel):
    """仅包含设定的导出文件（无剧情历史）。"""

    story_name: Optional[str] = None
    genre: str = ""
    custom_genre: Optional[str] = None
    character: Character
    world_settings: WorldSettings
    supporting_characters: List[SupportingCharacter] = Field(default_factory=list)


class ImportResult(CamelModel):
    kind: Literal["bulk", "config", "checkpoint"]
    inserted: int
    total: int

    @property
    def duplicate_only(self) -> bool:
        return self.inserted == 0 and self.total > 0


class Position(CamelModel):
    x: Optional[float] = None
    y: Optional[float] = None


class LayoutNode(CamelModel):
    id: str
    session_id: str
    story_id: Optional[str] = None
    parent_id: Optional[str] = None
    type: SaveType
    x: float
    y: float
    summary: str = ""
    location: Optional[str] = None
    choice_label: Optional[str] = None
    choice_text: Optional[str] = None
    is_root: bool = False


class LayoutEdge(CamelModel):
    from_id: str = Field(alias="from")
    to: str
    is_freeform: bool = False


class SessionBand(CamelModel):
    """单条世界线在画布上占据的纵向区间。"""

    session_id: str
    root_y: float
    top: float
    bottom: float
    node_count: int


class LayoutView(CamelModel):
    nodes: List[LayoutNode] = Field(default_factory=list)
    edges: List[LayoutEdge] = Field(default_factory=list)
    sessions: List[SessionBand] = Field(default_factory=list)


class SavePayload(CamelModel):
    context: GameContext
    type: SaveType


class ChoosePayload(CamelModel):
    action: str = Field(..., min_length=1)
    from_index: Optional[int] = Field(default=None, ge=0)


class SwitchVersionPayload(CamelModel):
    direction: Literal["prev", "next"]


class LoadPayload(CamelModel):
    force_setup: bool = False


class BackgroundView(CamelModel):
    node_id: str
    background_image: Optional[str] = None


class SaveResult(CamelModel):
    saved: bool
    node: Optional[Node] = None


class ScheduledEventPayload(CamelModel):
    type: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    time: Optional[str] = None
    location: Optional[str] = None
    characters: Optional[str] = None


class PlayView(CamelModel):
    """当前游玩状态，供前端渲染。"""

    mode: Literal["setup", "playing"]
    loaded_node_id: Optional[str] = None
    dirty: bool = False
    context: GameContext
