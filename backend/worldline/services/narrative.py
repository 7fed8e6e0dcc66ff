"""叙事协作方：根据上下文生成下一段剧情。"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Protocol, Sequence

import httpx
from pydantic import ValidationError

from worldline.config import (
    NARRATIVE_API_KEY,
    NARRATIVE_BASE_URL,
    NARRATIVE_MODEL,
    NARRATIVE_TIMEOUT_SECONDS,
)
from worldline.errors import NarrativeReplyError
from worldline.models import GameContext, MemoryState, Segment, StoryMood

logger = logging.getLogger(__name__)

RECENT_HISTORY_TURNS = 5


class NarrativeServicePort(Protocol):
    async def generate_opening(self, context: GameContext) -> Segment:
        ...

    async def advance_story(
        self, context: GameContext, history: Sequence[Segment], action: str
    ) -> Segment:
        ...


class LocalNarrativeEngine:
    """离线叙事引擎，输出确定，默认及测试中使用。"""

    async def generate_opening(self, context: GameContext) -> Segment:
        name = context.character.name or "The traveller"
        title = context.story_name or f"The tale of {name}"
        return Segment(
            text=f"{name} sets out. {context.custom_genre or context.genre}".strip(),
            choices=["Look around", "Press on"],
            visual_prompt="an empty road at dawn",
            mood=context.world_settings.tone,
            location="Crossroads",
            story_name=title,
            new_memories=context.memories.model_copy(),
        )

    async def advance_story(
        self, context: GameContext, history: Sequence[Segment], action: str
    ) -> Segment:
        turn = len(history) + 1
        previous = history[-1] if history else None
        pending = [event for event in context.scheduled_events if event.status == "pending"]
        memories = context.memories.model_copy()
        memories.story_memory = (memories.story_memory + f"\n{action}").strip()
        return Segment(
            text=f"Turn {turn}: {context.character.name or 'You'} chose to {action}.",
            choices=[f"Continue after {action}", "Rest"],
            visual_prompt=previous.visual_prompt if previous else "",
            mood=previous.mood if previous else StoryMood.PEACEFUL,
            location=previous.location if previous else None,
            new_memories=memories,
            triggered_event_id=pending[0].id if pending else None,
        )


def _clean_json(text: str) -> str:
    if not text:
        return "{}"
    cleaned = re.sub(r"```json\s*", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"```\s*$", "", cleaned)
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last >= first:
        cleaned = cleaned[first : last + 1]
    return re.sub(r"[\x00-\x09\x0b-\x1f\x7f]", "", cleaned).strip()


class NarrativeClient:
    """基于 httpx 的 Gemini ``generateContent`` 叙事客户端。"""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = NARRATIVE_API_KEY if api_key is None else api_key
        self.base_url = base_url or NARRATIVE_BASE_URL
        self.model = model or NARRATIVE_MODEL
        self.timeout_seconds = timeout_seconds or NARRATIVE_TIMEOUT_SECONDS
        self.transport = transport

    @staticmethod
    def _strip_thoughts(payload: dict[str, Any]) -> dict[str, Any]:
        for candidate in payload.get("candidates", []):
            content = candidate.get("content")
            if not content:
                continue
            content["parts"] = [
                part for part in content.get("parts", []) if not part.get("thought")
            ]
        return payload

    def _ensure_key(self) -> str:
        if not self.api_key:
            raise ValueError("NARRATIVE_API_KEY is required for remote narration")
        return self.api_key

    @staticmethod
    def _build_payload(prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }

    async def generate_content(self, prompt: str) -> dict[str, Any]:
        api_key = self._ensure_key()
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
        ) as client:
            response = await client.post(
                f"/v1beta/models/{self.model}:generateContent",
                params={"key": api_key},
                json=self._build_payload(prompt),
            )
            response.raise_for_status()
            return self._strip_thoughts(response.json())

    @staticmethod
    def _reply_text(payload: Mapping[str, Any]) -> str:
        for candidate in payload.get("candidates", []):
            parts = (candidate.get("content") or {}).get("parts", [])
            text = "".join(part.get("text", "") for part in parts)
            if text:
                return text
        return ""

    @classmethod
    def parse_segment(cls, payload: Mapping[str, Any]) -> Segment:
        """将结构化回复映射为 ``Segment``。"""
        try:
            data = json.loads(_clean_json(cls._reply_text(payload)))
        except ValueError as exc:
            raise NarrativeReplyError("narrative reply is not valid JSON") from exc
        if not isinstance(data, dict) or not data.get("text"):
            raise NarrativeReplyError("narrative reply carries no story text")

        updates = data.get("affinityUpdates") or []
        affinity = {
            item["characterName"]: int(item["change"])
            for item in updates
            if isinstance(item, dict) and "characterName" in item and "change" in item
        }
        try:
            return Segment(
                text=data["text"],
                choices=list(data.get("choices") or []),
                visual_prompt=data.get("visualPrompt") or "",
                mood=data.get("mood") or StoryMood.PEACEFUL,
                active_character_name=data.get("activeCharacterName"),
                location=data.get("location"),
                story_name=data.get("storyName"),
                affinity_changes=affinity or None,
                new_memories=(
                    MemoryState.model_validate(data["memoryUpdate"])
                    if data.get("memoryUpdate")
                    else None
                ),
                triggered_event_id=data.get("triggeredEventId"),
            )
        except ValidationError as exc:
            raise NarrativeReplyError(f"narrative reply is malformed: {exc}") from exc

    @staticmethod
    def _opening_prompt(context: GameContext) -> str:
        cast = "\n".join(
            f"- {c.name} ({c.role}): {c.personality or 'Unknown'}"
            for c in context.supporting_characters
        )
        return (
            "Role: interactive fiction engine.\n"
            f"Task: write the OPENING segment of a {context.genre} story.\n"
            f"Story title: {context.story_name or 'invent one'}\n"
            f"Tone: {context.world_settings.tone.value}\n"
            f"Protagonist: {context.character.name} ({context.character.gender}), "
            f"{context.character.trait}\n"
            f"Cast:\n{cast}\n"
            "Reply with JSON: text, choices, visualPrompt, mood, activeCharacterName, "
            "location, memoryUpdate, storyName."
        )

    @staticmethod
    def _advance_prompt(context: GameContext, history: Sequence[Segment], action: str) -> str:
        recent = "\n".join(
            f"Turn {i}: {segment.text[:100]}... Choice: {segment.caused_by}"
            for i, segment in enumerate(history[-RECENT_HISTORY_TURNS:])
        )
        pending = "\n".join(
            f'- ID: "{event.id}" | Type: {event.type} | Details: {event.description}'
            for event in context.scheduled_events
            if event.status == "pending"
        )
        last = history[-1] if history else None
        return (
            "Role: interactive fiction engine.\n"
            "Task: continue the story from the player's input.\n"
            f"Location: {last.location if last else ''}\n"
            f"Mood: {last.mood.value if last else ''}\n"
            f"Memories: {context.memories.story_memory}\n"
            f"Items: {context.memories.inventory}\n"
            f"Recent history:\n{recent}\n"
            f'Player input: "{action}"\n'
            f"Pending events:\n{pending or 'none'}\n"
            "Reply with JSON: text, choices, visualPrompt, mood, activeCharacterName, "
            "location, affinityUpdates, memoryUpdate, triggeredEventId."
        )

    async def generate_opening(self, context: GameContext) -> Segment:
        payload = await self.generate_content(self._opening_prompt(context))
        return self.parse_segment(payload)

    async def advance_story(
        self, context: GameContext, history: Sequence[Segment], action: str
    ) -> Segment:
        payload = await self.generate_content(self._advance_prompt(context, history, action))
        segment = self.parse_segment(payload)
        logger.debug("narrator produced segment %s for %r", segment.id, action)
        return segment
