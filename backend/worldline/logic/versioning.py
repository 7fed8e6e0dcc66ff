"""单个剧情段的多版本管理。"""

from __future__ import annotations

from typing import Literal

from worldline.models import Segment, SegmentVersion

Direction = Literal["prev", "next"]


def _apply(segment: Segment, version: SegmentVersion, index: int) -> None:
    segment.current_version_index = index
    segment.text = version.text
    segment.choices = list(version.choices)
    segment.visual_prompt = version.visual_prompt
    segment.mood = version.mood
    segment.location = version.location


def regenerate(segment: Segment, variant: SegmentVersion) -> Segment:
    """返回追加并激活 ``variant`` 后的 ``segment`` 副本。

    首次重生成会先用当前字段生成第 0 个版本，版本列表从空直接变为两项。
    """
    updated = segment.model_copy(deep=True)
    if not updated.versions:
        updated.versions = [updated.live_version()]
        updated.current_version_index = 0
    updated.versions.append(variant.model_copy(deep=True))
    _apply(updated, variant, len(updated.versions) - 1)
    return updated


def switch_version(segment: Segment, direction: Direction) -> Segment:
    """切换到上一个/下一个版本，两端循环。"""
    versions = segment.versions or []
    if len(versions) < 2:
        return segment
    step = 1 if direction == "next" else -1
    index = ((segment.current_version_index or 0) + step) % len(versions)
    updated = segment.model_copy(deep=True)
    _apply(updated, updated.versions[index], index)
    return updated
