import pytest
from pydantic import ValidationError

from worldline.models import (
    GameContext,
    Node,
    NodeMetadata,
    SaveType,
    Segment,
    SegmentVersion,
)


def test_segment_versions_never_hold_a_single_entry():
    # 只有一个版本违反不变量
    with pytest.raises(ValidationError):
        Segment(text="a", versions=[SegmentVersion(text="a")])

    segment = Segment(text="b", versions=[SegmentVersion(text="a"), SegmentVersion(text="b")])
    assert segment.current_version_index == 0


def test_segment_version_index_must_be_in_range():
    with pytest.raises(ValidationError):
        Segment(
            text="a",
            versions=[SegmentVersion(text="a"), SegmentVersion(text="b")],
            current_version_index=2,
        )


def test_node_accepts_camel_case_export():
    raw = {
        "id": "n1",
        "sessionId": "s1",
        "storyId": "b2",
        "parentId": "b1",
        "timestamp": 1700000000000,
        "type": "MANUAL",
        "summary": "text",
        "choiceLabel": "",
        "metaData": {"highestAffinityNPC": "Mei (♥12)", "turnCount": 2},
        "context": {
            "sessionId": "s1",
            "character": {"name": "Lin", "trait": "brave", "gender": "female", "skills": []},
            "history": [{"id": "b1", "text": "one"}, {"id": "b2", "text": "two"}],
            "currentSegment": {"id": "b2", "text": "two", "backgroundImage": "img"},
            "lastChoiceIdx": -1,
        },
    }
    node = Node.model_validate(raw)

    assert node.session_id == "s1"
    assert node.type is SaveType.MANUAL
    assert node.meta_data.highest_affinity_npc == "Mei (♥12)"
    assert node.context.current_segment.background_image == "img"
    assert node.is_freeform

    record = node.to_record()
    assert record["parentId"] == "b1"
    assert record["metaData"]["highestAffinityNPC"] == "Mei (♥12)"
    assert "location" not in record


def test_node_with_choice_label_is_not_freeform():
    node = Node(parent_id="b1", choice_label="2", context=GameContext())
    assert not node.is_freeform
    assert not Node(context=GameContext()).is_freeform


def test_metadata_alias_populates_by_name():
    meta = NodeMetadata(highest_affinity_npc="A", total_skill_level=3)
    assert meta.to_record() == {"highestAffinityNPC": "A", "totalSkillLevel": 3}


def test_find_segment_returns_history_index():
    context = GameContext(history=[Segment(id="x"), Segment(id="y")])
    assert context.find_segment("y") == 1
    assert context.find_segment("z") is None
