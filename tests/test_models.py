"""Tests for data models."""

from datetime import datetime, timezone

from notebook_transfer.models import (
    KIND_ORDER,
    REFERENCE_FIELDS,
    EntityCollection,
    EntityKind,
    ExportMetadata,
    FocusSession,
    Link,
    Mood,
    Project,
    Task,
    Thought,
    parse_timestamp,
)


def test_kind_order() -> None:
    """Test the fixed kind order and wire names."""
    assert [kind.value for kind in KIND_ORDER] == [
        "goals",
        "projects",
        "tasks",
        "thoughts",
        "moods",
        "focusSessions",
        "people",
    ]
    assert EntityKind.FOCUS_SESSIONS.label == "Focus session"


def test_task_from_dict_keeps_unknown_fields() -> None:
    """Test unknown wire keys survive a round trip."""
    data = {"id": "T1", "title": "Write", "projectId": "P1", "customField": {"a": 1}, "createdAt": 1704067200000}
    task = Task.from_dict(data)

    assert task.project_id == "P1"
    assert task.extra == {"customField": {"a": 1}}
    assert Task.from_dict(task.to_dict()) == task
    assert task.to_dict()["customField"] == {"a": 1}
    assert "thoughtId" not in task.to_dict()


def test_mood_source_thought_lives_in_metadata() -> None:
    """Test dotted wire paths are read from and written to the nested object."""
    mood = Mood.from_dict({"id": "M1", "value": 5, "metadata": {"sourceThoughtId": "TH1", "source": "chat"}})

    assert mood.source_thought_id == "TH1"
    assert mood.metadata == {"source": "chat"}
    assert mood.to_dict()["metadata"] == {"source": "chat", "sourceThoughtId": "TH1"}
    assert mood.label == "Mood: 5"


def test_focus_session_tasks() -> None:
    """Test focus session task entries are parsed into records."""
    session = FocusSession.from_dict(
        {"id": "FS1", "duration": 25, "startTime": "2024-01-01T09:00:00Z", "tasks": [{"id": "T1", "timeSpent": 300}]}
    )

    assert session.tasks[0].id == "T1"
    assert session.tasks[0].time_spent == 300
    assert session.to_dict()["tasks"] == [{"id": "T1", "timeSpent": 300}]
    assert session.timestamp == datetime(2024, 1, 1, 9, tzinfo=timezone.utc)


def test_parse_timestamp() -> None:
    """Test the accepted timestamp shapes."""
    expected = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-01T00:00:00Z") == expected
    assert parse_timestamp("2024-01-01T00:00:00") == expected
    assert parse_timestamp(1704067200000) == expected
    assert parse_timestamp(1704067200) == expected
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_parse_timestamp_out_of_range() -> None:
    """Test epoch numbers no clock can represent parse as None."""
    assert parse_timestamp(1e20) is None
    assert parse_timestamp(float("nan")) is None
    assert parse_timestamp(-1e18) is None


def test_reference_values_and_rewrite() -> None:
    """Test reading and rewriting reference fields."""
    project_refs = {ref.wire: ref for ref in REFERENCE_FIELDS[EntityKind.PROJECTS]}
    project = Project(id="P1", title="Plan", goal_id="G1", linked_task_ids=["T1", "T2"])

    assert project_refs["goalId"].values(project) == ["G1"]
    assert project_refs["parentProjectId"].values(project) == []

    changed = project_refs["linkedTaskIds"].rewrite(project, lambda v: None if v == "T2" else v + "-new")
    assert changed
    assert project.linked_task_ids == ["T1-new"]
    assert not project_refs["goalId"].rewrite(project, lambda v: v)


def test_focus_task_reference_rewrite_drops_entries() -> None:
    """Test clearing a focus session task reference drops the entry."""
    ref = REFERENCE_FIELDS[EntityKind.FOCUS_SESSIONS][0]
    session = FocusSession.from_dict({"id": "FS1", "duration": 25, "tasks": [{"id": "T1"}, {"id": "T2"}]})

    assert ref.required
    assert ref.values(session) == ["T1", "T2"]
    assert ref.rewrite(session, lambda v: None if v == "T1" else v)
    assert [t.id for t in session.tasks] == ["T2"]


def test_collection_helpers(sample_collection: EntityCollection) -> None:
    """Test collection lookups and counts."""
    assert sample_collection.total == 9
    assert sample_collection.counts()[EntityKind.PROJECTS] == 2
    assert sample_collection.ids(EntityKind.TASKS) == {"T1", "T2"}
    assert sample_collection.find("TH1") == (EntityKind.THOUGHTS, sample_collection.thoughts[0])
    assert sample_collection.get(EntityKind.TASKS, "missing") is None

    restored = EntityCollection.from_dict(sample_collection.to_dict())
    assert restored == sample_collection


def test_thought_label_truncates() -> None:
    """Test long thought text is shortened for display."""
    thought = Thought(id="TH1", text="x" * 80)
    assert thought.label == "x" * 50


def test_export_metadata_round_trip() -> None:
    """Test metadata uses camelCase on the wire."""
    metadata = ExportMetadata(
        version="1.0.0",
        exported_at="2024-03-01T00:00:00+00:00",
        user_id="user-1",
        total_items=3,
        entity_counts={"tasks": 3},
    )
    data = metadata.to_dict()

    assert data["exportedAt"] == "2024-03-01T00:00:00+00:00"
    assert "appVersion" not in data
    assert ExportMetadata.from_dict(data) == metadata


def test_link_creation() -> None:
    """Test link creation."""
    link = Link(source_id="T1", target_id="P1", link_type="projectId", source_kind=EntityKind.TASKS)
    assert link.source_id == "T1"
    assert link.target_id == "P1"
    assert link.link_type == "projectId"
    assert link.target_kind is None
